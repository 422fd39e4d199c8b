# -*- coding: utf-8 -*-
#
# Copyright 2025 Ian Cohn
# https://www.github.com/autopkg/iancohn-recipes
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import re
from datetime import datetime, timezone

from CmasApi.CmasApiLib.CmasApiBase import (
    CmasApiBase,
    CmasConflictError,
    CmasNotFoundError,
    CmasValidationError,
    CollectionType,
    RefreshType,
    DEFAULT_LIMITING_COLLECTION,
)

COLLECTION_ID_PATTERN = re.compile(r"^[A-Za-z0-9]{3}[0-9A-Fa-f]{5}$")

class CmasCollectionBase(CmasApiBase):
    """Query, create, change and remove SMS_Collection objects"""

    def get_collections(self, name: str = None, collection_id: str = None,
                        collection_type: CollectionType = None) -> list:
        """Search for collections by name (wildcards allowed),
        CollectionID and/or CollectionType
        """
        self.output(f"Searching for collections. Name [{name}] CollectionID [{collection_id}]", 2)
        filter_clauses = []
        if name is not None:
            filter_clauses.append(self.new_odata_filter("Name", name))
        if collection_id is not None:
            filter_clauses.append(self.new_odata_filter("CollectionID", collection_id))
        if collection_type is not None:
            filter_clauses.append(
                self.new_odata_filter("CollectionType", CollectionType(collection_type).value)
            )
        collections = self.get_wmi_objects(
            "SMS_Collection",
            odata_filter = self.join_odata_filters(*filter_clauses)
        )
        if self.has_wildcard(name):
            collections = self.select_by_wildcard(collections, "Name", name)
        return collections

    def get_collection(self, name: str = None, collection_id: str = None) -> dict:
        """Return exactly one collection, re-fetched by key so the lazy
        properties (CollectionRules, RefreshSchedule) are populated
        """
        if name is None and collection_id is None:
            raise CmasValidationError("Supply a collection name or a CollectionID")
        if self.has_wildcard(name) or self.has_wildcard(collection_id):
            raise CmasValidationError("Wildcards are not allowed when a single collection is expected")
        collection = self.select_one(
            self.get_collections(name = name, collection_id = collection_id),
            f"Collection {name if name is not None else collection_id}"
        )
        self.output(f"Getting lazy properties for {collection['CollectionID']}", 3)
        full_collection = self.get_wmi_object("SMS_Collection", collection["CollectionID"])
        if full_collection is None:
            raise CmasNotFoundError(f"Collection {collection['CollectionID']} disappeared during the lookup")
        return full_collection

    def resolve_collection(self, collection) -> dict:
        """Accept a collection object, a CollectionID or a collection
        name and return the full collection object
        """
        if isinstance(collection, dict):
            if "CollectionRules" in collection:
                return collection
            return self.get_collection(collection_id = collection["CollectionID"])
        if self.is_collection_id(collection):
            try:
                return self.get_collection(collection_id = collection)
            except CmasNotFoundError:
                self.output(f"No collection with ID {collection}; trying it as a name", 3)
        return self.get_collection(name = collection)

    def resolve_collection_id(self, collection) -> str:
        if isinstance(collection, dict):
            return collection["CollectionID"]
        if self.is_collection_id(collection):
            return collection
        return self.select_one(
            self.get_collections(name = collection),
            f"Collection {collection}"
        )["CollectionID"]

    @staticmethod
    def is_collection_id(value: str) -> bool:
        """CollectionIDs are a three character site code followed by
        five hexadecimal digits
        """
        return isinstance(value, str) and COLLECTION_ID_PATTERN.match(value) is not None

    @staticmethod
    def new_recur_interval_schedule(days: int = 0, hours: int = 0, minutes: int = 0,
                                    start_time: datetime = None) -> dict:
        """Create an SMS_ST_RecurInterval schedule token for periodic
        collection refresh. An aware start_time is sent as UTC; a naive
        one is sent as the site server's local time
        """
        if days == 0 and hours == 0 and minutes == 0:
            raise CmasValidationError("A recurring schedule needs a non zero interval")
        start_time = start_time or datetime.now(timezone.utc).replace(second = 0, microsecond = 0)
        is_gmt = start_time.tzinfo is not None
        if is_gmt:
            start_time = start_time.astimezone(timezone.utc)
        return {
            "@odata.type": "#AdminService.SMS_ST_RecurInterval",
            "DaySpan": days,
            "HourSpan": hours,
            "MinuteSpan": minutes,
            "IsGMT": is_gmt,
            "StartTime": start_time.strftime("%Y-%m-%dT%H:%M:%SZ" if is_gmt else "%Y-%m-%dT%H:%M:%S")
        }

    def new_collection(self, name: str, limiting_collection_id: str = None,
                       limiting_collection_name: str = None,
                       collection_type: CollectionType = CollectionType.Device,
                       refresh_type: RefreshType = RefreshType.Periodic,
                       refresh_schedule: dict = None, comment: str = None) -> dict:
        """Create a collection and return the object the service
        created
        """
        collection_type = CollectionType(collection_type)
        refresh_type = RefreshType(refresh_type)
        if limiting_collection_id is not None and limiting_collection_name is not None:
            raise CmasValidationError("Supply either limiting_collection_id or limiting_collection_name, not both")
        if collection_type == CollectionType.Other:
            raise CmasValidationError("collection_type must be Device or User")
        if len(self.get_collections(name = name)) > 0:
            raise CmasConflictError(f"A collection named {name} already exists")
        if limiting_collection_name is not None:
            limiting_collection_id = self.resolve_collection_id(limiting_collection_name)
        limiting_collection_id = limiting_collection_id or DEFAULT_LIMITING_COLLECTION[collection_type]
        body = {
            "Name": name,
            "CollectionType": collection_type.value,
            "LimitToCollectionID": limiting_collection_id,
            "RefreshType": refresh_type.value
        }
        if comment is not None:
            body["Comment"] = comment
        if refresh_type in (RefreshType.Periodic, RefreshType.Both):
            body["RefreshSchedule"] = [refresh_schedule or self.new_recur_interval_schedule(days = 7)]
        self.output(f"Creating {collection_type.name} collection {name} limited to {limiting_collection_id}", 1)
        return self.invoke_api("wmi/SMS_Collection", method = 'POST', body = body)

    def set_collection(self, collection, new_name: str = None, comment: str = None,
                       refresh_type: RefreshType = None, refresh_schedule: dict = None,
                       limiting_collection_id: str = None) -> dict:
        """Change properties of an existing collection. Only the
        changed properties are sent
        """
        existing = self.resolve_collection(collection)
        collection_id = existing["CollectionID"]
        body = {}
        if new_name is not None and new_name != existing.get("Name"):
            if len(self.get_collections(name = new_name)) > 0:
                raise CmasConflictError(f"A collection named {new_name} already exists")
            body["Name"] = new_name
        if comment is not None and comment != existing.get("Comment"):
            body["Comment"] = comment
        if refresh_type is not None and RefreshType(refresh_type).value != existing.get("RefreshType"):
            body["RefreshType"] = RefreshType(refresh_type).value
        if refresh_schedule is not None:
            body["RefreshSchedule"] = [refresh_schedule]
        if limiting_collection_id is not None and limiting_collection_id != existing.get("LimitToCollectionID"):
            body["LimitToCollectionID"] = limiting_collection_id
        if len(body) == 0:
            self.output(f"Collection {collection_id} already matches. Nothing to do.", 1)
            return existing
        self.output(f"Updating {', '.join(body.keys())} on collection {collection_id}", 1)
        return self.invoke_api(
            f"wmi/SMS_Collection({self.format_odata_literal(collection_id)})",
            method = 'POST',
            body = body
        )

    def remove_collection(self, collection, force: bool = False) -> bool:
        """Delete a collection. Returns False when the deletion was not
        confirmed
        """
        collection_id = self.resolve_collection_id(collection)
        if not self.confirm_action(f"Remove collection {collection_id}", force):
            return False
        self.output(f"Removing collection {collection_id}", 1)
        self.invoke_api(
            f"wmi/SMS_Collection({self.format_odata_literal(collection_id)})",
            method = 'DELETE'
        )
        return True

    def get_collection_members(self, collection, name: str = None) -> list:
        collection_id = self.resolve_collection_id(collection)
        members = self.get_wmi_objects(
            "SMS_FullCollectionMembership",
            odata_filter = self.join_odata_filters(
                self.new_odata_filter("CollectionID", collection_id),
                self.new_odata_filter("Name", name) if name is not None else None
            )
        )
        if self.has_wildcard(name):
            members = self.select_by_wildcard(members, "Name", name)
        return members

    def invoke_collection_refresh(self, collection):
        """Ask the site to re-evaluate the membership of a
        collection
        """
        collection_id = self.resolve_collection_id(collection)
        self.output(f"Requesting a membership refresh of {collection_id}", 1)
        return self.invoke_wmi_method("SMS_Collection", "RequestRefresh", key = collection_id)
