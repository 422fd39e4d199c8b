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

from CmasApi.CmasApiLib.CmasApiBase import (
    CmasConflictError,
    CmasValidationError,
    CollectionType,
    MembershipRuleType,
)
from CmasApi.CmasApiLib.CmasCollectionBase import CmasCollectionBase
from CmasApi.CmasApiLib.CmasDeviceBase import CmasDeviceBase

class CmasMembershipRuleBase(CmasCollectionBase, CmasDeviceBase):
    """Read and change the membership rules of a collection.
    The Admin Service only exposes the rules as the lazy CollectionRules
    array of SMS_Collection, so every rule specific query here is a
    filter over that array, keyed on the @odata.type tag
    """

    @staticmethod
    def get_membership_rule_type(rule: dict) -> MembershipRuleType:
        """Return the MembershipRuleType of a rule, or None when the tag
        is not a known rule class
        """
        try:
            return MembershipRuleType(rule.get("@odata.type"))
        except ValueError:
            return None

    @classmethod
    def split_membership_rules(cls, rules: list) -> dict:
        """Partition a mixed CollectionRules array by rule type.
        Every rule lands in exactly one bucket
        """
        buckets = {t.name: [] for t in MembershipRuleType}
        buckets["Unknown"] = []
        for rule in rules or []:
            rule_type = cls.get_membership_rule_type(rule)
            buckets[rule_type.name if rule_type is not None else "Unknown"].append(rule)
        return buckets

    @classmethod
    def filter_membership_rules(cls, rules: list, rule_type: MembershipRuleType = None, rule_name: str = None,
                                resource_id: int = None, include_collection_id: str = None,
                                exclude_collection_id: str = None) -> list:
        if rule_type is not None:
            rules = cls.split_membership_rules(rules)[MembershipRuleType(rule_type).name]
        else:
            rules = list(rules or [])
        if rule_name is not None:
            rules = cls.select_by_wildcard(rules, "RuleName", rule_name)
        if resource_id is not None:
            rules = [r for r in rules if cls.try_cast(int, r.get("ResourceID")) == int(resource_id)]
        if include_collection_id is not None:
            rules = [r for r in rules if str(r.get("IncludeCollectionID", '')).upper() == include_collection_id.upper()]
        if exclude_collection_id is not None:
            rules = [r for r in rules if str(r.get("ExcludeCollectionID", '')).upper() == exclude_collection_id.upper()]
        return rules

    def get_membership_rules(self, collection, rule_type: MembershipRuleType = None, rule_name: str = None,
                             resource_id: int = None, include_collection_id: str = None,
                             exclude_collection_id: str = None) -> list:
        """Return the membership rules of a collection, optionally
        narrowed by type, rule name (wildcards allowed), ResourceID or
        referenced collection
        """
        full_collection = self.resolve_collection(collection)
        rules = full_collection.get("CollectionRules") or []
        self.output(f"{len(rules)} membership rules on {full_collection['CollectionID']}", 3)
        return self.filter_membership_rules(
            rules,
            rule_type = rule_type,
            rule_name = rule_name,
            resource_id = resource_id,
            include_collection_id = include_collection_id,
            exclude_collection_id = exclude_collection_id
        )

    def add_membership_rule(self, collection_id: str, rule: dict) -> dict:
        """Post one rule to AddMembershipRule. A rule the service
        reports as existing is downgraded to a warning and None is
        returned
        """
        self.output(f"Adding {rule['@odata.type']} rule {rule.get('RuleName')} to {collection_id}", 2)
        try:
            self.invoke_wmi_method(
                "SMS_Collection",
                "AddMembershipRule",
                body = {"collectionRule": rule},
                key = collection_id
            )
        except CmasConflictError as e:
            self.warn(f"Rule {rule.get('RuleName')} was not added to {collection_id}: {e.message}")
            return None
        return rule

    def add_direct_membership_rule(self, collection, resource_ids: list = None, device_names: list = None) -> list:
        """Add one direct rule per device. Devices already directly
        included are skipped with a warning. Returns the added rules
        """
        if not resource_ids and not device_names:
            raise CmasValidationError("Supply at least one ResourceID or device name")
        full_collection = self.resolve_collection(collection)
        collection_id = full_collection["CollectionID"]
        if full_collection.get("CollectionType") == CollectionType.User.value:
            raise CmasValidationError(f"{collection_id} is a user collection; direct device rules are not allowed")
        devices = [self.get_device(resource_id = r) for r in resource_ids or []] \
            + [self.get_device(name = n) for n in device_names or []]
        existing_ids = {
            self.try_cast(int, r.get("ResourceID"))
            for r in self.filter_membership_rules(full_collection.get("CollectionRules"), MembershipRuleType.Direct)
        }
        added = []
        for device in devices:
            resource_id = int(device["ResourceId"])
            if resource_id in existing_ids:
                self.warn(f"{device.get('Name')} ({resource_id}) is already a direct member of {collection_id}")
                continue
            rule = {
                "@odata.type": MembershipRuleType.Direct.value,
                "ResourceClassName": "SMS_R_System",
                "ResourceID": resource_id,
                "RuleName": device.get("Name") or str(resource_id)
            }
            if self.add_membership_rule(collection_id, rule) is not None:
                existing_ids.add(resource_id)
                added.append(rule)
        self.output(f"Added {len(added)} direct rules to {collection_id}", 1)
        return added

    def add_query_membership_rule(self, collection, rule_name: str, query_expression: str) -> dict:
        if not rule_name or not query_expression:
            raise CmasValidationError("rule_name and query_expression are required")
        full_collection = self.resolve_collection(collection)
        collection_id = full_collection["CollectionID"]
        if len(self.filter_membership_rules(full_collection.get("CollectionRules"),
                                            MembershipRuleType.Query, rule_name = rule_name)) > 0:
            self.warn(f"A query rule named {rule_name} already exists on {collection_id}")
            return None
        rule = {
            "@odata.type": MembershipRuleType.Query.value,
            "RuleName": rule_name,
            "QueryExpression": query_expression
        }
        return self.add_membership_rule(collection_id, rule)

    def add_collection_reference_rule(self, collection, referenced_collection,
                                      rule_type: MembershipRuleType) -> dict:
        """Add an include or exclude rule pointing at another
        collection
        """
        rule_type = MembershipRuleType(rule_type)
        property_name = {
            MembershipRuleType.Include: "IncludeCollectionID",
            MembershipRuleType.Exclude: "ExcludeCollectionID"
        }.get(rule_type)
        if property_name is None:
            raise CmasValidationError("rule_type must be Include or Exclude")
        full_collection = self.resolve_collection(collection)
        collection_id = full_collection["CollectionID"]
        referenced = self.resolve_collection(referenced_collection)
        referenced_id = referenced["CollectionID"]
        if referenced_id.upper() == collection_id.upper():
            raise CmasValidationError(f"{collection_id} cannot reference itself")
        existing = [
            r for r in self.filter_membership_rules(full_collection.get("CollectionRules"), rule_type)
            if str(r.get(property_name, '')).upper() == referenced_id.upper()
        ]
        if len(existing) > 0:
            self.warn(f"{collection_id} already has an {rule_type.name.lower()} rule for {referenced_id}")
            return None
        rule = {
            "@odata.type": rule_type.value,
            "RuleName": referenced.get("Name") or referenced_id,
            property_name: referenced_id
        }
        return self.add_membership_rule(collection_id, rule)

    def add_include_membership_rule(self, collection, include_collection) -> dict:
        return self.add_collection_reference_rule(collection, include_collection, MembershipRuleType.Include)

    def add_exclude_membership_rule(self, collection, exclude_collection) -> dict:
        return self.add_collection_reference_rule(collection, exclude_collection, MembershipRuleType.Exclude)

    def remove_membership_rule(self, collection, rule_type: MembershipRuleType, rule_name: str = None,
                               resource_id: int = None, include_collection_id: str = None,
                               exclude_collection_id: str = None, force: bool = False) -> list:
        """Delete every rule of rule_type matching the supplied
        criteria. Returns the removed rules
        """
        if rule_name is None and resource_id is None and include_collection_id is None \
                and exclude_collection_id is None:
            raise CmasValidationError("Supply a rule name, ResourceID or collection to identify the rule")
        full_collection = self.resolve_collection(collection)
        collection_id = full_collection["CollectionID"]
        rules = self.filter_membership_rules(
            full_collection.get("CollectionRules"),
            rule_type = rule_type,
            rule_name = rule_name,
            resource_id = resource_id,
            include_collection_id = include_collection_id,
            exclude_collection_id = exclude_collection_id
        )
        if len(rules) == 0:
            self.warn(f"No matching {MembershipRuleType(rule_type).name} rules on {collection_id}")
            return []
        removed = []
        for rule in rules:
            if not self.confirm_action(f"Remove rule {rule.get('RuleName')} from {collection_id}", force):
                continue
            self.output(f"Removing rule {rule.get('RuleName')} from {collection_id}", 1)
            self.invoke_wmi_method(
                "SMS_Collection",
                "DeleteMembershipRule",
                body = {"collectionRule": rule},
                key = collection_id
            )
            removed.append(rule)
        return removed
