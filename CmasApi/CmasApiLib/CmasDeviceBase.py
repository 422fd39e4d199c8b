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
    CmasApiBase,
    CmasValidationError,
)

class CmasDeviceBase(CmasApiBase):
    """Look up SMS_R_System devices"""

    def get_devices(self, name: str = None, resource_id: int = None, select: list = None) -> list:
        """Search for devices by name (wildcards allowed) and/or
        ResourceID. Vendor properties are returned unmodified
        """
        self.output(f"Searching for devices. Name [{name}] ResourceID [{resource_id}]", 2)
        if select and name is not None and "Name" not in select:
            select = list(select) + ["Name"]
        devices = self.get_wmi_objects(
            "SMS_R_System",
            odata_filter = self.join_odata_filters(
                self.new_odata_filter("Name", name) if name is not None else None,
                self.new_odata_filter("ResourceId", int(resource_id)) if resource_id is not None else None
            ),
            select = select
        )
        if self.has_wildcard(name):
            devices = self.select_by_wildcard(devices, "Name", name)
        return devices

    def get_device(self, name: str = None, resource_id: int = None) -> dict:
        """Return exactly one device"""
        if name is None and resource_id is None:
            raise CmasValidationError("Supply a device name or a ResourceID")
        devices = self.get_devices(name = name, resource_id = resource_id)
        return self.select_one(devices, f"Device {name if name is not None else resource_id}")

    def resolve_resource_ids(self, device_names: list) -> list:
        """Return the ResourceID of every named device, in order"""
        resource_ids = []
        for device_name in device_names:
            if self.has_wildcard(device_name):
                raise CmasValidationError(f"Device name {device_name} may not contain wildcards")
            device = self.get_device(name = device_name)
            self.output(f"{device_name} resolved to ResourceID {device['ResourceId']}", 3)
            resource_ids.append(device["ResourceId"])
        return resource_ids

    def get_device_resource_id(self, device) -> int:
        """Accept a ResourceID, a device name or a device object and
        return the ResourceID
        """
        if isinstance(device, dict):
            return int(device["ResourceId"])
        if (resource_id := self.try_cast(int, device)) is not None:
            return resource_id
        return int(self.get_device(name = device)["ResourceId"])
