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

from enum import Enum
from copy import deepcopy

from CmasApi.CmasApiLib.CmasApiBase import (
    CmasConflictError,
    CmasNotFoundError,
    CmasValidationError,
)
from CmasApi.CmasApiLib.CmasCollectionBase import CmasCollectionBase
from CmasApi.CmasApiLib.CmasDeviceBase import CmasDeviceBase

DEFAULT_LOCALE_ID = 1033

class VariableScope(Enum):
    """Where a variable is stored"""
    Device = "Device"
    Collection = "Collection"

SETTINGS_CLASSES = {
    VariableScope.Device: {
        "class_name": "SMS_MachineSettings",
        "key": "ResourceID",
        "array": "MachineVariables"
    },
    VariableScope.Collection: {
        "class_name": "SMS_CollectionSettings",
        "key": "CollectionID",
        "array": "CollectionVariables"
    }
}

class CmasVariableBase(CmasCollectionBase, CmasDeviceBase):
    """Device and collection variables.
    The variables of a device or a collection are an embedded array on
    a single settings object. The service has no per variable update,
    so every change here reads the settings object, edits the array and
    writes the whole object back
    """

    def get_settings(self, scope: VariableScope, key) -> dict:
        """Return the settings object of a device or collection, or
        None when none exists yet
        """
        settings_class = SETTINGS_CLASSES[VariableScope(scope)]
        self.output(f"Getting {settings_class['class_name']} for {key}", 3)
        return self.get_wmi_object(settings_class["class_name"], key)

    def get_variables(self, scope: VariableScope, key, name: str = None) -> list:
        settings = self.get_settings(scope, key)
        if settings is None:
            return []
        variables = settings.get(SETTINGS_CLASSES[VariableScope(scope)]["array"]) or []
        return self.select_by_wildcard(variables, "Name", name)

    def new_settings_body(self, scope: VariableScope, key, variables: list) -> dict:
        settings_class = SETTINGS_CLASSES[VariableScope(scope)]
        body = {
            settings_class["key"]: key,
            "LocaleID": DEFAULT_LOCALE_ID,
            settings_class["array"]: variables
        }
        if scope == VariableScope.Device:
            body["SourceSite"] = self.site_code
        return body

    def save_variables(self, scope: VariableScope, key, settings: dict, variables: list):
        """Write the complete variable array back. Creates the settings
        object when it does not exist
        """
        settings_class = SETTINGS_CLASSES[VariableScope(scope)]
        if settings is None:
            self.output(f"Creating {settings_class['class_name']} for {key}", 2)
            return self.invoke_api(
                f"wmi/{settings_class['class_name']}",
                method = 'POST',
                body = self.new_settings_body(scope, key, variables)
            )
        body = {
            k: v for k, v in deepcopy(settings).items()
            if not k.startswith("@odata.") or k == "@odata.type"
        }
        body[settings_class["array"]] = variables
        self.output(f"Updating {settings_class['class_name']} for {key} with {len(variables)} variables", 2)
        return self.invoke_api(
            f"wmi/{settings_class['class_name']}({self.format_odata_literal(key)})",
            method = 'PUT',
            body = body
        )

    @staticmethod
    def find_variable(variables: list, name: str) -> dict:
        return next((v for v in variables if str(v.get("Name", '')).lower() == name.lower()), None)

    def new_variable(self, scope: VariableScope, key, name: str, value: str, is_masked: bool = False) -> dict:
        if not name or self.has_wildcard(name):
            raise CmasValidationError("A variable name is required and may not contain wildcards")
        settings = self.get_settings(scope, key)
        variables = list((settings or {}).get(SETTINGS_CLASSES[VariableScope(scope)]["array"]) or [])
        if self.find_variable(variables, name) is not None:
            raise CmasConflictError(
                f"Variable {name} already exists on {key}",
                suggestion = "Use the set_*_variable operation to change its value"
            )
        variable = {"Name": name, "Value": "" if value is None else str(value), "IsMasked": bool(is_masked)}
        variables.append(variable)
        self.save_variables(scope, key, settings, variables)
        self.output(f"Created variable {name} on {key}", 1)
        return variable

    def set_variable(self, scope: VariableScope, key, name: str, value: str = None, is_masked: bool = None) -> dict:
        settings = self.get_settings(scope, key)
        variables = deepcopy((settings or {}).get(SETTINGS_CLASSES[VariableScope(scope)]["array"]) or [])
        variable = self.find_variable(variables, name)
        if variable is None:
            raise CmasNotFoundError(f"Variable {name} was not found on {key}")
        if value is not None:
            variable["Value"] = str(value)
        if is_masked is not None:
            variable["IsMasked"] = bool(is_masked)
        self.save_variables(scope, key, settings, variables)
        self.output(f"Updated variable {name} on {key}", 1)
        return variable

    def remove_variable(self, scope: VariableScope, key, name: str, force: bool = False) -> list:
        """Remove every variable matching a wildcard name. The settings
        object is kept, with an empty array when nothing is left
        """
        settings = self.get_settings(scope, key)
        array_name = SETTINGS_CLASSES[VariableScope(scope)]["array"]
        variables = (settings or {}).get(array_name) or []
        matches = self.select_by_wildcard(variables, "Name", name)
        if len(matches) == 0:
            self.warn(f"No variables matching {name} on {key}")
            return []
        removed = []
        for variable in matches:
            if self.confirm_action(f"Remove variable {variable['Name']} from {key}", force):
                removed.append(variable)
        if len(removed) == 0:
            return []
        remaining = [v for v in variables if not any(v is r for r in removed)]
        self.save_variables(scope, key, settings, remaining)
        self.output(f"Removed {len(removed)} variables from {key}", 1)
        return removed

    # Device variables
    def get_device_variables(self, device, name: str = None) -> list:
        return self.get_variables(VariableScope.Device, self.get_device_resource_id(device), name)

    def new_device_variable(self, device, name: str, value: str, is_masked: bool = False) -> dict:
        return self.new_variable(VariableScope.Device, self.get_device_resource_id(device), name, value, is_masked)

    def set_device_variable(self, device, name: str, value: str = None, is_masked: bool = None) -> dict:
        return self.set_variable(VariableScope.Device, self.get_device_resource_id(device), name, value, is_masked)

    def remove_device_variable(self, device, name: str, force: bool = False) -> list:
        return self.remove_variable(VariableScope.Device, self.get_device_resource_id(device), name, force)

    # Collection variables
    def get_collection_variables(self, collection, name: str = None) -> list:
        return self.get_variables(VariableScope.Collection, self.resolve_collection_id(collection), name)

    def new_collection_variable(self, collection, name: str, value: str, is_masked: bool = False) -> dict:
        return self.new_variable(
            VariableScope.Collection, self.resolve_collection_id(collection), name, value, is_masked
        )

    def set_collection_variable(self, collection, name: str, value: str = None, is_masked: bool = None) -> dict:
        return self.set_variable(
            VariableScope.Collection, self.resolve_collection_id(collection), name, value, is_masked
        )

    def remove_collection_variable(self, collection, name: str, force: bool = False) -> list:
        return self.remove_variable(VariableScope.Collection, self.resolve_collection_id(collection), name, force)
