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

import base64
import binascii
import hashlib
import json
import re

from lxml import etree

from CmasApi.CmasApiLib.CmasApiBase import (
    CmasRequestError,
    CmasScriptPropertyError,
    CmasValidationError,
    ClientOperationType,
    ScriptApprovalState,
    DEFAULT_LIMITING_COLLECTION,
    CollectionType,
)
from CmasApi.CmasApiLib.CmasCollectionBase import CmasCollectionBase
from CmasApi.CmasApiLib.CmasDeviceBase import CmasDeviceBase

XML_DECLARATION_PATTERN = re.compile(r"^\s*<\?xml[^>]*\?>")

class CmasScriptBase(CmasCollectionBase, CmasDeviceBase):
    """Run approved scripts on devices and read back their status.

    Running a script is a client operation of type 135. Its Param is a
    base64 encoded ScriptContent XML document which carries the script
    identity and a ScriptParameters block. The client recomputes the
    ParameterGroupHash (SHA256 over the UTF-16LE bytes of that block)
    and refuses to run the script when it differs
    """

    def get_scripts(self, name: str = None, script_guid: str = None, approved_only: bool = False) -> list:
        """Search SMS_Scripts by name (wildcards allowed) and/or
        ScriptGuid
        """
        self.output(f"Searching for scripts. Name [{name}] ScriptGuid [{script_guid}]", 2)
        scripts = self.get_wmi_objects(
            "SMS_Scripts",
            odata_filter = self.join_odata_filters(
                self.new_odata_filter("ScriptName", name) if name is not None else None,
                self.new_odata_filter("ScriptGuid", script_guid) if script_guid is not None else None,
                self.new_odata_filter("ApprovalState", ScriptApprovalState.Approved.value) if approved_only else None
            )
        )
        if self.has_wildcard(name):
            scripts = self.select_by_wildcard(scripts, "ScriptName", name)
        return scripts

    def get_script(self, name: str = None, script_guid: str = None) -> dict:
        """Return exactly one script, re-fetched by ScriptGuid to pick up
        the lazy properties (ScriptHash, ScriptVersion, ParamsDefinition)
        which filtered queries leave out
        """
        if name is not None and script_guid is not None:
            raise CmasValidationError("Identify the script by name or by ScriptGuid, not both")
        if name is None and script_guid is None:
            raise CmasValidationError("A script name or ScriptGuid is required")
        if self.has_wildcard(name):
            raise CmasValidationError("Wildcards are not allowed when a single script is expected")
        script = self.select_one(
            self.get_scripts(name = name, script_guid = script_guid),
            f"Script {name if name is not None else script_guid}"
        )
        self.output(f"Getting lazy properties for script {script['ScriptGuid']}", 3)
        full_script = self.get_wmi_object("SMS_Scripts", script["ScriptGuid"]) or {}
        merged = dict(script)
        merged.update({k: v for k, v in full_script.items() if v is not None and v != ''})
        return merged

    @staticmethod
    def decode_xml_bytes(raw: bytes) -> str:
        """Decode an XML document which may be UTF-16 or UTF-8 and drop
        its declaration so lxml accepts the string
        """
        if raw.startswith(b'\xff\xfe') or raw.startswith(b'\xfe\xff'):
            text = raw.decode('utf-16')
        elif raw.startswith(b'\xef\xbb\xbf'):
            text = raw.decode('utf-8-sig')
        elif len(raw) > 1 and raw[1] == 0:
            text = raw.decode('utf-16-le')
        else:
            text = raw.decode('utf-8')
        return XML_DECLARATION_PATTERN.sub('', text, count = 1)

    def get_script_parameters(self, script: dict) -> list:
        """Return the parameters declared in a script's
        ParamsDefinition. Returns an empty list when it has none
        """
        params_definition = script.get("ParamsDefinition")
        if params_definition is None or params_definition == '':
            return []
        try:
            xml_string = self.decode_xml_bytes(base64.b64decode(params_definition))
            root = self.strip_namespaces(etree.XML(xml_string))
        except (binascii.Error, UnicodeDecodeError, etree.XMLSyntaxError) as e:
            raise CmasScriptPropertyError(
                f"ParamsDefinition of script {script.get('ScriptName')} could not be read: {e}"
            ) from e

        def child_text(node, tag: str) -> str:
            child = node.find(tag)
            return child.text if child is not None and child.text is not None else ''

        parameters = []
        for node in root.iter("ScriptParameter"):
            parameters.append({
                "Name": child_text(node, "Name"),
                "Type": child_text(node, "Type") or "System.String",
                "Description": child_text(node, "Description"),
                "IsRequired": child_text(node, "IsRequired").strip().lower() == "true",
                "IsHidden": child_text(node, "IsHidden").strip().lower() == "true",
                "DefaultValue": child_text(node, "DefaultValue")
            })
        self.output(f"Script {script.get('ScriptName')} declares {len(parameters)} parameters", 3)
        return parameters

    @staticmethod
    def format_parameter_value(value) -> str:
        if value is None:
            return ''
        if isinstance(value, bool):
            return "True" if value else "False"
        return str(value)

    def new_script_parameters_xml(self, parameter_definitions: list, values: dict = None) -> str:
        """Build the ScriptParameters block sent with a script run.
        Every required, visible parameter must have a value; hidden
        parameters always take their default. Returns an empty string
        when the script declares no parameters
        """
        values = values or {}
        values_by_name = {k.lower(): v for k, v in values.items()}
        declared = {p["Name"].lower() for p in parameter_definitions}
        for name in values:
            if name.lower() not in declared:
                self.warn(f"Parameter {name} is not declared by the script and will be ignored")
        missing = [
            p["Name"] for p in parameter_definitions
            if p["IsRequired"] and not p["IsHidden"]
            and self.format_parameter_value(values_by_name.get(p["Name"].lower())) == ''
        ]
        if len(missing) > 0:
            raise CmasValidationError(f"Missing required script parameters: {', '.join(missing)}")
        if len(parameter_definitions) == 0:
            return ''
        root = etree.Element("ScriptParameters")
        for p in parameter_definitions:
            if p["IsHidden"] or values_by_name.get(p["Name"].lower()) is None:
                value = p["DefaultValue"]
            else:
                value = values_by_name[p["Name"].lower()]
            node = etree.SubElement(root, "ScriptParameter")
            node.set("ParameterGroupGuid", "")
            node.set("ParameterGroupName", "PG_")
            node.set("ParameterName", p["Name"])
            node.set("ParameterDataType", p["Type"])
            node.set("ParameterVisibility", "0")
            node.set("ParameterType", "0")
            try:
                node.set("ParameterValue", self.format_parameter_value(value))
            except ValueError as e:
                raise CmasValidationError(
                    f"Value of script parameter {p['Name']} cannot be sent: {e}",
                    suggestion = "Remove control characters from the value"
                ) from e
        return etree.tostring(root, encoding = 'unicode')

    @staticmethod
    def get_parameter_group_hash(parameters_xml: str) -> str:
        """Uppercase hex SHA256 of the UTF-16LE bytes of the
        ScriptParameters block
        """
        return hashlib.sha256(parameters_xml.encode('utf-16-le')).hexdigest().upper()

    def new_script_content_xml(self, script: dict, parameters_xml: str) -> str:
        """Build the ScriptContent document which InitiateClientOperationEx
        expects in Param (before base64 encoding)
        """
        for property_name in ("ScriptGuid", "ScriptVersion", "ScriptHash"):
            if script.get(property_name) is None or script.get(property_name) == '':
                raise CmasScriptPropertyError(
                    f"Script {script.get('ScriptName')} has no {property_name}",
                    suggestion = "The Admin Service did not return this lazy property. "
                        "The script cannot be run until it does."
                )
        content = etree.Element("ScriptContent")
        content.set("ScriptGuid", str(script["ScriptGuid"]))
        etree.SubElement(content, "ScriptVersion").text = str(script["ScriptVersion"])
        etree.SubElement(content, "ScriptType").text = str(script.get("ScriptType", 0))
        script_hash = etree.SubElement(content, "ScriptHash")
        script_hash.set("ScriptHashAlg", script.get("ScriptHashAlgorithm") or "SHA256")
        script_hash.text = str(script["ScriptHash"])
        if parameters_xml:
            content.append(etree.XML(parameters_xml))
            group_hash = self.get_parameter_group_hash(parameters_xml)
        else:
            etree.SubElement(content, "ScriptParameters")
            group_hash = None
        parameter_group_hash = etree.SubElement(content, "ParameterGroupHash")
        parameter_group_hash.set("ParameterHashAlg", "SHA256")
        parameter_group_hash.text = group_hash
        return etree.tostring(content, encoding = 'unicode')

    def invoke_script(self, name: str = None, script_guid: str = None, collection_id: str = None,
                      resource_ids: list = None, device_names: list = None, parameters: dict = None) -> dict:
        """Start an approved script on a collection and/or a list of
        devices. Returns the client operation id; the run itself is
        asynchronous, see get_script_execution_status
        """
        if name is not None and script_guid is not None:
            raise CmasValidationError("Identify the script by name or by ScriptGuid, not both")
        if name is None and script_guid is None:
            raise CmasValidationError("A script name or ScriptGuid is required")
        if not collection_id and not resource_ids and not device_names:
            raise CmasValidationError("Supply a target collection, ResourceIDs or device names")
        script = self.get_script(name = name, script_guid = script_guid)
        script_label = script.get("ScriptName") or script["ScriptGuid"]
        if not script.get("ScriptHash"):
            raise CmasScriptPropertyError(
                f"The Admin Service did not return ScriptHash for script {script_label}",
                suggestion = "ScriptHash is a lazy property; it is required to run the script"
            )
        if script.get("ApprovalState") != ScriptApprovalState.Approved.value:
            raise CmasValidationError(f"Script {script_label} is not approved")
        if parameters and not script.get("ParamsDefinition"):
            raise CmasScriptPropertyError(
                f"The Admin Service did not return ParamsDefinition for script {script_label}; "
                "parameters cannot be sent"
            )
        parameters_xml = self.new_script_parameters_xml(self.get_script_parameters(script), parameters)
        content_xml = self.new_script_content_xml(script, parameters_xml)
        self.output(f"Script content: {content_xml}", 4)

        target_resource_ids = [int(r) for r in resource_ids or []] \
            + [int(r) for r in self.resolve_resource_ids(device_names or [])]
        target_collection_id = self.resolve_collection_id(collection_id) if collection_id \
            else DEFAULT_LIMITING_COLLECTION[CollectionType.Device]
        body = {
            "Type": ClientOperationType.RunScript.value,
            "TargetCollectionID": target_collection_id,
            "TargetResourceIDs": target_resource_ids,
            "RandomizationWindow": None,
            "Param": base64.b64encode(content_xml.encode('utf-8')).decode('ascii')
        }
        self.output(
            f"Running script {script_label} on collection {target_collection_id} "
            f"and {len(target_resource_ids)} devices",
            1
        )
        response = self.invoke_wmi_method("SMS_ClientOperation", "InitiateClientOperationEx", body = body) or {}
        if response.get("ReturnValue", 0) != 0 or response.get("OperationID") is None:
            raise CmasRequestError(
                f"InitiateClientOperationEx returned {response.get('ReturnValue')} for script {script_label}"
            )
        self.output(f"Client operation {response['OperationID']} created", 1)
        return {
            "OperationID": response["OperationID"],
            "ScriptGuid": script["ScriptGuid"],
            "ScriptName": script.get("ScriptName"),
            "TargetCollectionID": target_collection_id,
            "TargetResourceIDs": target_resource_ids
        }

    @staticmethod
    def convert_script_output(status: dict) -> dict:
        """Decode a client's ScriptOutput as JSON, keeping the raw text
        when it is not JSON
        """
        converted = dict(status)
        raw_output = status.get("ScriptOutput")
        converted["RawScriptOutput"] = raw_output
        if isinstance(raw_output, str) and raw_output.strip() != '':
            try:
                converted["ScriptOutput"] = json.loads(raw_output)
            except ValueError:
                converted["ScriptOutput"] = raw_output
        return converted

    def get_script_execution_status(self, operation_id: int = None, collection_id: str = None,
                                    script_name: str = None) -> list:
        """Return a snapshot of script execution tasks. Tasks with
        finished clients carry their per client results in
        ClientStatuses
        """
        if operation_id is None and collection_id is None and script_name is None:
            raise CmasValidationError("Supply an operation id, a CollectionID or a script name")
        tasks = self.get_wmi_objects(
            "SMS_ScriptsExecutionTask",
            odata_filter = self.join_odata_filters(
                self.new_odata_filter("ClientOperationId", int(operation_id)) if operation_id is not None else None,
                self.new_odata_filter("CollectionId", collection_id) if collection_id is not None else None,
                self.new_odata_filter("ScriptName", script_name) if script_name is not None else None
            )
        )
        if self.has_wildcard(script_name):
            tasks = self.select_by_wildcard(tasks, "ScriptName", script_name)
        results = []
        for task in tasks:
            task = dict(task)
            finished = (task.get("CompletedClients") or 0) + (task.get("FailedClients") or 0)
            if finished > 0:
                self.output(f"{finished} clients finished operation {task['ClientOperationId']}", 2)
                statuses = self.get_wmi_objects(
                    "SMS_ScriptsExecutionStatus",
                    odata_filter = self.new_odata_filter("ClientOperationId", int(task["ClientOperationId"]))
                )
                task["ClientStatuses"] = [self.convert_script_output(s) for s in statuses]
            else:
                task["ClientStatuses"] = []
            results.append(task)
        return results
