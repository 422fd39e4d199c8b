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

import logging
import os
import platform
import re
from enum import Enum

import keyring
import requests
from lxml import etree
from requests_ntlm import HttpNtlmAuth

logger = logging.getLogger(__name__)

def setup_credential():
    system = platform.system()
    if system == "Darwin":
        from keyring.backends import macOS
        keyring.set_keyring(macOS.Keyring())
    elif system == "Windows":
        from keyring.backends import Windows
        keyring.set_keyring(Windows.WinVaultKeyring())

setup_credential()

__all__ = [
    "CmasApiBase",
    "CmasApiError",
    "CmasConnectionError",
    "CmasRequestError",
    "CmasNotFoundError",
    "CmasConflictError",
    "CmasAmbiguousError",
    "CmasValidationError",
    "CmasScriptPropertyError",
    "CollectionType",
    "RefreshType",
    "MembershipRuleType",
    "ScriptApprovalState",
    "ClientOperationType",
]

# Errors
class CmasApiError(Exception):
    """Base error raised by the Admin Service client"""
    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)

    def __str__(self):
        if self.suggestion:
            return f"{self.message}\n\nSuggestion: {self.suggestion}"
        return self.message

class CmasConnectionError(CmasApiError):
    """No usable connection to the Admin Service"""

class CmasValidationError(CmasApiError):
    """Arguments failed a local precondition. Raised before any
    network call is made
    """

class CmasAmbiguousError(CmasApiError):
    """A lookup expected to return one object returned several"""

class CmasScriptPropertyError(CmasApiError):
    """The Admin Service did not return a lazy script property which is
    required to run the script
    """

class CmasRequestError(CmasApiError):
    """The Admin Service rejected a request"""
    def __init__(self, message: str, status_code: int = None, error_code: str = None,
                 error_message: str = None, suggestion: str = None):
        self.status_code = status_code
        self.error_code = error_code
        self.error_message = error_message
        super().__init__(message, suggestion)

class CmasNotFoundError(CmasRequestError):
    """The requested object does not exist"""

class CmasConflictError(CmasRequestError):
    """The object (or rule, or variable) already exists"""

# Enums
class CollectionType(Enum):
    """Valid CollectionType values"""
    Other = 0
    User = 1
    Device = 2

class RefreshType(Enum):
    """Valid RefreshType values"""
    Manual = 1
    Periodic = 2
    Continuous = 4
    Both = 6

class MembershipRuleType(Enum):
    """OData type tags of the collection rule classes"""
    Direct = "#AdminService.SMS_CollectionRuleDirect"
    Query = "#AdminService.SMS_CollectionRuleQuery"
    Include = "#AdminService.SMS_CollectionRuleIncludeCollection"
    Exclude = "#AdminService.SMS_CollectionRuleExcludeCollection"

class ScriptApprovalState(Enum):
    """Valid ApprovalState values for SMS_Scripts"""
    Waiting = 0
    Declined = 1
    Approved = 3

class ClientOperationType(Enum):
    """Valid Type values for InitiateClientOperationEx"""
    RunScript = 135

DEFAULT_LIMITING_COLLECTION = {
    CollectionType.Device: "SMS00001",
    CollectionType.User: "SMS00002"
}
# Error codes and messages the provider uses for objects which already exist
CONFLICT_ERROR_PATTERN = re.compile(
    r"already exists|duplicate|0x80041019|WBEM_E_ALREADY_EXISTS",
    re.IGNORECASE
)

class CmasApiBase:
    """Connection state and request plumbing shared by every Admin
    Service operation. One instance holds one connection; nothing is
    kept at module level
    """

    # Global version
    __version__ = "2026.10.18.0"

    input_variables = {
        "site_server_fqdn": {
            "required": True,
            "description": "The FQDN of the SMS provider hosting the Admin Service. Ex. mcm.domain.com"
        },
        "username": {
            "required": False,
            "description": "The account used for NTLM authentication. Defaults to %CMAS_USERNAME%"
        },
        "password": {
            "required": False,
            "description": "The password of username. Retrieved from the keyring when not supplied."
        },
        "keychain_password_service": {
            "required": False,
            "description": "The keyring service name used to store the password.",
            "default": "com.github.cmasapi"
        },
        "use_default_credentials": {
            "required": False,
            "description":
                "Send no explicit credential and rely on the session's integrated "
                "authentication. Implied when no username is available.",
            "default": False
        },
        "ssl_verification": {
            "required": False,
            "description":
                "Either a boolean, in which case it controls whether we verify the "
                "server's TLS certificate, or a string, in which case it must be a "
                "path to a CA bundle to use",
            "default": True
        },
        "timeout": {
            "required": False,
            "description": "A (connect, read) tuple of seconds applied to every request.",
            "default": (5, 60)
        },
        "verbose": {
            "required": False,
            "description": "Output verbosity, 0 through 4.",
            "default": 1
        },
        "confirm_destructive_actions": {
            "required": False,
            "description": "Prompt before removing collections, rules or variables.",
            "default": True
        }
    }

    def __init__(self, env: dict = None):
        self.env = dict(env or {})
        self.verbose = int(self.get_setting("verbose"))
        self.fqdn = None
        self.headers = None
        self.ntlm_auth = None
        self.site_code = None
        self.connected = False

    # Configuration
    def get_setting(self, name: str):
        """Return the configured value of an input variable, or its
        default
        """
        return self.env.get(name, self.input_variables.get(name, {}).get("default"))

    def initialize_headers(self):
        self.output("Generating headers.", 4)
        self.headers = {
            "Accept": "application/json",
            "Content-Type": "application/json"
        }

    def initialize_settings(self):
        self.output("Checking supplied parameters", 4)
        self.fqdn = self.get_setting("site_server_fqdn")
        if self.fqdn is None or self.fqdn == '':
            raise CmasValidationError("site_server_fqdn cannot be blank")
        self.keychain_service_name = self.get_setting("keychain_password_service")
        self.username = self.get_setting("username") or self.env.get(
            "CMAS_USERNAME", os.environ.get("CMAS_USERNAME", "")
            )
        self.use_default_credentials = bool(self.get_setting("use_default_credentials")) \
            or self.username == ''
        self.timeout = tuple(self.get_setting("timeout")) \
            if isinstance(self.get_setting("timeout"), (list, tuple)) \
            else self.get_setting("timeout")

    def initialize_ssl_verification(self):
        value = self.get_setting("ssl_verification")
        if isinstance(value, str) and value.lower() in ("true", "false"):
            value = value.lower() == "true"
        self.ssl_verification = value
        if self.ssl_verification is False:
            self.output("TLS certificate validation is disabled", 2)
            requests.packages.urllib3.disable_warnings()

    def get_ssl_verify_param(self):
        return self.ssl_verification

    def initialize_ntlm_auth(self):
        self.ntlm_auth = None
        _ = self.get_cmas_ntlm_auth()

    def initialize_all(self):
        self.initialize_headers()
        self.initialize_settings()
        self.initialize_ssl_verification()
        self.initialize_ntlm_auth()

    def get_cmas_ntlm_auth(self) -> HttpNtlmAuth:
        """Return an HttpNtlmAuth object built from the supplied
        credential or the one stored in the keyring. Returns None when
        default credentials are in use
        """
        if self.use_default_credentials:
            return None
        if self.ntlm_auth is not None and isinstance(self.ntlm_auth, HttpNtlmAuth):
            return self.ntlm_auth
        self.output("NTLM Auth object does not currently exist. It will be created", 4)
        password = self.get_setting("password")
        if password is None or password == '':
            try:
                password = keyring.get_password(self.keychain_service_name, self.username)
            except keyring.errors.KeyringError as e:
                raise CmasConnectionError(f"Failed to retrieve credentials: {e}") from e
            if password is None:
                raise CmasConnectionError(
                    f"No password found for {self.username} in {self.keychain_service_name}",
                    suggestion = "Supply a password or store one with "
                        f"'keyring set {self.keychain_service_name} {self.username}'"
                )
        self.ntlm_auth = HttpNtlmAuth(self.username, password)
        return self.ntlm_auth

    # Output
    def output(self, msg, verbose_level: int = 1):
        """Log msg when the configured verbosity reaches
        verbose_level
        """
        if self.verbose >= verbose_level:
            level = logging.INFO if verbose_level <= 1 else logging.DEBUG
            logger.log(level, "%s: %s", self.__class__.__name__, msg)

    def warn(self, msg):
        logger.warning("%s: %s", self.__class__.__name__, msg)

    def confirm_action(self, message: str, force: bool = False) -> bool:
        """Ask before a destructive call. Returns True when the call
        should go ahead
        """
        if force or not self.get_setting("confirm_destructive_actions"):
            return True
        answer = input(f"{message} [y/N]: ")
        if answer.strip().lower() in ("y", "yes"):
            return True
        self.output(f"Skipped: {message}", 1)
        return False

    # Connection
    def connect(self) -> dict:
        """Validate connectivity to the Admin Service and remember the
        site code of the provider
        """
        self.connected = False
        self.initialize_all()
        self.output(f"Connecting to {self.fqdn}", 1)
        try:
            response = self.invoke_api(
                path = "wmi/SMS_ProviderLocation",
                params = {"$filter": "ProviderForLocalSite eq true", "$select": "SiteCode"},
                require_connection = False
            )
        except CmasRequestError as e:
            raise CmasConnectionError(f"Failed to connect to {self.fqdn}: {e.message}") from e
        values = (response or {}).get("value", [])
        if len(values) == 0 or not values[0].get("SiteCode"):
            raise CmasConnectionError(f"No SiteCode returned from {self.fqdn}")
        self.site_code = values[0]["SiteCode"]
        self.connected = True
        self.output(f"Connected to site {self.site_code} on {self.fqdn}", 1)
        return self.get_connection()

    def disconnect(self):
        self.ntlm_auth = None
        self.site_code = None
        self.connected = False

    def get_connection(self) -> dict:
        return {
            "SiteServer": self.fqdn,
            "SiteCode": self.site_code,
            "UserName": None if self.use_default_credentials else self.username,
            "SkipCertificateCheck": self.ssl_verification is False
        }

    def require_connection(self):
        if not self.connected:
            raise CmasConnectionError(
                "There is no active Admin Service connection",
                suggestion = "Call connect() before any other operation"
            )

    # Requests
    def get_api_url(self, path: str) -> str:
        if path.lower().startswith("https://"):
            return path
        return f"https://{self.fqdn}/AdminService/{path.lstrip('/')}"

    def invoke_api(self, path: str, method: str = 'GET', body: dict = None, params: dict = None,
                   require_connection: bool = True):
        """Issue one request against the Admin Service and return the
        decoded JSON body
        """
        if require_connection:
            self.require_connection()
        url = self.get_api_url(path)
        self.output(f"{method} {url}", 3)
        if params:
            self.output(f"Params: {params}", 4)
        if body is not None:
            self.output(f"Body: {body}", 4)
        try:
            response = requests.request(
                method = method,
                url = url,
                auth = self.get_cmas_ntlm_auth(),
                headers = self.headers,
                json = body,
                params = params,
                verify = self.get_ssl_verify_param(),
                timeout = self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise CmasConnectionError(f"{method} {url} failed: {e}") from e
        self.output(f"Status Code [{response.status_code}]", 3)
        if not response.ok:
            raise self.new_request_error(response, method, url)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise CmasRequestError(
                f"{method} {url} returned a body which is not JSON",
                status_code = response.status_code
            ) from e

    @staticmethod
    def new_request_error(response: requests.Response, method: str, url: str) -> CmasRequestError:
        """Turn a failed response into the matching CmasRequestError,
        reading the OData error object when the service sent one
        """
        error_code = None
        error_message = None
        try:
            error = response.json().get("error", {})
            if isinstance(error, dict):
                error_code = error.get("code")
                error_message = error.get("message")
                if isinstance(error_message, dict):
                    error_message = error_message.get("value")
        except ValueError:
            error_message = response.text or None
        message = f"{method} {url} failed. Status [{response.status_code}] Reason [{response.reason or ''}]"
        if error_message:
            message = f"{message} {error_message}"
        params = {
            "status_code": response.status_code,
            "error_code": error_code,
            "error_message": error_message
        }
        if response.status_code == 404:
            return CmasNotFoundError(message, **params)
        if response.status_code == 409 or CONFLICT_ERROR_PATTERN.search(
                f"{error_code or ''} {error_message or ''}"):
            return CmasConflictError(message, **params)
        return CmasRequestError(message, **params)

    def get_wmi_objects(self, class_name: str, odata_filter: str = None, select: list = None) -> list:
        """Return every instance of a WMI class matching an OData
        filter, following server side paging
        """
        params = {}
        if odata_filter:
            params["$filter"] = odata_filter
        if select:
            params["$select"] = ",".join(select) if isinstance(select, (list, tuple)) else select
        response = self.invoke_api(f"wmi/{class_name}", params = params or None) or {}
        values = list(response.get("value", []))
        while (next_link := response.get("@odata.nextLink")):
            self.output(f"Following next link for {class_name}", 4)
            response = self.invoke_api(next_link) or {}
            values.extend(response.get("value", []))
        self.output(f"{len(values)} {class_name} objects returned from {self.fqdn}", 3)
        return values

    def get_wmi_object(self, class_name: str, key) -> dict:
        """Return one instance by key, including lazy properties. Returns
        None when it does not exist
        """
        try:
            response = self.invoke_api(f"wmi/{class_name}({self.format_odata_literal(key)})")
        except CmasNotFoundError:
            return None
        values = (response or {}).get("value", [])
        if len(values) == 0:
            return None
        return values[0]

    def invoke_wmi_method(self, class_name: str, method_name: str, body: dict = None, key = None):
        """Call a static WMI method, or an instance method when key is
        supplied
        """
        if key is None:
            path = f"wmi/{class_name}.{method_name}"
        else:
            path = f"wmi/{class_name}({self.format_odata_literal(key)})/AdminService.{method_name}"
        return self.invoke_api(path, method = 'POST', body = body or {})

    # OData and wildcard helpers
    @staticmethod
    def format_odata_literal(value) -> str:
        """Render a value as an OData literal"""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, int):
            return str(value)
        return "'" + str(value).replace("'", "''") + "'"

    @staticmethod
    def has_wildcard(value) -> bool:
        return isinstance(value, str) and ('*' in value or '?' in value)

    @staticmethod
    def convert_wildcard_to_regex(pattern: str) -> str:
        """Convert a wildcard pattern ('*' and '?') to an anchored
        regular expression
        """
        regex = ''.join(
            '.*' if c == '*' else '.' if c == '?' else re.escape(c) for c in pattern
        )
        return f"^{regex}$"

    @classmethod
    def new_odata_filter(cls, property_name: str, value) -> str:
        """Return a filter clause for property_name. Wildcard values
        narrow the query with their literal prefix; the caller finishes
        matching with select_by_wildcard
        """
        if not cls.has_wildcard(value):
            return f"{property_name} eq {cls.format_odata_literal(value)}"
        prefix = re.split(r"[*?]", value, maxsplit = 1)[0]
        if prefix == '':
            return None
        return f"startswith({property_name},{cls.format_odata_literal(prefix)}) eq true"

    @staticmethod
    def join_odata_filters(*clauses) -> str:
        filter_clauses = [c for c in clauses if c]
        if len(filter_clauses) == 0:
            return None
        return ' and '.join(filter_clauses)

    @classmethod
    def select_by_wildcard(cls, objects: list, property_name: str, pattern: str) -> list:
        """Return the objects whose property matches a wildcard pattern,
        case insensitively
        """
        if pattern is None:
            return list(objects)
        regex = re.compile(cls.convert_wildcard_to_regex(pattern), re.IGNORECASE)
        return [o for o in objects if regex.match(str(o.get(property_name, '')))]

    @staticmethod
    def try_cast(type_name, value, default = None):
        """Cast the supplied value as the indicated type. If it cannot
        cast, return a default value
        """
        try:
            return type_name(value)
        except (TypeError, ValueError):
            return default

    @staticmethod
    def strip_namespaces(element):
        """Remove all namespaces from an XML element for easier XPath
        query support
        """
        for e in element.iter():
            if e.tag is not etree.Comment:
                e.tag = etree.QName(e).localname
        etree.cleanup_namespaces(element)
        return element

    @staticmethod
    def select_one(objects: list, description: str) -> dict:
        """Return the only item of a lookup result"""
        if len(objects) == 0:
            raise CmasNotFoundError(f"{description} was not found")
        if len(objects) > 1:
            raise CmasAmbiguousError(
                f"{description} must be unique and return one result. {len(objects)} were returned"
            )
        return objects[0]
