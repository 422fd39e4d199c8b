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
    CmasApiError,
    CmasConnectionError,
    CmasRequestError,
    CmasNotFoundError,
    CmasConflictError,
    CmasAmbiguousError,
    CmasValidationError,
    CmasScriptPropertyError,
    CollectionType,
    RefreshType,
    MembershipRuleType,
    ScriptApprovalState,
)
from CmasApi.CmasApiLib.CmasVariableBase import VariableScope
from CmasApi.CmasClient import CmasClient

__all__ = [
    "CmasClient",
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
    "VariableScope",
]
