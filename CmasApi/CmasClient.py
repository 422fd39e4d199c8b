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

from CmasApi.CmasApiLib.CmasMembershipRuleBase import CmasMembershipRuleBase
from CmasApi.CmasApiLib.CmasScriptBase import CmasScriptBase
from CmasApi.CmasApiLib.CmasVariableBase import CmasVariableBase

__all__ = ["CmasClient"]

class CmasClient(CmasMembershipRuleBase, CmasVariableBase, CmasScriptBase):
    description = """Client for the Configuration Manager Admin Service.
    Create one per site server, call connect(), then use the
    collection, membership rule, device, variable and script
    operations. Configuration is read from the env mapping; see
    input_variables for the supported keys
    """

    __doc__ = description

    @classmethod
    def connect_to(cls, site_server_fqdn: str, **settings) -> "CmasClient":
        """Create a client for site_server_fqdn and connect it"""
        client = cls(env = dict(settings, site_server_fqdn = site_server_fqdn))
        client.connect()
        return client
