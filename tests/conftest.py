"""
Pytest configuration and shared fixtures.
"""

import pytest

from CmasApi import CmasClient
from fakes import SITE_SERVER, FakeTransport


@pytest.fixture
def transport(monkeypatch):
    """Patch requests.request with a FakeTransport."""
    fake = FakeTransport()
    monkeypatch.setattr("requests.request", fake)
    return fake


@pytest.fixture
def client_env():
    return {
        "site_server_fqdn": SITE_SERVER,
        "username": "CONTOSO\\svc-cmas",
        "password": "P@ssw0rd",
        "confirm_destructive_actions": False,
    }


@pytest.fixture
def client(transport, client_env):
    """A client connected to site PS1, with the connect call cleared."""
    transport.add("GET", "wmi/SMS_ProviderLocation", {"value": [{"SiteCode": "PS1"}]}, once=True)
    cmas = CmasClient(env=client_env)
    cmas.connect()
    transport.calls.clear()
    return cmas


@pytest.fixture
def all_servers_collection():
    return {
        "CollectionID": "PS100010",
        "Name": "All Servers",
        "CollectionType": 2,
        "RefreshType": 2,
        "LimitToCollectionID": "SMS00001",
        "Comment": "",
    }


@pytest.fixture
def mixed_rules():
    return [
        {
            "@odata.type": "#AdminService.SMS_CollectionRuleDirect",
            "RuleName": "SRV01",
            "ResourceClassName": "SMS_R_System",
            "ResourceID": 16777220,
        },
        {
            "@odata.type": "#AdminService.SMS_CollectionRuleQuery",
            "RuleName": "Server OS",
            "QueryExpression": "select * from SMS_R_System where OperatingSystemNameandVersion like '%Server%'",
            "QueryID": 1,
        },
        {
            "@odata.type": "#AdminService.SMS_CollectionRuleDirect",
            "RuleName": "SRV02",
            "ResourceClassName": "SMS_R_System",
            "ResourceID": 16777221,
        },
        {
            "@odata.type": "#AdminService.SMS_CollectionRuleIncludeCollection",
            "RuleName": "Domain Controllers",
            "IncludeCollectionID": "PS100011",
        },
        {
            "@odata.type": "#AdminService.SMS_CollectionRuleExcludeCollection",
            "RuleName": "Decommissioned",
            "ExcludeCollectionID": "PS100012",
        },
    ]


@pytest.fixture
def collection_with_rules(transport, all_servers_collection, mixed_rules):
    """Register the lookup and keyed fetch of PS100010 with its rules."""
    full = dict(all_servers_collection, CollectionRules=mixed_rules)
    transport.add(
        "GET",
        "wmi/SMS_Collection",
        {"value": [all_servers_collection]},
        params={"$filter": "CollectionID eq 'PS100010'"},
    )
    transport.add("GET", "wmi/SMS_Collection('PS100010')", {"value": [full]})
    return full
