"""
Tests for collection membership rules.
"""

import logging

import pytest

from CmasApi import CmasValidationError, MembershipRuleType
from CmasApi.CmasApiLib.CmasMembershipRuleBase import CmasMembershipRuleBase

ADD_RULE_PATH = "wmi/SMS_Collection('PS100010')/AdminService.AddMembershipRule"
DELETE_RULE_PATH = "wmi/SMS_Collection('PS100010')/AdminService.DeleteMembershipRule"


class TestSplitMembershipRules:
    """Partitioning CollectionRules by @odata.type."""

    def test_partition_is_disjoint_and_complete(self, mixed_rules):
        unknown = {"@odata.type": "#AdminService.SMS_CollectionRuleSomethingNew", "RuleName": "?"}
        rules = mixed_rules + [unknown]

        buckets = CmasMembershipRuleBase.split_membership_rules(rules)

        assert [r["RuleName"] for r in buckets["Direct"]] == ["SRV01", "SRV02"]
        assert [r["RuleName"] for r in buckets["Query"]] == ["Server OS"]
        assert [r["RuleName"] for r in buckets["Include"]] == ["Domain Controllers"]
        assert [r["RuleName"] for r in buckets["Exclude"]] == ["Decommissioned"]
        assert buckets["Unknown"] == [unknown]
        flattened = [rule for bucket in buckets.values() for rule in bucket]
        assert len(flattened) == len(rules)
        assert all(any(rule is r for r in flattened) for rule in rules)

    def test_empty_rules(self):
        buckets = CmasMembershipRuleBase.split_membership_rules(None)

        assert all(bucket == [] for bucket in buckets.values())


class TestGetMembershipRules:
    """get_membership_rules()."""

    def test_all_rules(self, client, collection_with_rules, mixed_rules):
        assert client.get_membership_rules("PS100010") == mixed_rules

    def test_by_type(self, client, collection_with_rules):
        rules = client.get_membership_rules("PS100010", rule_type=MembershipRuleType.Direct)

        assert [r["ResourceID"] for r in rules] == [16777220, 16777221]

    def test_by_rule_name_wildcard(self, client, collection_with_rules):
        rules = client.get_membership_rules("PS100010", rule_name="srv*")

        assert [r["RuleName"] for r in rules] == ["SRV01", "SRV02"]

    def test_by_resource_id(self, client, collection_with_rules):
        rules = client.get_membership_rules("PS100010", rule_type=MembershipRuleType.Direct, resource_id=16777221)

        assert [r["RuleName"] for r in rules] == ["SRV02"]

    def test_by_include_collection(self, client, collection_with_rules):
        rules = client.get_membership_rules("PS100010", include_collection_id="ps100011")

        assert [r["RuleName"] for r in rules] == ["Domain Controllers"]


class TestAddMembershipRules:
    """Adding direct, query, include and exclude rules."""

    def test_direct_rules_skip_existing_members(self, client, transport, collection_with_rules, caplog):
        transport.add(
            "GET", "wmi/SMS_R_System", {"value": [{"Name": "SRV01", "ResourceId": 16777220}]},
            params={"$filter": "Name eq 'SRV01'"},
        )
        transport.add(
            "GET", "wmi/SMS_R_System", {"value": [{"Name": "SRV03", "ResourceId": 16777222}]},
            params={"$filter": "Name eq 'SRV03'"},
        )
        transport.add("POST", ADD_RULE_PATH, {"ReturnValue": 0})

        with caplog.at_level(logging.WARNING):
            added = client.add_direct_membership_rule("PS100010", device_names=["SRV01", "SRV03"])

        assert [r["ResourceID"] for r in added] == [16777222]
        posts = transport.calls_to("POST", ADD_RULE_PATH)
        assert len(posts) == 1
        assert posts[0].body == {
            "collectionRule": {
                "@odata.type": "#AdminService.SMS_CollectionRuleDirect",
                "ResourceClassName": "SMS_R_System",
                "ResourceID": 16777222,
                "RuleName": "SRV03",
            }
        }
        assert "already a direct member" in caplog.text

    def test_direct_rule_conflict_is_a_warning(self, client, transport, collection_with_rules, caplog):
        transport.add(
            "GET", "wmi/SMS_R_System", {"value": [{"Name": "SRV04", "ResourceId": 16777223}]},
            params={"$filter": "ResourceId eq 16777223"},
        )
        transport.add(
            "POST", ADD_RULE_PATH,
            {"error": {"code": "500", "message": "Rule already exists"}}, status_code=500,
        )

        with caplog.at_level(logging.WARNING):
            added = client.add_direct_membership_rule("PS100010", resource_ids=[16777223])

        assert added == []
        assert "was not added" in caplog.text

    def test_direct_rule_needs_devices(self, client, transport):
        with pytest.raises(CmasValidationError):
            client.add_direct_membership_rule("PS100010")
        assert transport.calls == []

    def test_query_rule(self, client, transport, collection_with_rules):
        transport.add("POST", ADD_RULE_PATH, {"ReturnValue": 0, "QueryID": 2})
        query = "select * from SMS_R_System where Name like 'WEB%'"

        rule = client.add_query_membership_rule("PS100010", "Web Servers", query)

        assert rule["QueryExpression"] == query
        assert transport.calls_to("POST", ADD_RULE_PATH)[0].body["collectionRule"] == {
            "@odata.type": "#AdminService.SMS_CollectionRuleQuery",
            "RuleName": "Web Servers",
            "QueryExpression": query,
        }

    def test_duplicate_query_rule_name_is_skipped(self, client, transport, collection_with_rules):
        assert client.add_query_membership_rule("PS100010", "Server OS", "select * from SMS_R_System") is None
        assert transport.calls_to("POST", ADD_RULE_PATH) == []

    def test_include_rule(self, client, transport, collection_with_rules):
        web = {"CollectionID": "PS100013", "Name": "Web Servers", "CollectionType": 2}
        transport.add(
            "GET", "wmi/SMS_Collection", {"value": [web]}, params={"$filter": "CollectionID eq 'PS100013'"}
        )
        transport.add("GET", "wmi/SMS_Collection('PS100013')", {"value": [dict(web, CollectionRules=[])]})
        transport.add("POST", ADD_RULE_PATH, {"ReturnValue": 0})

        client.add_include_membership_rule("PS100010", "PS100013")

        assert transport.calls_to("POST", ADD_RULE_PATH)[0].body["collectionRule"] == {
            "@odata.type": "#AdminService.SMS_CollectionRuleIncludeCollection",
            "RuleName": "Web Servers",
            "IncludeCollectionID": "PS100013",
        }

    def test_existing_exclude_rule_is_skipped(self, client, transport, collection_with_rules):
        decommissioned = {"CollectionID": "PS100012", "Name": "Decommissioned", "CollectionType": 2}
        transport.add(
            "GET", "wmi/SMS_Collection", {"value": [decommissioned]}, params={"$filter": "CollectionID eq 'PS100012'"}
        )
        transport.add("GET", "wmi/SMS_Collection('PS100012')", {"value": [dict(decommissioned, CollectionRules=[])]})

        assert client.add_exclude_membership_rule("PS100010", "PS100012") is None
        assert transport.calls_to("POST", ADD_RULE_PATH) == []

    def test_collection_cannot_include_itself(self, client, transport, collection_with_rules):
        with pytest.raises(CmasValidationError):
            client.add_include_membership_rule("PS100010", "PS100010")


class TestRemoveMembershipRules:
    """remove_membership_rule()."""

    def test_removes_matching_rule(self, client, transport, collection_with_rules, mixed_rules):
        transport.add("POST", DELETE_RULE_PATH, {"ReturnValue": 0})

        removed = client.remove_membership_rule("PS100010", MembershipRuleType.Direct, resource_id=16777220)

        assert removed == [mixed_rules[0]]
        assert transport.calls_to("POST", DELETE_RULE_PATH)[0].body == {"collectionRule": mixed_rules[0]}

    def test_no_match_is_a_warning(self, client, transport, collection_with_rules, caplog):
        with caplog.at_level(logging.WARNING):
            removed = client.remove_membership_rule("PS100010", MembershipRuleType.Query, rule_name="Nope")

        assert removed == []
        assert transport.calls_to("POST", DELETE_RULE_PATH) == []
        assert "No matching Query rules" in caplog.text

    def test_requires_criteria(self, client, transport):
        with pytest.raises(CmasValidationError):
            client.remove_membership_rule("PS100010", MembershipRuleType.Direct)
        assert transport.calls == []
