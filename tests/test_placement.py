"""Unit tests for the PlacementRule builder."""

from ranlcm.objects import PLACEMENT_RULE_GVK
from ranlcm.placement import (
    OWNER_LABEL_KEY,
    OWNER_LABEL_VALUE,
    new_placement_rule,
    placement_rule_name,
)


class TestPlacementRuleName:
    def test_composition(self):
        assert placement_rule_name("du-sites", "east") == "du-sites-east-placement-rule"

    def test_distinct_clusters_distinct_names(self):
        assert placement_rule_name("g", "a") != placement_rule_name("g", "b")


class TestNewPlacementRule:
    def test_full_document(self):
        rule = new_placement_rule("du-sites", "ran", "east")

        assert rule.object == {
            "apiVersion": "apps.open-cluster-management.io/v1",
            "kind": "PlacementRule",
            "metadata": {
                "name": "du-sites-east-placement-rule",
                "namespace": "ran",
                "labels": {"app": "ran-lcm"},
            },
            "spec": {
                "clusterConditions": [{"type": "OK"}],
                "clusters": [{"name": "east"}],
            },
        }

    def test_gvk(self):
        rule = new_placement_rule("g", "ns", "c")
        assert rule.gvk == PLACEMENT_RULE_GVK

    def test_label_constants(self):
        rule = new_placement_rule("g", "ns", "c")
        assert rule.labels == {OWNER_LABEL_KEY: OWNER_LABEL_VALUE}

    def test_no_owner_or_server_fields(self):
        rule = new_placement_rule("g", "ns", "c")
        assert rule.owner_references == []
        assert rule.uid == ""
        assert rule.resource_version == ""

    def test_each_call_returns_independent_document(self):
        a = new_placement_rule("g", "ns", "c")
        b = new_placement_rule("g", "ns", "c")
        a.metadata["labels"]["extra"] = "1"
        a.object["spec"]["clusters"].append({"name": "x"})

        assert b.labels == {"app": "ran-lcm"}
        assert b.spec["clusters"] == [{"name": "c"}]
