"""
PlacementRule builder.

PlacementRules belong to the open-cluster-management API, which this
operator does not own, so they are rendered as untyped documents. This is
the only place that produces them.
"""

from ranlcm.objects import PLACEMENT_RULE_GVK, Unstructured

OWNER_LABEL_KEY = "app"
OWNER_LABEL_VALUE = "ran-lcm"

NAME_SUFFIX = "placement-rule"


def placement_rule_name(group_name: str, cluster: str) -> str:
    """Name of the PlacementRule generated for ``cluster`` in a Group."""
    return f"{group_name}-{cluster}-{NAME_SUFFIX}"


def new_placement_rule(group_name: str, namespace: str, cluster: str) -> Unstructured:
    """
    Render the PlacementRule that places a Group's workload on one cluster.

    Args:
        group_name: Name of the owning Group
        namespace: Namespace of the owning Group (the rule lives beside it)
        cluster: Target cluster name

    Returns:
        A new Unstructured document with no owner reference set
    """
    rule = Unstructured(
        {
            "metadata": {
                "name": placement_rule_name(group_name, cluster),
                "namespace": namespace,
                "labels": {OWNER_LABEL_KEY: OWNER_LABEL_VALUE},
            },
            "spec": {
                "clusterConditions": [{"type": "OK"}],
                "clusters": [{"name": cluster}],
            },
        }
    )
    rule.set_gvk(PLACEMENT_RULE_GVK)
    return rule
