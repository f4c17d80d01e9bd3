"""
Group reconciler - ensures one PlacementRule per cluster listed in a Group.

A reconciliation pass reads the Group, renders the PlacementRule for each
cluster, links it to the Group as its controller and creates it if no rule
with that name exists yet. Existing rules are never modified, and rules for
clusters that were removed from the Group are left in place until the
Group itself is deleted and its dependents are garbage collected.

Every error other than the expected not-found/already-exists outcomes is
raised to the caller so that the controller can retry with backoff.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ranlcm.errors import (
    AlreadyExistsError,
    NotFoundError,
    OwnerNotFoundError,
    OwnershipError,
    StoreError,
)
from ranlcm.objects import (
    GROUP_GVK,
    PLACEMENT_RULE_GVK,
    Group,
    ObjectKey,
    Unstructured,
)
from ranlcm.placement import new_placement_rule, placement_rule_name
from ranlcm.scheme import Scheme, get_scheme, set_controller_reference
from ranlcm.store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result from a reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[int] = None
    created: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)


class GroupReconciler:
    """Converges the PlacementRules owned by a Group."""

    def __init__(self, store: ObjectStore, scheme: Optional[Scheme] = None):
        self.store = store
        self.scheme = scheme or get_scheme()

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """
        Reconcile the Group identified by ``key``.

        Args:
            key: Namespace and name of the Group

        Returns:
            ReconcileResult listing the rules created and those already present

        Raises:
            StoreError: If reading the Group or checking/creating a rule fails
            OwnershipError: If a rule cannot be linked to the Group
        """
        try:
            group_obj = await self.store.get(key, GROUP_GVK)
        except NotFoundError:
            # Deleted between event emission and processing
            logger.info(f"Group {key} not found, nothing to reconcile")
            return ReconcileResult(success=True, message="Group not found")
        except StoreError as e:
            logger.error(f"Failed to get Group {key}: {e}")
            raise

        result = ReconcileResult(success=True)
        if not await self.ensure_placement_rules(group_obj, result):
            logger.info(f"Group {key} was deleted during reconciliation, stopping")
            result.message = "Group deleted during reconciliation"
            return result

        result.message = (
            f"{len(result.created)} PlacementRule(s) created, "
            f"{len(result.existing)} already present"
        )
        logger.info(f"Reconciled Group {key}: {result.message}")
        return result

    async def ensure_placement_rules(
        self, group_obj: Unstructured, result: ReconcileResult
    ) -> bool:
        """
        Ensure a PlacementRule exists for every cluster, in list order.

        Returns:
            False if the Group disappeared mid-pass and the remaining
            clusters were skipped, True otherwise
        """
        group = Group.from_object(group_obj)
        for cluster in group.clusters:
            if not await self._ensure_placement_rule(group_obj, group, cluster, result):
                return False
        return True

    async def _ensure_placement_rule(
        self,
        group_obj: Unstructured,
        group: Group,
        cluster: str,
        result: ReconcileResult,
    ) -> bool:
        rule = new_placement_rule(group.name, group.namespace, cluster)

        try:
            set_controller_reference(group_obj, rule, self.scheme)
        except OwnershipError as e:
            logger.error(
                f"Failed to set owner of PlacementRule for Group {group.key}, "
                f"cluster {cluster}: {e}"
            )
            raise

        rule_key = ObjectKey(
            namespace=group.namespace,
            name=placement_rule_name(group.name, cluster),
        )

        try:
            await self.store.get(rule_key, PLACEMENT_RULE_GVK)
        except NotFoundError:
            pass
        except StoreError as e:
            logger.error(
                f"Failed to look up PlacementRule {rule_key} for Group "
                f"{group.key}, cluster {cluster}: {e}"
            )
            raise
        else:
            logger.debug(f"PlacementRule {rule_key} already exists")
            result.existing.append(rule_key.name)
            return True

        logger.info(f"Creating PlacementRule {rule_key} for cluster {cluster}")
        try:
            await self.store.create(rule)
        except AlreadyExistsError:
            logger.warning(
                f"PlacementRule {rule_key} was created concurrently, keeping it"
            )
            result.existing.append(rule_key.name)
            return True
        except OwnerNotFoundError:
            # The store refuses dependents of a deleted owner
            logger.info(f"Group {group.key} is gone, not creating {rule_key}")
            return False
        except StoreError as e:
            logger.error(
                f"Failed to create PlacementRule {rule_key} for Group "
                f"{group.key}, cluster {cluster}: {e}"
            )
            raise

        result.created.append(rule_key.name)
        return True
