"""Unit tests for the Group reconciler."""

import copy

import pytest

from ranlcm.errors import (
    AlreadyExistsError,
    AlreadyOwnedError,
    OwnershipError,
    StoreError,
    UnregisteredKindError,
)
from ranlcm.objects import (
    GROUP_GVK,
    PLACEMENT_RULE_GVK,
    ObjectKey,
    OwnerReference,
    Unstructured,
)
from ranlcm.placement import new_placement_rule
from ranlcm.reconciler import GroupReconciler, ReconcileResult
from ranlcm.scheme import Scheme
from ranlcm.store import MemoryStore


class TestReconcileResult:
    """Tests for ReconcileResult dataclass."""

    def test_default_values(self):
        result = ReconcileResult()
        assert result.success is False
        assert result.message == ""
        assert result.requeue_after is None
        assert result.created == []
        assert result.existing == []

    def test_lists_are_not_shared(self):
        a = ReconcileResult()
        b = ReconcileResult()
        a.created.append("x")
        assert b.created == []


@pytest.mark.asyncio
class TestGroupReconciler:
    """Tests for GroupReconciler.reconcile."""

    @pytest.fixture
    def reconciler(self, store, scheme):
        return GroupReconciler(store, scheme)

    async def test_creates_one_rule_per_cluster(
        self, reconciler, store, create_group, group_key
    ):
        """N clusters against an empty store yields exactly N rules."""
        await create_group(clusters=["east", "west", "north"])

        result = await reconciler.reconcile(group_key)

        assert result.success is True
        assert result.created == [
            "du-sites-east-placement-rule",
            "du-sites-west-placement-rule",
            "du-sites-north-placement-rule",
        ]
        assert result.existing == []

        rules = await store.list(PLACEMENT_RULE_GVK, namespace="default")
        assert sorted(r.name for r in rules) == [
            "du-sites-east-placement-rule",
            "du-sites-north-placement-rule",
            "du-sites-west-placement-rule",
        ]

    async def test_rules_carry_builder_shape(
        self, reconciler, store, create_group, group_key
    ):
        await create_group(clusters=["east"])

        await reconciler.reconcile(group_key)

        rule = await store.get(
            ObjectKey("default", "du-sites-east-placement-rule"), PLACEMENT_RULE_GVK
        )
        assert rule.api_version == "apps.open-cluster-management.io/v1"
        assert rule.kind == "PlacementRule"
        assert rule.labels == {"app": "ran-lcm"}
        assert rule.spec == {
            "clusterConditions": [{"type": "OK"}],
            "clusters": [{"name": "east"}],
        }

    async def test_every_rule_is_owned_by_the_group(
        self, reconciler, store, create_group, group_key
    ):
        group = await create_group(clusters=["east", "west"])

        await reconciler.reconcile(group_key)

        for rule in await store.list(PLACEMENT_RULE_GVK):
            owner = rule.controller_owner()
            assert owner is not None
            assert owner.uid == group.uid
            assert owner.name == "du-sites"
            assert owner.kind == "Group"
            assert owner.api_version == "ran.openshift.io/v1alpha1"
            assert owner.block_owner_deletion is True

    async def test_processes_clusters_in_list_order(
        self, reconciler, store, create_group, group_key
    ):
        await create_group(clusters=["c", "a", "b"])

        await reconciler.reconcile(group_key)

        created = [c[2] for c in store.calls if c[0] == "create"]
        assert created == [
            "default/du-sites-c-placement-rule",
            "default/du-sites-a-placement-rule",
            "default/du-sites-b-placement-rule",
        ]

    async def test_second_run_makes_no_mutations(
        self, reconciler, store, create_group, group_key
    ):
        """Reconciling an unchanged Group twice only mutates on the first run."""
        await create_group(clusters=["east", "west"])

        await reconciler.reconcile(group_key)
        first_run = len(store.mutations)
        result = await reconciler.reconcile(group_key)

        assert first_run == 2
        assert len(store.mutations) == first_run
        assert result.created == []
        assert result.existing == [
            "du-sites-east-placement-rule",
            "du-sites-west-placement-rule",
        ]

    async def test_missing_group_is_success_without_mutations(
        self, reconciler, store, group_key
    ):
        result = await reconciler.reconcile(group_key)

        assert result.success is True
        assert result.message == "Group not found"
        assert store.mutations == []

    async def test_duplicate_clusters_create_a_single_rule(
        self, reconciler, store, create_group, group_key
    ):
        await create_group(clusters=["east", "east"])

        result = await reconciler.reconcile(group_key)

        assert result.success is True
        assert result.created == ["du-sites-east-placement-rule"]
        assert result.existing == ["du-sites-east-placement-rule"]
        assert len(await store.list(PLACEMENT_RULE_GVK)) == 1

    async def test_preexisting_rule_is_left_untouched(
        self, reconciler, store, create_group, group_key
    ):
        """A pre-seeded rule for 'east' stays byte-for-byte identical."""
        await create_group(clusters=["east", "west"])
        seeded = new_placement_rule("du-sites", "default", "east")
        seeded.metadata["annotations"] = {"seeded-by": "test"}
        seeded = await MemoryStore.create(store, seeded)
        before = copy.deepcopy(seeded.object)
        store.calls.clear()

        result = await reconciler.reconcile(group_key)

        assert result.created == ["du-sites-west-placement-rule"]
        assert result.existing == ["du-sites-east-placement-rule"]
        assert store.mutations == [
            ("create", "PlacementRule", "default/du-sites-west-placement-rule")
        ]
        after = await store.get(seeded.key, PLACEMENT_RULE_GVK)
        assert after.object == before

    async def test_concurrent_create_is_treated_as_success(
        self, reconciler, store, create_group, group_key
    ):
        """Another writer creating the rule between check and create is benign."""
        await create_group(clusters=["east", "west"])

        async def racer(obj):
            await MemoryStore.create(store, new_placement_rule("du-sites", "default", "east"))

        store.before_create = racer

        result = await reconciler.reconcile(group_key)

        assert result.success is True
        assert result.created == ["du-sites-west-placement-rule"]
        assert result.existing == ["du-sites-east-placement-rule"]
        assert len(await store.list(PLACEMENT_RULE_GVK)) == 2

    async def test_group_fetch_error_propagates(self, reconciler, store, group_key):
        store.fail_get["du-sites"] = StoreError("connection reset")

        with pytest.raises(StoreError, match="connection reset"):
            await reconciler.reconcile(group_key)

        assert store.mutations == []

    async def test_rule_lookup_error_propagates_and_stops(
        self, reconciler, store, create_group, group_key
    ):
        await create_group(clusters=["east", "west"])
        store.fail_get["du-sites-east-placement-rule"] = StoreError("timeout")

        with pytest.raises(StoreError, match="timeout"):
            await reconciler.reconcile(group_key)

        assert store.mutations == []

    async def test_create_error_propagates(
        self, reconciler, store, create_group, group_key
    ):
        await create_group(clusters=["east", "west"])
        store.fail_create["du-sites-west-placement-rule"] = StoreError("disk full")

        with pytest.raises(StoreError, match="disk full"):
            await reconciler.reconcile(group_key)

        # east was created before the failure and is kept
        rules = await store.list(PLACEMENT_RULE_GVK)
        assert [r.name for r in rules] == ["du-sites-east-placement-rule"]

    async def test_group_deleted_before_create_leaves_no_orphan(
        self, reconciler, store, create_group, group_key
    ):
        """A Group deleted between fetch and create gets no new rules."""
        await create_group(clusters=["east", "west"])

        async def delete_group(obj):
            await MemoryStore.delete(store, group_key, GROUP_GVK)

        store.before_create = delete_group

        result = await reconciler.reconcile(group_key)

        assert result.success is True
        assert result.message == "Group deleted during reconciliation"
        assert result.created == []
        assert await store.list(PLACEMENT_RULE_GVK) == []
        # west is never attempted once the owner is gone
        assert [c[2] for c in store.calls if c[0] == "create"] == [
            "default/du-sites-east-placement-rule"
        ]

    async def test_group_deleted_mid_pass_collects_rules_created_earlier(
        self, reconciler, store, create_group, group_key
    ):
        await create_group(clusters=["east", "west"])
        original_create = store.create

        async def create_then_delete_group(obj):
            created = await original_create(obj)
            if obj.name == "du-sites-east-placement-rule":
                await MemoryStore.delete(store, group_key, GROUP_GVK)
            return created

        store.create = create_then_delete_group

        result = await reconciler.reconcile(group_key)

        assert result.created == ["du-sites-east-placement-rule"]
        assert await store.list(PLACEMENT_RULE_GVK) == []

    async def test_already_exists_is_not_mistaken_for_other_errors(
        self, reconciler, store, create_group, group_key
    ):
        await create_group(clusters=["east"])
        store.fail_create["du-sites-east-placement-rule"] = AlreadyExistsError(
            "PlacementRule", "default/du-sites-east-placement-rule"
        )

        result = await reconciler.reconcile(group_key)

        assert result.success is True
        assert result.existing == ["du-sites-east-placement-rule"]

    async def test_unregistered_group_kind_aborts(self, store, create_group, group_key):
        await create_group(clusters=["east", "west"])
        reconciler = GroupReconciler(store, Scheme())

        with pytest.raises(UnregisteredKindError):
            await reconciler.reconcile(group_key)

        assert store.mutations == []

    async def test_rule_owned_by_another_controller_is_left_alone(
        self, reconciler, store, create_group, group_key
    ):
        """A rule already present is skipped, whoever owns it."""
        await create_group(clusters=["east"])
        other = await MemoryStore.create(
            store,
            Unstructured(
                {
                    "apiVersion": "example.io/v1",
                    "kind": "Other",
                    "metadata": {"name": "other", "namespace": "default"},
                }
            ),
        )
        foreign = new_placement_rule("du-sites", "default", "east")
        foreign.set_owner_references(
            [
                OwnerReference(
                    api_version="example.io/v1",
                    kind="Other",
                    name="other",
                    uid=other.uid,
                    controller=True,
                )
            ]
        )
        await MemoryStore.create(store, foreign)

        result = await reconciler.reconcile(group_key)

        assert result.existing == ["du-sites-east-placement-rule"]

    async def test_empty_cluster_list(self, reconciler, store, create_group, group_key):
        await create_group(clusters=[])

        result = await reconciler.reconcile(group_key)

        assert result.success is True
        assert result.created == []
        assert store.mutations == []

    async def test_removed_cluster_rule_is_kept(
        self, reconciler, store, create_group, group_key
    ):
        """Dropping a cluster from the Group does not delete its rule."""
        group = await create_group(clusters=["east", "west"])
        await reconciler.reconcile(group_key)

        group.object["spec"]["clusters"] = ["east"]
        await MemoryStore.update(store, group)
        await reconciler.reconcile(group_key)

        rules = await store.list(PLACEMENT_RULE_GVK)
        assert len(rules) == 2

    async def test_uses_default_scheme(self, store, create_group, group_key):
        await create_group(clusters=["east"])
        reconciler = GroupReconciler(store)

        result = await reconciler.reconcile(group_key)

        assert result.created == ["du-sites-east-placement-rule"]

    async def test_rules_in_group_namespace(self, reconciler, store, create_group):
        await create_group(name="cells", clusters=["east"], namespace="ran")

        await reconciler.reconcile(ObjectKey("ran", "cells"))

        assert await store.list(PLACEMENT_RULE_GVK, namespace="default") == []
        rules = await store.list(PLACEMENT_RULE_GVK, namespace="ran")
        assert [r.name for r in rules] == ["cells-east-placement-rule"]

    async def test_group_deletion_collects_rules(
        self, reconciler, store, create_group, group_key
    ):
        await create_group(clusters=["east", "west"])
        await reconciler.reconcile(group_key)

        await store.delete(group_key, GROUP_GVK)

        assert await store.list(PLACEMENT_RULE_GVK) == []
        result = await reconciler.reconcile(group_key)
        assert result.message == "Group not found"


class TestOwnershipErrorHierarchy:
    def test_already_owned_is_ownership_error(self):
        assert issubclass(AlreadyOwnedError, OwnershipError)
        assert issubclass(UnregisteredKindError, OwnershipError)
