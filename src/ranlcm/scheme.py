"""
Scheme - registry of the object kinds this operator knows about.

The scheme resolves a kind to its API group/version and scope, which is
what ownership linking needs. ``set_controller_reference`` records that a
dependent is controlled by its owner so that deleting the owner garbage
collects the dependent.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ranlcm.errors import AlreadyOwnedError, OwnershipError, UnregisteredKindError
from ranlcm.objects import (
    GROUP_GVK,
    PLACEMENT_RULE_GVK,
    GroupVersionKind,
    OwnerReference,
    Unstructured,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KindInfo:
    """Registration entry for one kind."""

    gvk: GroupVersionKind
    namespaced: bool = True


class Scheme:
    """
    Registry of known kinds.

    Kinds are looked up by full GroupVersionKind; a kind name may belong to
    only one API group.
    """

    def __init__(self):
        self._kinds: Dict[GroupVersionKind, KindInfo] = {}
        self._by_kind: Dict[str, GroupVersionKind] = {}

    def register(self, gvk: GroupVersionKind, namespaced: bool = True) -> None:
        """
        Register a kind.

        Args:
            gvk: Group, version and kind of the type
            namespaced: Whether objects of the kind live in a namespace

        Raises:
            ValueError: If the kind name is already registered under a
                different API group
        """
        existing = self._by_kind.get(gvk.kind)
        if existing and existing.group != gvk.group:
            raise ValueError(
                f"Kind '{gvk.kind}' is already registered for group "
                f"'{existing.group}'. Cannot register group '{gvk.group}'."
            )
        if gvk in self._kinds:
            logger.warning(f"Overwriting existing kind registration: {gvk}")

        self._kinds[gvk] = KindInfo(gvk=gvk, namespaced=namespaced)
        self._by_kind[gvk.kind] = gvk
        logger.debug(f"Registered kind {gvk} (namespaced={namespaced})")

    def kind_info(self, gvk: GroupVersionKind) -> KindInfo:
        """
        Resolve registration info for a kind.

        Raises:
            UnregisteredKindError: If the kind is not registered
        """
        info = self._kinds.get(gvk)
        if info is None:
            raise UnregisteredKindError(f"no kind is registered for {gvk}")
        return info


def register_builtin_kinds(scheme: Scheme) -> None:
    """Register Group and PlacementRule."""
    scheme.register(GROUP_GVK, namespaced=True)
    scheme.register(PLACEMENT_RULE_GVK, namespaced=True)


def set_controller_reference(
    owner: Unstructured, obj: Unstructured, scheme: Scheme
) -> None:
    """
    Mark ``owner`` as the controller of ``obj``.

    Adds (or refreshes) a controller owner reference on ``obj`` in place.

    Args:
        owner: The controlling object; must be stored (have a uid)
        obj: The dependent object to link
        scheme: Scheme used to resolve the owner's kind

    Raises:
        UnregisteredKindError: If the owner's kind is not registered
        AlreadyOwnedError: If ``obj`` is controlled by a different owner
        OwnershipError: If the owner has no uid or lives in another namespace
    """
    info = scheme.kind_info(owner.gvk)

    if not owner.uid:
        raise OwnershipError(
            f"{owner.kind} {owner.key} has no uid; it must be stored before "
            f"it can own objects"
        )

    # A namespaced owner can only own objects in its own namespace
    if info.namespaced:
        if not obj.namespace:
            raise OwnershipError(
                f"cluster-scoped {obj.kind} {obj.name} cannot be owned by "
                f"namespaced {owner.kind} {owner.key}"
            )
        if owner.namespace != obj.namespace:
            raise OwnershipError(
                f"cross-namespace owner references are disallowed: owner "
                f"{owner.kind} {owner.key}, object {obj.kind} {obj.key}"
            )

    ref = OwnerReference(
        api_version=info.gvk.api_version,
        kind=info.gvk.kind,
        name=owner.name,
        uid=owner.uid,
        controller=True,
        block_owner_deletion=True,
    )

    existing = obj.controller_owner()
    if existing is not None and existing.uid != ref.uid:
        raise AlreadyOwnedError(
            f"{obj.kind} {obj.key} is already controlled by "
            f"{existing.kind} {existing.name}"
        )

    refs = [r for r in obj.owner_references if r.uid != ref.uid]
    refs.append(ref)
    obj.set_owner_references(refs)


# Global scheme instance
_scheme: Optional[Scheme] = None


def get_scheme() -> Scheme:
    """Get the default scheme, with the built-in kinds registered."""
    global _scheme
    if _scheme is None:
        _scheme = Scheme()
        register_builtin_kinds(_scheme)
    return _scheme


def reset_scheme() -> None:
    """Reset the default scheme (mainly for testing)."""
    global _scheme
    _scheme = None
