"""
Object model - keys, kinds and the untyped document wrapper.

Objects are stored and exchanged as plain JSON-like dicts in the Kubernetes
shape (apiVersion, kind, metadata, spec). ``Unstructured`` wraps such a
dict with typed accessors; ``Group`` is a typed, read-only view of the
desired-state resource.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ObjectKey:
    """Namespaced name identifying an object within a kind."""

    namespace: str
    name: str

    def __str__(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class GroupVersionKind:
    """API group, version and kind of an object type."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        # The core group has no prefix ("v1")
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        if "/" in api_version:
            group, version = api_version.split("/", 1)
        else:
            group, version = "", api_version
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


GROUP_GVK = GroupVersionKind(group="ran.openshift.io", version="v1alpha1", kind="Group")
PLACEMENT_RULE_GVK = GroupVersionKind(
    group="apps.open-cluster-management.io", version="v1", kind="PlacementRule"
)


@dataclass
class OwnerReference:
    """Link from a dependent object to the object that owns it."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", False)),
        )


class Unstructured:
    """
    Schema-less object document.

    Holds the raw dict in ``self.object``. Accessors read and write the
    well-known metadata fields; everything else is left to the caller.
    """

    def __init__(self, obj: Optional[Dict[str, Any]] = None):
        self.object: Dict[str, Any] = obj if obj is not None else {}

    def __repr__(self) -> str:
        return f"Unstructured({self.kind} {self.key})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Unstructured):
            return NotImplemented
        return self.object == other.object

    # ---- type ----

    @property
    def api_version(self) -> str:
        return self.object.get("apiVersion", "")

    @property
    def kind(self) -> str:
        return self.object.get("kind", "")

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(self.api_version, self.kind)

    def set_gvk(self, gvk: GroupVersionKind) -> None:
        self.object["apiVersion"] = gvk.api_version
        self.object["kind"] = gvk.kind

    # ---- metadata ----

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.object.setdefault("metadata", {})

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)

    @property
    def uid(self) -> str:
        return self.metadata.get("uid", "")

    @property
    def resource_version(self) -> str:
        return self.metadata.get("resourceVersion", "")

    @property
    def generation(self) -> int:
        return int(self.metadata.get("generation", 0))

    @property
    def labels(self) -> Dict[str, str]:
        return dict(self.metadata.get("labels") or {})

    @property
    def owner_references(self) -> List[OwnerReference]:
        return [
            OwnerReference.from_dict(ref)
            for ref in self.metadata.get("ownerReferences") or []
        ]

    def set_owner_references(self, refs: List[OwnerReference]) -> None:
        self.metadata["ownerReferences"] = [ref.to_dict() for ref in refs]

    def controller_owner(self) -> Optional[OwnerReference]:
        """Return the owner reference flagged as controller, if any."""
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    @property
    def spec(self) -> Dict[str, Any]:
        return self.object.get("spec") or {}

    def deepcopy(self) -> "Unstructured":
        return Unstructured(copy.deepcopy(self.object))


@dataclass
class Group:
    """Typed view of a Group object."""

    name: str
    namespace: str
    clusters: List[str] = field(default_factory=list)
    uid: str = ""

    @classmethod
    def from_object(cls, obj: Unstructured) -> "Group":
        clusters = obj.spec.get("clusters") or []
        return cls(
            name=obj.name,
            namespace=obj.namespace,
            clusters=[str(c) for c in clusters],
            uid=obj.uid,
        )

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)

    def to_object(self) -> Unstructured:
        """Render the Group as a storable document (without server fields)."""
        obj = Unstructured(
            {
                "metadata": {"name": self.name, "namespace": self.namespace},
                "spec": {"clusters": list(self.clusters)},
            }
        )
        obj.set_gvk(GROUP_GVK)
        if self.uid:
            obj.metadata["uid"] = self.uid
        return obj
