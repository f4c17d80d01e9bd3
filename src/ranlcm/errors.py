"""Exception types shared by the store, scheme and controller."""

from typing import Optional


class StoreError(Exception):
    """Base error for object store operations."""

    def __init__(self, message: str, kind: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.key = key


class NotFoundError(StoreError):
    """The requested object does not exist."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key} not found", kind=kind, key=key)


class OwnerNotFoundError(NotFoundError):
    """A controlling owner named by a new object's ownerReferences is gone."""

    def __init__(self, kind: str, key: str, owner_uid: str):
        StoreError.__init__(
            self,
            f"{kind} {key} cannot be created: owner {owner_uid} not found",
            kind=kind,
            key=key,
        )
        self.owner_uid = owner_uid


class AlreadyExistsError(StoreError):
    """An object with the same kind, namespace and name is already stored."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key} already exists", kind=kind, key=key)


class ConflictError(StoreError):
    """The object was modified since it was read (stale resourceVersion)."""

    def __init__(self, kind: str, key: str, message: str = ""):
        super().__init__(
            message or f"{kind} {key} has been modified; reload and retry",
            kind=kind,
            key=key,
        )


class OwnershipError(Exception):
    """An owner reference could not be set on an object."""


class UnregisteredKindError(OwnershipError):
    """The kind is not known to the scheme."""


class AlreadyOwnedError(OwnershipError):
    """The object already has a different controlling owner."""


class ConfigurationError(ValueError):
    """Raised when configuration values are invalid."""
