"""
Database store - PostgreSQL-backed object store.

Objects live in a single ``objects`` table keyed by (api group, kind,
namespace, name). The document is kept as JSONB alongside the uids of its
owners, so cascading deletes can be resolved in one recursive query.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from ranlcm.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    OwnerNotFoundError,
    StoreError,
)
from ranlcm.events import EventBus, EventType
from ranlcm.objects import GroupVersionKind, ObjectKey, Unstructured
from ranlcm.store import ObjectStore, blocking_owner_uids, now_timestamp

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE SEQUENCE IF NOT EXISTS objects_resource_version_seq
    """,
    """
    CREATE TABLE IF NOT EXISTS objects (
        uid TEXT PRIMARY KEY,
        api_group VARCHAR(253) NOT NULL,
        api_version VARCHAR(63) NOT NULL,
        kind VARCHAR(63) NOT NULL,
        namespace VARCHAR(63) NOT NULL DEFAULT '',
        name VARCHAR(253) NOT NULL,
        body JSONB NOT NULL,
        owner_uids TEXT[] NOT NULL DEFAULT '{}',
        resource_version BIGINT NOT NULL,
        generation BIGINT NOT NULL DEFAULT 1,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
        CONSTRAINT objects_identity UNIQUE (api_group, kind, namespace, name)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_objects_owner_uids
        ON objects USING GIN (owner_uids)
    """,
)


class DatabaseStore(ObjectStore):
    """Object store persisted in PostgreSQL through an asyncpg pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        event_bus: Optional[EventBus] = None,
    ):
        super().__init__(event_bus)
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection, wrapping driver errors in StoreError."""
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StoreError(f"Database error: {e}") from e

    async def initialize_schema(self) -> None:
        """Create the objects table and its supporting sequence and index."""
        async with self._connection() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
        logger.info("Database schema initialized")

    # ==================== Reads ====================

    async def get(self, key: ObjectKey, gvk: GroupVersionKind) -> Unstructured:
        async with self._connection() as conn:
            body = await conn.fetchval(
                """
                SELECT body FROM objects
                WHERE api_group = $1 AND kind = $2 AND namespace = $3 AND name = $4
                """,
                gvk.group,
                gvk.kind,
                key.namespace,
                key.name,
            )
        if body is None:
            raise NotFoundError(gvk.kind, str(key))
        return self._parse_body(body)

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Unstructured]:
        query = "SELECT body FROM objects WHERE api_group = $1 AND kind = $2"
        params: List[Any] = [gvk.group, gvk.kind]
        param_count = 2

        if namespace is not None:
            param_count += 1
            query += f" AND namespace = ${param_count}"
            params.append(namespace)

        if label_selector:
            param_count += 1
            query += f" AND body->'metadata'->'labels' @> ${param_count}::jsonb"
            params.append(json.dumps(label_selector))

        query += " ORDER BY namespace, name"

        async with self._connection() as conn:
            rows = await conn.fetch(query, *params)
        return [self._parse_body(row["body"]) for row in rows]

    # ==================== Writes ====================

    async def create(self, obj: Unstructured) -> Unstructured:
        self._validate_new(obj)
        gvk = obj.gvk

        required_owners = blocking_owner_uids(obj)

        async with self._connection() as conn:
            async with conn.transaction():
                if required_owners:
                    # Row locks keep the owners from being deleted before commit
                    rows = await conn.fetch(
                        "SELECT uid FROM objects WHERE uid = ANY($1::text[]) FOR SHARE",
                        required_owners,
                    )
                    live = {row["uid"] for row in rows}
                    for owner_uid in required_owners:
                        if owner_uid not in live:
                            raise OwnerNotFoundError(obj.kind, str(obj.key), owner_uid)

                resource_version = await conn.fetchval(
                    "SELECT nextval('objects_resource_version_seq')"
                )
                stored = obj.deepcopy()
                stored.metadata["uid"] = str(uuid.uuid4())
                stored.metadata["resourceVersion"] = str(resource_version)
                stored.metadata["creationTimestamp"] = now_timestamp()
                stored.metadata["generation"] = 1

                try:
                    await conn.execute(
                        """
                        INSERT INTO objects (
                            uid, api_group, api_version, kind, namespace, name,
                            body, owner_uids, resource_version, generation
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, 1)
                        """,
                        stored.uid,
                        gvk.group,
                        gvk.version,
                        gvk.kind,
                        stored.namespace,
                        stored.name,
                        json.dumps(stored.object),
                        self._owner_uids(stored),
                        resource_version,
                    )
                except asyncpg.UniqueViolationError:
                    raise AlreadyExistsError(obj.kind, str(obj.key))

        logger.info(f"Created {stored.kind} {stored.key} with uid {stored.uid}")
        await self._publish(EventType.ADDED, stored)
        return stored

    async def update(self, obj: Unstructured) -> Unstructured:
        gvk = obj.gvk

        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT body, generation, resource_version FROM objects
                    WHERE api_group = $1 AND kind = $2
                      AND namespace = $3 AND name = $4
                    FOR UPDATE
                    """,
                    gvk.group,
                    gvk.kind,
                    obj.namespace,
                    obj.name,
                )
                if row is None:
                    raise NotFoundError(obj.kind, str(obj.key))
                if obj.resource_version and obj.resource_version != str(
                    row["resource_version"]
                ):
                    raise ConflictError(obj.kind, str(obj.key))

                current = self._parse_body(row["body"])
                generation = row["generation"]
                if obj.spec != current.spec:
                    generation += 1

                resource_version = await conn.fetchval(
                    "SELECT nextval('objects_resource_version_seq')"
                )
                stored = obj.deepcopy()
                stored.metadata["uid"] = current.uid
                stored.metadata["creationTimestamp"] = current.metadata.get(
                    "creationTimestamp"
                )
                stored.metadata["generation"] = generation
                stored.metadata["resourceVersion"] = str(resource_version)

                await conn.execute(
                    """
                    UPDATE objects
                    SET body = $1,
                        owner_uids = $2,
                        resource_version = $3,
                        generation = $4,
                        api_version = $5,
                        updated_at = NOW()
                    WHERE uid = $6
                    """,
                    json.dumps(stored.object),
                    self._owner_uids(stored),
                    resource_version,
                    generation,
                    gvk.version,
                    current.uid,
                )

        logger.info(f"Updated {stored.kind} {stored.key} (generation {generation})")
        await self._publish(EventType.MODIFIED, stored)
        return stored

    async def delete(self, key: ObjectKey, gvk: GroupVersionKind) -> None:
        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    WITH RECURSIVE doomed AS (
                        SELECT uid FROM objects
                        WHERE api_group = $1 AND kind = $2
                          AND namespace = $3 AND name = $4
                        UNION
                        SELECT o.uid FROM objects o
                        JOIN doomed d ON d.uid = ANY(o.owner_uids)
                    )
                    DELETE FROM objects
                    WHERE uid IN (SELECT uid FROM doomed)
                    RETURNING body
                    """,
                    gvk.group,
                    gvk.kind,
                    key.namespace,
                    key.name,
                )

        if not rows:
            raise NotFoundError(gvk.kind, str(key))

        removed = [self._parse_body(row["body"]) for row in rows]
        # Publish the requested object before its dependents
        removed.sort(key=lambda o: (o.kind, o.key) != (gvk.kind, key))
        for obj in removed:
            logger.info(f"Deleted {obj.kind} {obj.key}")
            await self._publish(EventType.DELETED, obj)

    # ==================== Helpers ====================

    @staticmethod
    def _owner_uids(obj: Unstructured) -> List[str]:
        return [ref.uid for ref in obj.owner_references if ref.uid]

    @staticmethod
    def _parse_body(body: Any) -> Unstructured:
        """Parse a JSONB column value (text by default in asyncpg) into a document."""
        if isinstance(body, str):
            body = json.loads(body)
        return Unstructured(body)
