"""
HTTP API - REST endpoints for Groups and the PlacementRules they own.

Provides a FastAPI application for creating, updating and deleting Groups,
reading the generated PlacementRules, triggering reconciliation and
streaming watch events.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from ranlcm.controller import Controller
from ranlcm.errors import AlreadyExistsError, ConflictError, NotFoundError
from ranlcm.events import EventBus, WatchEvent
from ranlcm.objects import GROUP_GVK, PLACEMENT_RULE_GVK, Group, ObjectKey, Unstructured
from ranlcm.store import ObjectStore

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


# Group models


class GroupCreate(BaseModel):
    """Request model for creating a Group."""

    name: str = Field(..., description="Group name", examples=["du-sites"])
    clusters: List[str] = Field(
        default_factory=list,
        description="Clusters that should receive a PlacementRule",
        examples=[["east", "west"]],
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")


class GroupUpdate(BaseModel):
    """Request model for replacing a Group's cluster list."""

    clusters: List[str] = Field(..., description="Updated cluster list")
    resource_version: Optional[str] = Field(
        None, description="Expected resourceVersion for optimistic concurrency"
    )


class GroupResponse(BaseModel):
    """Response model for a Group."""

    name: str
    namespace: str
    uid: str
    resource_version: str
    generation: int
    creation_timestamp: Optional[str] = None
    clusters: List[str] = []

    @classmethod
    def from_object(cls, obj: Unstructured) -> "GroupResponse":
        group = Group.from_object(obj)
        return cls(
            name=group.name,
            namespace=group.namespace,
            uid=group.uid,
            resource_version=obj.resource_version,
            generation=obj.generation,
            creation_timestamp=obj.metadata.get("creationTimestamp"),
            clusters=group.clusters,
        )


class GroupAPI:
    """
    REST API for Group management, served with uvicorn.

    The store is the source of truth; the controller is optional and only
    needed for the manual reconcile endpoint.
    """

    def __init__(
        self,
        store: ObjectStore,
        controller: Optional[Controller] = None,
        event_bus: Optional[EventBus] = None,
        host: str = "0.0.0.0",
        port: int = 8000,
    ):
        self.store = store
        self.controller = controller
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None
        self._event_bus = event_bus

        self.app = FastAPI(
            title="RAN LCM Operator API",
            description="Manage Groups and inspect their PlacementRules",
            version="0.1.0",
        )
        self._setup_routes()

    @staticmethod
    def _check_namespace(namespace: str) -> None:
        try:
            validate_name_format(namespace, "namespace")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Groups CRUD: /api/v1/namespaces/{namespace}/groups
        - Manual reconcile: POST .../groups/{name}/reconcile
        - PlacementRules (read-only): /api/v1/namespaces/{namespace}/placementrules
        - Watch stream: GET /api/v1/watch
        """

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "ran-lcm-operator"}

        # ==================== Group Endpoints ====================

        @self.app.post(
            "/api/v1/namespaces/{namespace}/groups",
            response_model=GroupResponse,
            status_code=201,
        )
        async def create_group(namespace: str, group: GroupCreate):
            """Create a new Group."""
            self._check_namespace(namespace)
            obj = Group(
                name=group.name, namespace=namespace, clusters=group.clusters
            ).to_object()
            try:
                created = await self.store.create(obj)
                return GroupResponse.from_object(created)
            except AlreadyExistsError as e:
                raise HTTPException(status_code=409, detail=e.message)
            except Exception as e:
                logger.error(f"Error creating Group {namespace}/{group.name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/namespaces/{namespace}/groups",
            response_model=List[GroupResponse],
        )
        async def list_groups(namespace: str):
            """List Groups in a namespace."""
            self._check_namespace(namespace)
            try:
                groups = await self.store.list(GROUP_GVK, namespace=namespace)
                return [GroupResponse.from_object(g) for g in groups]
            except Exception as e:
                logger.error(f"Error listing Groups in {namespace}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/namespaces/{namespace}/groups/{name}",
            response_model=GroupResponse,
        )
        async def get_group(namespace: str, name: str):
            """Get a Group by name."""
            self._check_namespace(namespace)
            try:
                obj = await self.store.get(ObjectKey(namespace, name), GROUP_GVK)
                return GroupResponse.from_object(obj)
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=e.message)
            except Exception as e:
                logger.error(f"Error getting Group {namespace}/{name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.put(
            "/api/v1/namespaces/{namespace}/groups/{name}",
            response_model=GroupResponse,
        )
        async def update_group(namespace: str, name: str, update: GroupUpdate):
            """Replace a Group's cluster list."""
            self._check_namespace(namespace)
            try:
                obj = await self.store.get(ObjectKey(namespace, name), GROUP_GVK)
                obj.object["spec"] = {"clusters": list(update.clusters)}
                if update.resource_version:
                    obj.metadata["resourceVersion"] = update.resource_version
                updated = await self.store.update(obj)
                return GroupResponse.from_object(updated)
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=e.message)
            except ConflictError as e:
                raise HTTPException(status_code=409, detail=e.message)
            except Exception as e:
                logger.error(f"Error updating Group {namespace}/{name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete(
            "/api/v1/namespaces/{namespace}/groups/{name}", status_code=204
        )
        async def delete_group(namespace: str, name: str):
            """Delete a Group; its PlacementRules are garbage collected."""
            self._check_namespace(namespace)
            try:
                await self.store.delete(ObjectKey(namespace, name), GROUP_GVK)
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=e.message)
            except Exception as e:
                logger.error(f"Error deleting Group {namespace}/{name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.post(
            "/api/v1/namespaces/{namespace}/groups/{name}/reconcile",
            status_code=202,
        )
        async def trigger_reconciliation(namespace: str, name: str):
            """Queue a reconciliation for a Group."""
            self._check_namespace(namespace)
            if not self.controller:
                raise HTTPException(status_code=503, detail="Controller not available")
            key = ObjectKey(namespace, name)
            self.controller.trigger_reconciliation(key)
            return {"message": "Reconciliation triggered", "group": str(key)}

        # ==================== PlacementRule Endpoints ====================

        @self.app.get("/api/v1/namespaces/{namespace}/placementrules")
        async def list_placement_rules(
            namespace: str, group: Optional[str] = None
        ) -> List[Dict[str, Any]]:
            """List PlacementRules, optionally only those owned by one Group."""
            self._check_namespace(namespace)
            try:
                rules = await self.store.list(PLACEMENT_RULE_GVK, namespace=namespace)
            except Exception as e:
                logger.error(f"Error listing PlacementRules in {namespace}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            if group:
                rules = [
                    r
                    for r in rules
                    if any(
                        ref.kind == GROUP_GVK.kind and ref.name == group
                        for ref in r.owner_references
                    )
                ]
            return [r.object for r in rules]

        @self.app.get("/api/v1/namespaces/{namespace}/placementrules/{name}")
        async def get_placement_rule(namespace: str, name: str) -> Dict[str, Any]:
            """Get a PlacementRule by name."""
            self._check_namespace(namespace)
            try:
                rule = await self.store.get(
                    ObjectKey(namespace, name), PLACEMENT_RULE_GVK
                )
                return rule.object
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=e.message)
            except Exception as e:
                logger.error(f"Error getting PlacementRule {namespace}/{name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        # ==================== Watch Endpoint ====================

        @self.app.get("/api/v1/watch")
        async def watch(kind: Optional[str] = None, namespace: Optional[str] = None):
            """SSE stream of watch events, optionally filtered by kind and namespace."""
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            def filter_fn(event: WatchEvent) -> bool:
                if kind and event.kind != kind:
                    return False
                if namespace and event.object.namespace != namespace:
                    return False
                return True

            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self._event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
