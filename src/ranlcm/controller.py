"""
Group Controller - drives the reconciler from watch events.

Similar to a Kubernetes controller: watch events for Groups and for the
PlacementRules they own are mapped to Group keys and queued; a periodic
resync queues every Group; a pool of workers pulls keys from the queue and
runs the reconciler, retrying failures with exponential backoff.
"""

import asyncio
import logging
import time
from typing import List, Optional

from ranlcm.config import ControllerConfig
from ranlcm.events import EventBus, EventSubscription, WatchEvent
from ranlcm.objects import GROUP_GVK, PLACEMENT_RULE_GVK, ObjectKey, Unstructured
from ranlcm.reconciler import GroupReconciler
from ranlcm.store import ObjectStore
from ranlcm.workqueue import QueueShutDown, WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    """
    Runs Group reconciliations.

    The work queue guarantees that a given Group is never reconciled by two
    workers at once, while different Groups are reconciled in parallel by
    up to ``max_concurrent_reconciles`` workers.
    """

    def __init__(
        self,
        store: ObjectStore,
        reconciler: Optional[GroupReconciler] = None,
        event_bus: Optional[EventBus] = None,
        config: Optional[ControllerConfig] = None,
        queue: Optional[WorkQueue] = None,
    ):
        self.store = store
        self.reconciler = reconciler or GroupReconciler(store)
        self.config = config or ControllerConfig()
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        # An empty WorkQueue is falsy
        if queue is None:
            queue = WorkQueue(
                base_delay=self.config.backoff_base_delay,
                max_delay=self.config.backoff_max_delay,
                jitter_factor=self.config.backoff_jitter_factor,
            )
        self.queue = queue
        self.running = False
        self._event_bus = event_bus
        self._subscriber_id: Optional[str] = None
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the watch, resync and worker loops and wait for them to end."""
        logger.info(
            f"Starting Group controller "
            f"(workers={self.max_concurrent_reconciles}, "
            f"namespace={self.config.watch_namespace or '*'})"
        )
        self.running = True
        self._shutdown_event.clear()

        if self._event_bus:
            self._subscriber_id, subscription = await self._event_bus.subscribe(
                self._is_watched
            )
            self._tasks.append(asyncio.create_task(self._watch_loop(subscription)))

        self._tasks.append(asyncio.create_task(self._resync_loop()))
        for worker_id in range(self.max_concurrent_reconciles):
            self._tasks.append(asyncio.create_task(self._worker(worker_id)))

        try:
            await asyncio.gather(*self._tasks)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise
        finally:
            self._tasks.clear()

    async def stop(self):
        """Stop the controller gracefully; in-flight reconciliations finish."""
        logger.info("Stopping Group controller")
        self.running = False
        self._shutdown_event.set()
        self.queue.shut_down()

        if self._event_bus and self._subscriber_id:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

    # ==================== Event mapping ====================

    def _in_scope(self, obj: Unstructured) -> bool:
        namespace = self.config.watch_namespace
        return namespace is None or obj.namespace == namespace

    def _is_watched(self, event: WatchEvent) -> bool:
        gvk = event.object.gvk
        return (gvk.group, gvk.kind) in (
            (GROUP_GVK.group, GROUP_GVK.kind),
            (PLACEMENT_RULE_GVK.group, PLACEMENT_RULE_GVK.kind),
        )

    def request_for_event(self, event: WatchEvent) -> Optional[ObjectKey]:
        """
        Map a watch event to the key of the Group that should be reconciled.

        Group events map to the Group itself; PlacementRule events map to
        their controlling Group. Anything else maps to ``None``.
        """
        obj = event.object
        if not self._in_scope(obj):
            return None

        gvk = obj.gvk
        if gvk.group == GROUP_GVK.group and gvk.kind == GROUP_GVK.kind:
            return obj.key

        if gvk.group == PLACEMENT_RULE_GVK.group and gvk.kind == PLACEMENT_RULE_GVK.kind:
            owner = obj.controller_owner()
            if owner is None:
                return None
            if owner.kind == GROUP_GVK.kind and owner.api_version == GROUP_GVK.api_version:
                return ObjectKey(namespace=obj.namespace, name=owner.name)

        return None

    # ==================== Loops ====================

    async def _watch_loop(self, subscription: EventSubscription):
        """Queue a reconciliation for every relevant watch event."""
        async for event in subscription:
            key = self.request_for_event(event)
            if key is None:
                continue
            logger.debug(
                f"{event.event_type.value} {event.kind} {event.key} -> Group {key}"
            )
            self.queue.add(key)
        logger.info("Watch loop stopped")

    async def resync(self) -> int:
        """Queue every Group in scope. Returns the number queued."""
        groups = await self.store.list(
            GROUP_GVK, namespace=self.config.watch_namespace
        )
        for group in groups:
            self.queue.add(group.key)
        return len(groups)

    async def _resync_loop(self):
        """Periodically queue all Groups; the first pass runs immediately."""
        while self.running:
            try:
                count = await self.resync()
                logger.info(f"Resync queued {count} Group(s)")
            except Exception as e:
                logger.error(f"Error listing Groups for resync: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.reconcile_interval
                )
            except asyncio.TimeoutError:
                pass

    async def _worker(self, worker_id: int):
        """Process keys from the queue until it shuts down."""
        while True:
            try:
                key = await self.queue.get()
            except QueueShutDown:
                logger.debug(f"Worker {worker_id} exiting")
                return

            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: ObjectKey) -> bool:
        """
        Reconcile one Group and schedule its retry or requeue.

        Returns:
            True if the reconciliation succeeded
        """
        start_time = time.monotonic()
        try:
            result = await self.reconciler.reconcile(key)
        except Exception as e:
            attempt = self.queue.num_requeues(key) + 1
            delay = self.queue.add_rate_limited(key)
            logger.error(
                f"Error reconciling Group {key} (attempt {attempt}), "
                f"retrying in {delay:.1f}s: {e}",
                exc_info=True,
            )
            return False

        self.queue.forget(key)
        if result.requeue_after:
            self.queue.add_after(key, result.requeue_after)

        duration = time.monotonic() - start_time
        logger.debug(f"Reconciled Group {key} in {duration:.3f}s")
        return True

    def trigger_reconciliation(self, key: ObjectKey):
        """Manually trigger reconciliation for a specific Group."""
        logger.info(f"Manually triggering reconciliation for Group {key}")
        self.queue.add(key)
