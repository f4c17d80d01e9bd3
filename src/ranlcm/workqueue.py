"""
Work queue - deduplicating, rate-limited queue of reconciliation requests.

Semantics follow the Kubernetes client-go work queue:

* a key that is already waiting is not queued twice;
* a key that is being processed is never handed to a second worker; if it
  is added meanwhile it is marked dirty and re-queued once ``done`` is
  called for it;
* failed keys are re-added after a per-key exponential backoff with
  jitter, reset by ``forget``.
"""

import asyncio
import logging
import random
from collections import deque
from typing import Deque, Dict, Hashable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised by ``WorkQueue.get`` once the queue is shut down."""


class WorkQueue:
    """Async work queue with per-key exponential backoff."""

    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 1000.0,
        jitter_factor: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._rng = rng or random.Random()

        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._failures: Dict[Hashable, int] = {}
        self._timers: Dict[Hashable, Tuple[float, asyncio.TimerHandle]] = {}
        self._not_empty = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    def add(self, key: Hashable) -> None:
        """Queue ``key`` unless it is already waiting."""
        if self._shutting_down:
            return
        if key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done()
            return

        self._queue.append(key)
        self._not_empty.set()

    async def get(self) -> Hashable:
        """
        Wait for the next key and mark it as being processed.

        Raises:
            QueueShutDown: If the queue has been shut down
        """
        while not self._queue:
            if self._shutting_down:
                raise QueueShutDown()
            self._not_empty.clear()
            await self._not_empty.wait()

        if self._shutting_down:
            raise QueueShutDown()

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: Hashable) -> None:
        """Mark ``key`` as processed, re-queuing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._not_empty.set()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay

        # Keep whichever pending timer fires first
        pending = self._timers.get(key)
        if pending is not None:
            pending_when, handle = pending
            if pending_when <= when:
                return
            handle.cancel()

        handle = loop.call_at(when, self._fire_timer, key)
        self._timers[key] = (when, handle)

    def _fire_timer(self, key: Hashable) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def backoff_delay(self, failures: int) -> float:
        """Delay before retry number ``failures + 1``."""
        delay = min(self.base_delay * (2 ** min(failures, 30)), self.max_delay)
        jitter = (self._rng.random() * 2 - 1) * self.jitter_factor
        return delay * (1 + jitter)

    def add_rate_limited(self, key: Hashable) -> float:
        """
        Re-queue a failed key after its backoff delay.

        Returns:
            The delay in seconds before the key becomes available
        """
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = self.backoff_delay(failures)
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        """Clear the failure history of ``key``."""
        self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)

    def shut_down(self) -> None:
        """Stop handing out keys and cancel pending delayed adds."""
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._not_empty.set()
        logger.info("Work queue shut down")
