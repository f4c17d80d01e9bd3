"""
Main entry point for the RAN LCM operator.

Wires the object store, event bus, reconciler, controller and HTTP API
together and runs them until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from ranlcm.api import GroupAPI
from ranlcm.config import Config, get_config
from ranlcm.controller import Controller
from ranlcm.db import DatabaseStore
from ranlcm.events import EventBus
from ranlcm.reconciler import GroupReconciler
from ranlcm.scheme import get_scheme
from ranlcm.store import MemoryStore, ObjectStore

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Main application that orchestrates the store, controller and API."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.store: Optional[ObjectStore] = None
        self.event_bus: Optional[EventBus] = None
        self.controller: Optional[Controller] = None
        self.api: Optional[GroupAPI] = None
        self.running = False
        self._stopped = False

    async def _create_store(self) -> ObjectStore:
        if self.config.store_backend == "postgres":
            db_config = self.config.database
            store = DatabaseStore(
                host=db_config.host,
                port=db_config.port,
                database=db_config.database,
                user=db_config.user,
                password=db_config.password,
                min_pool_size=db_config.min_pool_size,
                max_pool_size=db_config.max_pool_size,
            )
            await store.connect()
            await store.initialize_schema()
            logger.info("Database store initialized")
            return store

        logger.info("Using in-memory store; state is lost on restart")
        return MemoryStore()

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing RAN LCM operator")

        self.event_bus = EventBus()
        self.store = await self._create_store()
        self.store.set_event_bus(self.event_bus)

        reconciler = GroupReconciler(self.store, get_scheme())
        self.controller = Controller(
            store=self.store,
            reconciler=reconciler,
            event_bus=self.event_bus,
            config=self.config.controller,
        )

        if self.config.api.enabled:
            self.api = GroupAPI(
                store=self.store,
                controller=self.controller,
                event_bus=self.event_bus,
                host=self.config.api.host,
                port=self.config.api.port,
            )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting RAN LCM operator")

        tasks: List[asyncio.Task] = [asyncio.create_task(self.controller.start())]
        if self.api:
            tasks.append(asyncio.create_task(self.api.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopped:
            return
        logger.info("Stopping RAN LCM operator")
        self._stopped = True
        self.running = False

        if self.api:
            await self.api.stop()

        if self.controller:
            await self.controller.stop()

        if self.store:
            await self.store.close()

        logger.info("RAN LCM operator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config.api.log_level)
    app = Application(config)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
