"""
Main entry point for the Replica Sync Operator.

This module wires configuration, the Kubernetes store, the Sync Reconciler,
the controller and the health API together and runs them until signalled.
"""

import asyncio
import logging
import signal
from typing import Optional

from api import HealthAPI
from config import get_config
from controller import Controller
from reconciler import SyncReconciler
from resources import DEPLOYMENTS, MEMCACHEDS, SYNC_LABEL_KEY
from store import KubernetesResourceStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and health API."""

    def __init__(self):
        self.config = get_config()
        self.store: Optional[KubernetesResourceStore] = None
        self.controller: Optional[Controller] = None
        self.api: Optional[HealthAPI] = None
        self.running = False
        self._stop_task: Optional[asyncio.Task] = None

    async def initialize(self):
        """Initialize all components."""
        logging.getLogger().setLevel(self.config.api.log_level)
        logger.info("Initializing Replica Sync Operator")

        kube_config = self.config.kubernetes
        self.store = KubernetesResourceStore.from_config(kube_config)
        await self.store.connect()

        reconciler = SyncReconciler(
            store=self.store,
            label_key=SYNC_LABEL_KEY,
            primary_kind=DEPLOYMENTS,
            secondary_kind=MEMCACHEDS,
        )

        self.controller = Controller(
            store=self.store,
            reconciler=reconciler,
            config=self.config.controller,
            primary_kind=DEPLOYMENTS,
            namespace=kube_config.watch_namespace or None,
            watch_timeout=kube_config.watch_timeout,
        )

        self.api = HealthAPI(
            controller=self.controller,
            host=self.config.api.host,
            port=self.config.api.port,
        )

        scope = kube_config.watch_namespace or "all namespaces"
        logger.info(
            f"Syncing {DEPLOYMENTS.kind}.spec.replicas to "
            f"{MEMCACHEDS.kind}.spec.size via label {SYNC_LABEL_KEY} in {scope}"
        )

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting Replica Sync Operator")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api.start(self.config.api.log_level)),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        logger.info("Stopping Replica Sync Operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.api:
            await self.api.stop()

        if self.store:
            await self.store.close()

        logger.info("Replica Sync Operator stopped")

    def request_stop(self) -> asyncio.Task:
        """Schedule stop() once, returning the task that runs it."""
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self.stop())
        return self._stop_task


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        app.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.request_stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
