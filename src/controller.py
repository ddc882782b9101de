"""
Replica Sync Controller - Watches primaries and dispatches reconciliations.

Similar to a controller-runtime manager: lists and watches the primary kind,
feeds a per-key serialized work queue, and runs a bounded pool of workers
that invoke the Sync Reconciler.
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from config import ControllerConfig
from events import EventType
from reconciler import ReconcileResult, SyncOutcome, SyncReconciler
from resources import DEPLOYMENTS, ReconcileRequest, ResourceKind
from store import ConflictError, ExpiredError, ResourceStore
from workqueue import WorkQueue

logger = logging.getLogger(__name__)

ERROR_RETRY_DELAY = 5  # seconds to wait after a failed list or watch


def request_for(obj: Dict[str, Any]) -> Optional[ReconcileRequest]:
    """Build a ReconcileRequest from a raw object, None if it has no name."""
    metadata = obj.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        return None
    return ReconcileRequest(namespace=metadata.get("namespace", ""), name=name)


class Controller:
    """
    Main controller that implements the watch and dispatch loops.

    Only the primary kind is watched; changes made directly to a secondary
    are picked up on the next primary event or resync.
    """

    def __init__(
        self,
        store: ResourceStore,
        reconciler: SyncReconciler,
        config: Optional[ControllerConfig] = None,
        primary_kind: ResourceKind = DEPLOYMENTS,
        namespace: Optional[str] = None,
        watch_timeout: int = 300,
    ):
        self.store = store
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.primary_kind = primary_kind
        self.namespace = namespace or None
        self.watch_timeout = watch_timeout
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.queue = WorkQueue(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        self.running = False
        self.ready = False
        self.stats: Counter = Counter()

        self._resource_version: Optional[str] = None
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the watch, resync and worker loops."""
        logger.info(
            f"Starting controller for {self.primary_kind.plural} "
            f"with {self.max_concurrent_reconciles} workers"
        )
        self.running = True

        self._tasks = [
            asyncio.create_task(self._watch_loop()),
            asyncio.create_task(self._resync_loop()),
        ]
        for worker_id in range(self.max_concurrent_reconciles):
            self._tasks.append(asyncio.create_task(self._worker(worker_id)))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Controller tasks cancelled")
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller gracefully."""
        logger.info("Stopping controller")
        self.running = False
        self.ready = False
        self.queue.shutdown()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()

    def enqueue(self, request: ReconcileRequest) -> None:
        """Queue a reconciliation for a primary."""
        self.queue.add(request)

    async def _list_and_enqueue(self) -> Optional[str]:
        """List all primaries, queue each one and return the list version."""
        items, resource_version = await self.store.list(
            self.primary_kind, self.namespace
        )
        for item in items:
            request = request_for(item)
            if request is not None:
                self.enqueue(request)

        self.ready = True
        logger.debug(f"Listed {len(items)} {self.primary_kind.plural}")
        return resource_version

    async def _watch_loop(self):
        """List then watch primaries, relisting when the watch expires."""
        while self.running:
            try:
                if self._resource_version is None:
                    self._resource_version = await self._list_and_enqueue()

                async for event in self.store.watch(
                    self.primary_kind,
                    self.namespace,
                    resource_version=self._resource_version,
                    timeout_seconds=self.watch_timeout,
                ):
                    if event.resource_version:
                        self._resource_version = event.resource_version
                    if event.event_type == EventType.BOOKMARK:
                        continue

                    request = request_for(event.object)
                    if request is not None:
                        logger.debug(f"{event.event_type.value} {request}")
                        self.enqueue(request)

            except ExpiredError:
                logger.info("Watch expired, relisting")
                self._resource_version = None
            except Exception as e:
                logger.error(f"Error in watch loop: {e}", exc_info=True)
                self._resource_version = None
                await asyncio.sleep(ERROR_RETRY_DELAY)

    async def _resync_loop(self):
        """Periodically re-queue every primary to guard against missed events."""
        while self.running:
            await asyncio.sleep(self.config.resync_interval)
            try:
                await self._list_and_enqueue()
                logger.debug("Resync queued all primaries")
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)

    async def _worker(self, worker_id: int):
        """Draw requests from the queue until it is shut down."""
        while True:
            request = await self.queue.get()
            if request is None:
                logger.debug(f"Worker {worker_id} exiting")
                return

            try:
                await self.process(request)
            finally:
                self.queue.done(request)

    async def process(self, request: ReconcileRequest) -> Optional[ReconcileResult]:
        """
        Reconcile a single request and requeue it according to the result.

        Failures (including optimistic-concurrency conflicts and timeouts) are
        retried with per-key backoff; the next attempt re-reads fresh state.

        Args:
            request: The request taken from the queue

        Returns:
            The ReconcileResult, or None if the reconciliation failed
        """
        task = asyncio.create_task(self.reconciler.reconcile(request))
        try:
            result = await asyncio.wait_for(task, timeout=self.config.reconcile_timeout)
        except ConflictError as e:
            self.stats["conflicts"] += 1
            logger.info(f"Conflict reconciling {request}, will retry: {e}")
            self.queue.add_rate_limited(request)
            return None
        except asyncio.TimeoutError:
            self.stats["errors"] += 1
            logger.error(
                f"Reconciliation of {request} timed out after "
                f"{self.config.reconcile_timeout}s"
            )
            self.queue.add_rate_limited(request)
            return None
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Error reconciling {request}: {e}", exc_info=True)
            self.queue.add_rate_limited(request)
            return None

        self.stats[result.outcome.value] += 1
        self.queue.forget(request)

        if result.requeue_after:
            self.queue.add_after(request, result.requeue_after)
        elif result.requeue:
            self.queue.add_rate_limited(request)

        return result

    def get_stats(self) -> Dict[str, int]:
        """Return reconcile counters keyed by outcome, plus queue depth."""
        stats = {outcome.value: self.stats[outcome.value] for outcome in SyncOutcome}
        stats["conflicts"] = self.stats["conflicts"]
        stats["errors"] = self.stats["errors"]
        stats["queue_depth"] = len(self.queue)
        return stats
