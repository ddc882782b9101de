"""
Work Queue - Per-key serialized, rate-limited queue of reconcile requests.

Modelled on the Kubernetes client-go work queue:
- a key is queued at most once, however often it is added
- a key is never handed to two workers at the same time; adding a key
  that is being processed defers it until done() is called
- failed keys are re-added after an exponential backoff with jitter
"""

import asyncio
import logging
import random
from collections import deque
from typing import Deque, Dict, Hashable, List, Optional, Set

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    Asyncio work queue with de-duplication, per-key exclusivity and backoff.

    All methods except get() are synchronous and must be called from the
    event loop thread.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 300.0,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor

        self._queue: Deque[Hashable] = deque()
        # Keys needing processing (queued, or re-added while in flight)
        self._dirty: Set[Hashable] = set()
        # Keys handed to a worker and not yet done()
        self._processing: Set[Hashable] = set()
        self._failures: Dict[Hashable, int] = {}
        self._delayed: Dict[Hashable, asyncio.TimerHandle] = {}
        self._waiters: Deque[asyncio.Future] = deque()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, item: Hashable) -> None:
        """Mark an item as needing processing."""
        if self._shutting_down:
            return
        if item in self._dirty:
            return

        self._dirty.add(item)
        if item in self._processing:
            return

        self._queue.append(item)
        self._wake_one()

    async def get(self) -> Optional[Hashable]:
        """
        Wait for the next item and mark it as processing.

        Returns:
            The next item, or None once the queue is shut down
        """
        while not self._queue:
            if self._shutting_down:
                return None

            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                elif waiter.done() and not waiter.cancelled():
                    # Pass the wake-up on so the queued item is not stranded
                    self._wake_one()
                raise

        item = self._queue.popleft()
        self._processing.add(item)
        self._dirty.discard(item)
        return item

    def done(self, item: Hashable) -> None:
        """Mark an item as finished; re-queue it if it was added meanwhile."""
        self._processing.discard(item)
        if item in self._dirty and not self._shutting_down:
            self._queue.append(item)
            self._wake_one()

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add an item once ``delay`` seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        loop = asyncio.get_running_loop()
        ready_at = loop.time() + delay

        existing = self._delayed.get(item)
        if existing is not None:
            if existing.when() <= ready_at:
                return
            existing.cancel()

        self._delayed[item] = loop.call_at(ready_at, self._fire_delayed, item)

    def _fire_delayed(self, item: Hashable) -> None:
        self._delayed.pop(item, None)
        self.add(item)

    def when(self, item: Hashable) -> float:
        """Return the backoff delay for the next retry of an item."""
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1

        delay = min(self.base_delay * (2 ** min(failures, 10)), self.max_delay)
        # Add jitter of ±jitter_factor to prevent thundering herd
        return delay * (1 + (random.random() * 2 - 1) * self.jitter_factor)

    def add_rate_limited(self, item: Hashable) -> None:
        """Add an item after its per-item exponential backoff."""
        delay = self.when(item)
        logger.debug(f"Requeueing {item} in {delay:.2f}s")
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        """Stop tracking failures for an item."""
        self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        """Return how many times an item has been rate-limited."""
        return self._failures.get(item, 0)

    def shutdown(self) -> None:
        """Stop accepting items and release all waiting consumers."""
        self._shutting_down = True

        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()

        waiters: List[asyncio.Future] = list(self._waiters)
        self._waiters.clear()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _wake_one(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
