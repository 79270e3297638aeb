import asyncio
import logging
from typing import Dict, Optional, Set

from ..api.models import NamespacedName

logger = logging.getLogger(__name__)


class WorkQueue:
    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        """
        Initialize work queue.

        Args:
            base_delay: First retry delay of a failing key, in seconds
            max_delay: Upper bound of the retry delay, in seconds

        Guarantees:
        1. A key is pending at most once, however often it is added
        2. A key is handed to at most one worker at a time
        3. A key added while being processed is handed out again after done()
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._queue: "asyncio.Queue[Optional[NamespacedName]]" = asyncio.Queue()
        self._pending: Set[NamespacedName] = set()
        self._processing: Set[NamespacedName] = set()
        self._dirty: Set[NamespacedName] = set()
        self._failures: Dict[NamespacedName, int] = {}
        self._timers: Set[asyncio.TimerHandle] = set()
        self._shutting_down = False
        self._waiters = 0

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: NamespacedName) -> None:
        """
        Queue a key for processing.

        Logic:
        1. Ignore while shutting down or when already pending
        2. Mark dirty only if a worker currently holds the key
        3. Otherwise enqueue it
        """
        if self._shutting_down or key in self._pending:
            return

        self._pending.add(key)
        if key in self._processing:
            self._dirty.add(key)
            return
        self._queue.put_nowait(key)

    async def get(self) -> Optional[NamespacedName]:
        """
        Wait for the next key.

        Returns:
            Key to process, or None once the queue is shut down
        """
        if self._shutting_down:
            return None

        self._waiters += 1
        try:
            key = await self._queue.get()
        finally:
            self._waiters -= 1

        if key is None:
            return None

        self._pending.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: NamespacedName) -> None:
        """Release a key handed out by get()."""
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self._queue.put_nowait(key)

    def num_requeues(self, key: NamespacedName) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: NamespacedName) -> None:
        """Reset the failure count of a key."""
        self._failures.pop(key, None)

    def backoff(self, key: NamespacedName) -> float:
        failures = self._failures.get(key, 0)
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def add_rate_limited(self, key: NamespacedName) -> float:
        """
        Re-add a failed key after its backoff delay.

        Returns:
            Delay in seconds
        """
        delay = self.backoff(key)
        self._failures[key] = self._failures.get(key, 0) + 1
        self.add_after(key, delay)
        return delay

    def add_after(self, key: NamespacedName, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def shutdown(self) -> None:
        """Stop accepting keys and wake every waiting worker."""
        if self._shutting_down:
            return
        self._shutting_down = True

        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

        for _ in range(max(self._waiters, 1)):
            self._queue.put_nowait(None)
        logger.debug("Work queue shut down")
