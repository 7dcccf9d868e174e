from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import NamedTuple

from paas_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ObjectKey(NamedTuple):
    """Queue key: the kind plus ``namespace/name`` of the object to reconcile."""

    kind: str
    namespace: str
    name: str

    @property
    def store_key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    def __str__(self) -> str:
        return f"{self.kind}:{self.store_key}"


class WorkQueue:
    """Coalescing FIFO of keys with delayed and rate-limited re-adds.

    A key is held at most once while waiting and is never handed to two
    workers at the same time: adding a key that is being processed marks it
    dirty, and :meth:`done` puts it back on the queue.

    Rate-limited re-adds wait ``min(max_delay, base_delay * 2**(n-1))``
    seconds where ``n`` counts the consecutive failures since the last
    :meth:`forget`.
    """

    def __init__(
        self,
        name: str = "default",
        *,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock

        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

        self._failures: dict[Hashable, int] = {}
        self._failures_lock = threading.Lock()

        self._delay_cond = threading.Condition()
        self._delayed: list[tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._delay_thread = threading.Thread(
            target=self._delay_loop, name=f"workqueue-{name}-delay", daemon=True
        )
        self._delay_thread.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: Hashable) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            METRICS.queue_adds_total.labels(controller=self.name).inc()
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            METRICS.queue_depth.labels(controller=self.name).set(len(self._queue))
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until a key is available.

        Returns ``(key, False)`` on success, ``(None, True)`` once the queue is
        shut down and drained, and ``(None, False)`` when ``timeout`` elapsed.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout=timeout):
                return None, False
            if not self._queue:
                return None, True
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            METRICS.queue_depth.labels(controller=self.name).set(len(self._queue))
            return key, False

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                METRICS.queue_depth.labels(controller=self.name).set(len(self._queue))
                self._cond.notify()

    def add_after(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._delay_cond:
            if self.shutting_down():
                return
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._seq), key))
            self._delay_cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Schedule ``key`` after its backoff delay and return that delay in seconds."""
        with self._failures_lock:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
        delay = min(self.max_delay, self.base_delay * float(2 ** (failures - 1)))
        METRICS.queue_retries_total.labels(controller=self.name).inc()
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        with self._failures_lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._failures_lock:
            return self._failures.get(key, 0)

    def shutdown(self) -> None:
        """Unblock every consumer and drop delayed keys that have not fired yet."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._delay_cond:
            dropped = len(self._delayed)
            self._delayed.clear()
            self._delay_cond.notify_all()
        if dropped:
            LOGGER.info("Work queue %s dropped %d delayed key(s) on shutdown", self.name, dropped)
        if threading.current_thread() is not self._delay_thread:
            self._delay_thread.join(timeout=5)

    def _delay_loop(self) -> None:
        while True:
            ready: list[Hashable] = []
            with self._delay_cond:
                if self.shutting_down():
                    return
                now = self._clock()
                while self._delayed and self._delayed[0][0] <= now:
                    ready.append(heapq.heappop(self._delayed)[2])
                if not ready:
                    timeout = self._delayed[0][0] - now if self._delayed else None
                    self._delay_cond.wait(timeout=timeout)
                    continue
            for key in ready:
                self.add(key)
