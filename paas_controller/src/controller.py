from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from paas_controller.src.errors import (
    CacheSyncTimeout,
    SkipReconcile,
    TerminalError,
    UnknownKindError,
)
from paas_controller.src.informer import Informer
from paas_controller.src.kube import name_of, namespace_of
from paas_controller.src.metrics import METRICS
from paas_controller.src.workqueue import ObjectKey, WorkQueue

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 10


class ControllerState(enum.Enum):
    CREATED = "created"
    WAITING_FOR_SYNC = "waiting_for_sync"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class Reconciler(Protocol):
    def reconcile(self, key: ObjectKey, obj: dict[str, Any]) -> None: ...

    def cleanup(self, key: ObjectKey) -> None: ...


ErrorSink = Callable[[ObjectKey, BaseException], None]


def wait_for_cache_sync(
    informers: Mapping[str, Informer] | list[Informer],
    stop: threading.Event,
    timeout_seconds: float,
    poll_interval: float = 0.1,
) -> bool:
    """Wait until every informer reports synced.

    Returns ``False`` when ``stop`` is set or ``timeout_seconds`` elapses first.
    """
    pending = list(informers.values()) if isinstance(informers, Mapping) else list(informers)
    deadline = time.monotonic() + timeout_seconds
    while not stop.is_set():
        if all(informer.has_synced() for informer in pending):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        stop.wait(timeout=min(poll_interval, remaining))
    return False


class Controller:
    """Generic worker loop draining one work queue into per-kind reconcilers.

    Lifecycle: ``CREATED`` → ``WAITING_FOR_SYNC`` → ``RUNNING`` →
    ``SHUTTING_DOWN`` → ``STOPPED``.

    For every key a worker looks the object up in the kind's informer
    store. Present objects go to ``reconcile(key, obj)``; vanished ones go
    to ``cleanup(key)``.

    Outcome handling:
        ``SkipReconcile``
            Counted as success; the key's backoff is reset.
        ``TerminalError``
            Reported to the error sink once and never requeued.
        anything else
            Reported to the error sink and requeued with rate-limited
            backoff until ``max_retries`` is exhausted, then dropped.
    """

    def __init__(
        self,
        name: str,
        *,
        informers: Mapping[str, Informer],
        reconcilers: Mapping[str, Reconciler],
        workers: int = 1,
        max_retries: int = DEFAULT_MAX_RETRIES,
        cache_sync_timeout_seconds: float = 60,
        shutdown_timeout_seconds: float = 10,
        queue: WorkQueue | None = None,
        error_sink: ErrorSink | None = None,
    ) -> None:
        missing = set(reconcilers) - set(informers)
        if missing:
            raise UnknownKindError(f"{name}: no informer for kind(s) {sorted(missing)}")
        self.name = name
        self.informers = dict(informers)
        self.reconcilers = dict(reconcilers)
        self.workers = workers
        self.max_retries = max_retries
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.queue = queue or WorkQueue(name)
        self.error_sink = error_sink or self._log_error
        self._state = ControllerState.CREATED
        self._state_lock = threading.Lock()
        self._stop: threading.Event | None = None
        self._stop_requested = False

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ControllerState) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        LOGGER.info("Controller %s: %s -> %s", self.name, previous.value, state.value)

    def is_running(self) -> bool:
        return self.state is ControllerState.RUNNING

    def enqueue(self, key: ObjectKey) -> None:
        if key.kind not in self.reconcilers:
            raise UnknownKindError(f"{self.name}: no reconciler for kind {key.kind!r}")
        self.queue.add(key)

    def enqueue_object(self, kind: str, obj: Mapping[str, Any]) -> None:
        self.enqueue(ObjectKey(kind, namespace_of(obj), name_of(obj)))

    def request_stop(self) -> None:
        self._stop_requested = True
        if self._stop is not None:
            self._stop.set()

    def _log_error(self, key: ObjectKey, exc: BaseException) -> None:
        LOGGER.error("Controller %s failed to reconcile %s: %s", self.name, key, exc, exc_info=exc)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Wait for caches, run workers until ``stop_event`` is set, then drain and stop.

        Raises :class:`CacheSyncTimeout` when the informers do not sync in
        time; that is fatal at startup.
        """
        stop = stop_event or threading.Event()
        self._stop = stop
        if self._stop_requested:
            stop.set()
        self._set_state(ControllerState.WAITING_FOR_SYNC)

        try:
            if not wait_for_cache_sync(self.informers, stop, self.cache_sync_timeout_seconds):
                if stop.is_set():
                    return
                raise CacheSyncTimeout(
                    f"{self.name}: caches not synced within {self.cache_sync_timeout_seconds}s"
                )

            self._set_state(ControllerState.RUNNING)
            threads = [
                threading.Thread(target=self._worker, name=f"{self.name}-worker-{i}", daemon=True)
                for i in range(self.workers)
            ]
            for thread in threads:
                thread.start()

            stop.wait()
            self._set_state(ControllerState.SHUTTING_DOWN)
            self.queue.shutdown()
            deadline = time.monotonic() + self.shutdown_timeout_seconds
            for thread in threads:
                thread.join(timeout=max(0.0, deadline - time.monotonic()))
                if thread.is_alive():
                    LOGGER.warning("Controller %s worker %s did not stop in time", self.name, thread.name)
        finally:
            self.queue.shutdown()
            self._set_state(ControllerState.STOPPED)

    def _worker(self) -> None:
        while self.process_next_item():
            pass

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Process one key. Returns ``False`` once the queue has shut down."""
        key, shutdown = self.queue.get(timeout=timeout)
        if shutdown:
            return False
        if key is None:
            return True
        try:
            self.process(key)  # type: ignore[arg-type]
        finally:
            self.queue.done(key)
        return True

    def process(self, key: ObjectKey) -> None:
        started = time.monotonic()
        result = "success"
        try:
            reconciler = self.reconcilers.get(key.kind)
            if reconciler is None:
                raise UnknownKindError(f"{self.name}: no reconciler for kind {key.kind!r}")
            obj, exists = self.informers[key.kind].get_store().get_by_key(key.store_key)
            if exists:
                reconciler.reconcile(key, obj)  # type: ignore[arg-type]
            else:
                reconciler.cleanup(key)
            self.queue.forget(key)
        except SkipReconcile as exc:
            result = "skipped"
            LOGGER.debug("Controller %s skipped %s: %s", self.name, key, exc)
            self.queue.forget(key)
        except (TerminalError, UnknownKindError) as exc:
            result = "terminal"
            self.error_sink(key, exc)
            self.queue.forget(key)
        except Exception as exc:
            self.error_sink(key, exc)
            if self.queue.num_requeues(key) < self.max_retries:
                result = "retry"
                delay = self.queue.add_rate_limited(key)
                LOGGER.info("Controller %s requeued %s in %.1fs", self.name, key, delay)
            else:
                result = "dropped"
                LOGGER.error(
                    "Controller %s dropping %s after %d retries", self.name, key, self.max_retries
                )
                METRICS.queue_dropped_total.labels(controller=self.name).inc()
                self.queue.forget(key)
        finally:
            METRICS.reconcile_total.labels(controller=self.name, result=result).inc()
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )
