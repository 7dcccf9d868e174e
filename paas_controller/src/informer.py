from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from paas_controller.src.kube import (
    namespace_of,
    object_store_key,
    resource_version_of,
    to_dict,
)
from paas_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

Obj = dict[str, Any]


@dataclass(frozen=True)
class EventHandler:
    """Callbacks an informer invokes for cache changes. Any of them may be omitted."""

    on_add: Callable[[Obj], None] | None = None
    on_update: Callable[[Obj, Obj], None] | None = None
    on_delete: Callable[[Obj], None] | None = None


class Store:
    """Thread-safe ``namespace/name`` keyed object cache with a namespace index.

    Returned objects are the cached dicts themselves. Callers must deep-copy
    before mutating anything they intend to write back.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, Obj] = {}
        self._by_namespace: dict[str, set[str]] = {}

    def get_by_key(self, key: str) -> tuple[Obj | None, bool]:
        with self._lock:
            item = self._items.get(key)
        return item, item is not None

    def get(self, obj: Mapping[str, Any]) -> tuple[Obj | None, bool]:
        return self.get_by_key(object_store_key(obj))

    def list(self) -> list[Obj]:
        with self._lock:
            return list(self._items.values())

    def list_namespace(self, namespace: str) -> list[Obj]:
        with self._lock:
            return [self._items[key] for key in sorted(self._by_namespace.get(namespace, ()))]

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def add(self, obj: Obj) -> Obj | None:
        """Insert or overwrite ``obj``; returns the previously cached version, if any."""
        key = object_store_key(obj)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
            self._by_namespace.setdefault(namespace_of(obj), set()).add(key)
        return previous

    update = add

    def delete(self, obj: Mapping[str, Any]) -> Obj | None:
        key = object_store_key(obj)
        with self._lock:
            previous = self._items.pop(key, None)
            keys = self._by_namespace.get(namespace_of(obj))
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_namespace[namespace_of(obj)]
        return previous

    def replace(self, objs: Iterable[Obj]) -> dict[str, Obj]:
        """Swap the whole content for ``objs`` and return the previous snapshot."""
        with self._lock:
            previous = self._items
            self._items = {}
            self._by_namespace = {}
            for obj in objs:
                self.add(obj)
        return previous


class Informer:
    """List-then-watch cache for one resource kind.

    ``run`` performs an initial list (retried with backoff), marks the cache
    synced, then streams watch events from the list ``resourceVersion``.
    Handlers run synchronously on the informer thread and must only enqueue.

    ``410 Gone`` triggers a re-list whose result is diffed against the cache
    so consumers still observe every add, update and delete that happened
    while the watch was disconnected. Every other API error backs off
    exponentially with jitter, capped at 30 s. ``401``/``403`` are logged as
    RBAC problems and retried the same way; readiness stays false until the
    first list succeeds.
    """

    def __init__(
        self,
        kind: str,
        list_func: Callable[..., Any],
        *,
        label_selector: str | None = None,
        field_selector: str | None = None,
        resync_period_seconds: float = 0,
        watch_timeout_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.kind = kind
        self._list_func = list_func
        self._label_selector = label_selector
        self._field_selector = field_selector
        self.resync_period_seconds = resync_period_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self._clock = clock

        self._store = Store()
        self._handlers: list[EventHandler] = []
        self._synced = threading.Event()
        self._resource_version: str | None = None
        self._next_resync: float | None = None

        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def get_store(self) -> Store:
        return self._store

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def request_stop(self) -> None:
        """Interrupt an open watch stream; ``run`` returns on the next loop check."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def _selector_kwargs(self) -> dict[str, str]:
        kwargs: dict[str, str] = {}
        if self._label_selector:
            kwargs["label_selector"] = self._label_selector
        if self._field_selector:
            kwargs["field_selector"] = self._field_selector
        return kwargs

    def _dispatch(self, callback_name: str, *args: Obj) -> None:
        for handler in self._handlers:
            callback = getattr(handler, callback_name)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                LOGGER.exception("%s informer handler %s failed", self.kind, callback_name)

    def _normalise(self, obj: Any) -> Obj:
        """Convert to a dict and stamp the kind, which list items omit."""
        normalised = to_dict(obj)
        if normalised:
            normalised.setdefault("kind", self.kind)
        return normalised

    def _list(self) -> tuple[list[Obj], str | None]:
        result = to_dict(self._list_func(**self._selector_kwargs()))
        items = [self._normalise(item) for item in result.get("items") or []]
        version = (result.get("metadata") or {}).get("resourceVersion") or None
        return items, version

    def replace(self, items: list[Obj], resource_version: str | None) -> None:
        """Swap the cache for a fresh listing and notify handlers of the difference."""
        previous = self._store.replace(items)
        self._resource_version = resource_version
        seen: set[str] = set()
        for obj in items:
            key = object_store_key(obj)
            seen.add(key)
            old = previous.get(key)
            if old is None:
                self._dispatch("on_add", obj)
            elif resource_version_of(old) != resource_version_of(obj):
                self._dispatch("on_update", old, obj)
        for key, old in previous.items():
            if key not in seen:
                self._dispatch("on_delete", old)

    def apply_event(self, event_type: str, obj: Obj) -> None:
        """Apply one watch event to the cache and fan it out to handlers."""
        version = resource_version_of(obj)
        if version:
            self._resource_version = version
        if event_type == "BOOKMARK":
            return
        METRICS.informer_events_total.labels(kind=self.kind, type=event_type).inc()
        if event_type == "ADDED":
            old = self._store.add(obj)
            if old is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", old, obj)
        elif event_type == "MODIFIED":
            old = self._store.update(obj)
            if old is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", old, obj)
        elif event_type == "DELETED":
            old = self._store.delete(obj)
            self._dispatch("on_delete", old if old is not None else obj)
        else:
            LOGGER.warning("Ignoring %s watch event of unknown type %r", self.kind, event_type)

    def resync(self) -> None:
        """Re-deliver every cached object as an update so reconcilers re-check drift."""
        METRICS.informer_resyncs_total.labels(kind=self.kind).inc()
        for obj in self._store.list():
            self._dispatch("on_update", obj, obj)

    def _maybe_resync(self) -> None:
        if self._next_resync is None:
            return
        now = self._clock()
        if now >= self._next_resync:
            self.resync()
            self._next_resync = now + self.resync_period_seconds

    def _next_watch_timeout_seconds(self) -> int:
        """Shorten the watch timeout so the loop wakes up in time for the next resync."""
        if self._next_resync is None:
            return self.watch_timeout_seconds
        remaining = max(1.0, self._next_resync - self._clock())
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    def _log_api_error(self, exc: ApiException, phase: str) -> None:
        if exc.status in {401, 403}:
            LOGGER.error(
                "Kubernetes API access denied for %s %s (status=%s). "
                "Check controller RBAC and service account permissions.",
                self.kind,
                phase,
                exc.status,
            )
        else:
            LOGGER.exception("Kubernetes API error during %s %s", self.kind, phase)
        METRICS.watch_errors_total.labels(kind=self.kind).inc()

    def _initial_list(self, stop: threading.Event) -> bool:
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                items, version = self._list()
                self.replace(items, version)
                self._synced.set()
                if self.resync_period_seconds > 0:
                    self._next_resync = self._clock() + self.resync_period_seconds
                LOGGER.info(
                    "%s informer synced %d object(s) at resourceVersion %s",
                    self.kind,
                    len(items),
                    version,
                )
                return True
            except ApiException as exc:
                self._log_api_error(exc, "initial list")
            except Exception:
                LOGGER.exception("Unexpected error during %s initial list", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False

    def _relist(self, stop: threading.Event) -> bool:
        """Re-list after an expired resourceVersion, retrying until it succeeds.

        The watch only resumes from a fresh list; returns False when stopped
        first.
        """
        LOGGER.warning("%s watch resource version expired, re-listing", self.kind)
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                items, version = self._list()
                self.replace(items, version)
                return True
            except ApiException as exc:
                self._log_api_error(exc, "re-list")
            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch until ``stop_event`` is set or :meth:`request_stop` is called."""
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        if not self._initial_list(stop):
            return

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            self._maybe_resync()
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_func,
                    resource_version=self._resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(),
                    **self._selector_kwargs(),
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    event_type = str(event.get("type", ""))
                    if event_type == "ERROR":
                        raw = event.get("raw_object") or {}
                        raise ApiException(status=int(raw.get("code") or 500), reason=raw.get("message"))
                    obj = self._normalise(event.get("raw_object") or event.get("object"))
                    if not obj:
                        continue
                    self.apply_event(event_type, obj)
                    self._maybe_resync()
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    if not self._relist(stop):
                        break
                    continue
                self._log_api_error(exc, "watch")
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                LOGGER.exception("Unexpected %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
