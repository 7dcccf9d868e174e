from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from paas_controller.src.config import LeaderElectionConfig
from paas_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class LeaseLeaderElector:
    """Single-active-replica election on a ``coordination.k8s.io/v1`` Lease.

    Only the holder of the Lease runs informers and controllers. Each cycle
    either creates the Lease, renews it when we hold it, or takes it over
    once the current holder has not renewed for ``leaseDurationSeconds``.
    Conflicts (``409``) lose the cycle and are retried after
    ``retry_period_seconds``.

    A leader that cannot renew keeps leading until ``renew_deadline_seconds``
    have passed since its last successful renewal, then steps down and
    calls ``on_stopped_leading``. On shutdown the Lease is released so a
    standby replica can take over without waiting for expiry.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if lease_duration_seconds < 1 or renew_deadline_seconds < 1:
            raise ValueError("lease duration and renew deadline must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.now_fn = now_fn
        self._is_leader = False

    @classmethod
    def from_config(cls, coordination_api: CoordinationV1Api, config: LeaderElectionConfig) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=config.namespace,
            lease_name=config.lease_name,
            identity=config.identity or default_identity(),
            lease_duration_seconds=config.lease_duration_seconds,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _held_by_other(self, spec: V1LeaseSpec, now: datetime) -> bool:
        """True while another identity holds an unexpired lease."""
        if not spec.holder_identity or spec.holder_identity == self.identity:
            return False
        if spec.renew_time is None:
            return False
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - _as_utc(spec.renew_time)).total_seconds() < duration

    def try_acquire_or_renew(self) -> bool:
        """Run one acquire-or-renew cycle; returns whether we hold the lease afterwards."""
        now = self.now_fn()
        try:
            lease = self.coordination_api.read_namespaced_lease(name=self.lease_name, namespace=self.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return self._create(now)
            LOGGER.warning("Failed to read lease %s/%s: %s", self.namespace, self.lease_name, exc.reason)
            return False

        if lease.spec is not None and self._held_by_other(lease.spec, now):
            return False
        return self._claim(lease, now)

    def _create(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Created leader lease %s/%s", self.namespace, self.lease_name)
        return True

    def _claim(self, lease: V1Lease, now: datetime) -> bool:
        """Write ourselves as holder; ``acquireTime`` moves only when the holder changes."""
        spec = lease.spec or V1LeaseSpec()
        if spec.acquire_time is None or spec.holder_identity != self.identity:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        lease.spec = spec
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear ``holderIdentity`` if we still hold the lease."""
        try:
            lease = self.coordination_api.read_namespaced_lease(name=self.lease_name, namespace=self.namespace)
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
            LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException as exc:
            LOGGER.warning("Failed to release leader lease %s: %s", self.lease_name, exc.reason)

    def _step_down(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until ``stop_event`` is set, invoking the callbacks on each transition."""
        LOGGER.info("Starting leader election for lease %s (identity=%s)", self.lease_name, self.identity)
        METRICS.leader_state.set(0)
        waiting_since = time.monotonic()
        renewed_at = waiting_since

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                held = False

            if held:
                renewed_at = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    METRICS.leader_acquire_latency_seconds.observe(renewed_at - waiting_since)
                    on_started_leading()
            elif self._is_leader:
                stale_for = time.monotonic() - renewed_at
                if stale_for < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; keeping leadership for up to %ss (%.2fs since last renewal)",
                        self.renew_deadline_seconds,
                        stale_for,
                    )
                else:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", stale_for)
                    waiting_since = time.monotonic()
                    self._step_down(on_stopped_leading)
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._step_down(on_stopped_leading)


def default_identity() -> str:
    """This replica's identity: the pod name from ``HOSTNAME`` or ``POD_NAME``."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))
