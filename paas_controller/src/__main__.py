from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes.client import CoordinationV1Api

from paas_controller.src.config import ControllerConfig, load_config
from paas_controller.src.health import start_health_server
from paas_controller.src.install import install_cluster_roles
from paas_controller.src.kube import ClusterClient, build_clients, load_kube_configuration
from paas_controller.src.leader import LeaseLeaderElector
from paas_controller.src.manager import ControllerManager
from paas_controller.src.metrics import METRICS
from paas_controller.src.platform import PlatformCatalog, load_catalog

LOGGER = logging.getLogger(__name__)

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|authtoken|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(://[^/\s:@]+:)([^/\s@]+)(@)"),
        r"\1[REDACTED]\3",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


class LeadershipSupervisor:
    """Runs one :class:`ControllerManager` per leadership term.

    Informer caches and work queues are not reused across terms: losing
    the lease stops the current manager and a later term builds a fresh
    one. A manager that exits without being asked to, or does not stop
    within ``stop_timeout_seconds``, shuts the process down.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        config: ControllerConfig,
        catalog: PlatformCatalog,
        shutdown_event: threading.Event,
        leader_ready: threading.Event | None = None,
    ) -> None:
        self.cluster = cluster
        self.config = config
        self.catalog = catalog
        self.shutdown_event = shutdown_event
        self.leader_ready = leader_ready
        self.manager: ControllerManager | None = None
        self._thread: threading.Thread | None = None
        self._term_stop = threading.Event()
        self._lock = threading.Lock()

    def statuses(self) -> dict[str, str]:
        manager = self.manager
        return manager.statuses() if manager is not None else {}

    def _run_manager(self, manager: ControllerManager, term_stop: threading.Event) -> None:
        unexpected_exit = False
        try:
            manager.run(term_stop)
            unexpected_exit = not term_stop.is_set() and not self.shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error("Controller manager exited without a stop signal; terminating process")
        except Exception:
            unexpected_exit = True
            LOGGER.exception("Controller manager crashed")
        finally:
            if unexpected_exit:
                self.shutdown_event.set()

    def on_started_leading(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error("Refusing to start controllers while the previous term is still running")
                self.shutdown_event.set()
                return

            self._term_stop = threading.Event()
            self.manager = ControllerManager(self.cluster, self.config, self.catalog)
            if self.leader_ready is not None:
                self.leader_ready.set()
            self._thread = threading.Thread(
                target=self._run_manager, args=(self.manager, self._term_stop), name="controller-manager", daemon=True
            )
            self._thread.start()

    def on_stopped_leading(self) -> None:
        with self._lock:
            if self.leader_ready is not None:
                self.leader_ready.clear()
            if self.manager is not None:
                self.manager.request_stop()
            self._term_stop.set()
            if self._thread is None:
                return

            timeout = self.config.leader_election.stop_timeout_seconds
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                LOGGER.error(
                    "Controllers did not stop within %ss during leadership handoff; forcing process shutdown",
                    timeout,
                )
                self.shutdown_event.set()
                return
            self._thread = None


def main() -> None:
    """Controller entrypoint: configure logging, install platform roles, then run under leader election."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    catalog = load_catalog(config.catalog_path)
    load_kube_configuration()
    cluster = build_clients()
    install_cluster_roles(cluster, catalog)

    election = config.leader_election
    leader_ready = threading.Event() if election.enabled else None
    shutdown_event = threading.Event()
    supervisor = LeadershipSupervisor(cluster, config, catalog, shutdown_event, leader_ready=leader_ready)
    health_server = start_health_server(supervisor.statuses, port=config.health_port, leader=leader_ready)

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if election.enabled:
        elector = LeaseLeaderElector.from_config(CoordinationV1Api(), election)
        elector.run(
            on_started_leading=supervisor.on_started_leading,
            on_stopped_leading=supervisor.on_stopped_leading,
            stop_event=shutdown_event,
        )
        supervisor.on_stopped_leading()
    else:
        supervisor.on_started_leading()
        shutdown_event.wait()
        supervisor.on_stopped_leading()

    health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
