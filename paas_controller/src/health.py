from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

StatusFn = Callable[[], Mapping[str, str]]

RUNNING = "running"


class _HealthHandler(BaseHTTPRequestHandler):
    """Liveness, readiness, leadership and Prometheus metrics endpoints."""

    status_fn: StatusFn
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness(self) -> tuple[bool, bytes]:
        statuses = dict(self.status_fn())
        controllers_ready = bool(statuses) and all(state == RUNNING for state in statuses.values())
        leader = self._is_leader()
        lines = [f"{name}={state}" for name, state in sorted(statuses.items())]
        lines.append(f"leader={'true' if leader else 'false'}")
        return controllers_ready and leader, "\n".join(lines).encode()

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/leadz":
            if self._is_leader():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            ready, body = self._readiness()
            self._respond(200 if ready else 503, body)
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("paas_controller.health").debug(fmt, *args)


def make_health_handler(status_fn: StatusFn, leader: threading.Event | None = None) -> type[_HealthHandler]:
    """Bind the status callable onto a handler class the stdlib server can instantiate."""

    bound_status_fn = status_fn

    class _BoundHealthHandler(_HealthHandler):
        status_fn = staticmethod(bound_status_fn)  # type: ignore[assignment]
        leader_event = leader

    return _BoundHealthHandler


def start_health_server(
    status_fn: StatusFn, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Serve health and metrics from a daemon thread."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(status_fn, leader=leader))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
