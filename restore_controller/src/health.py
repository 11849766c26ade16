from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz`` (process alive), ``/readyz`` (caches synced and
    workers running) and ``/metrics`` (Prometheus exposition)."""

    ready_event: threading.Event

    def _reply(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._reply(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._reply(200, b"ready")
            else:
                self._reply(503, b"caches not synced")
        elif self.path == "/metrics":
            self._reply(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._reply(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Start the health/metrics server on a daemon thread and return it.

    The handler class is bound to *ready* through a subclass attribute
    because ``http.server`` instantiates handlers without arguments.
    """
    handler = type("_BoundProbeHandler", (_ProbeHandler,), {"ready_event": ready})
    server = ThreadingHTTPServer(("0.0.0.0", port), handler)  # noqa: S104
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
