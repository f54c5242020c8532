"""Lightweight HTTP endpoint for liveness and the full state snapshot."""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Provider = Callable[[], Dict[str, Any]]

HEALTH_PATHS = ("/", "/health", "/healthz")
STATE_PATH = "/state"


class HealthServer:
    """
    JSON server with pluggable providers.

    ``/health`` returns the status provider's payload (503 when ``ok`` is
    false); ``/state`` returns the state provider's payload.
    """

    def __init__(
        self,
        port: int,
        status_provider: Provider,
        state_provider: Optional[Provider] = None,
        host: str = "0.0.0.0",
    ):
        self._host = host
        self._port = int(port)
        self._routes: Dict[str, Provider] = {path: status_provider for path in HEALTH_PATHS}
        if state_provider is not None:
            self._routes[STATE_PATH] = state_provider
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        return self._server.server_port if self._server else None

    @property
    def running(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        if self.running:
            return
        self._server = ThreadingHTTPServer((self._host, self._port), _make_handler(self._routes))
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        if server is None:
            return
        try:
            server.shutdown()
            server.server_close()
        except OSError as exc:
            logger.warning("Failed shutting down health server: %s", exc)
        if thread:
            thread.join(timeout=3)


def _make_handler(routes: Dict[str, Provider]):
    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self):  # type: ignore[override]
            path = self.path.split("?", 1)[0]
            provider = routes.get(path)
            if provider is None:
                self._reply(404, {"error": f"unknown path {self.path}"})
                return
            payload = provider() or {}
            status = 503 if path in HEALTH_PATHS and not payload.get("ok", True) else 200
            self._reply(status, payload)

        def _reply(self, status: int, payload: Dict[str, Any]) -> None:
            body = json.dumps(payload, default=str).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover
            return

    return _Handler


__all__ = ["HealthServer"]
