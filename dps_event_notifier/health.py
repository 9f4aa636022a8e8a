"""Health and manual-refresh HTTP endpoint.

    GET  /health   -> last cycle report as JSON (503 if the last cycle failed)
    POST /refresh  -> start a cycle now (202), or 409 if one is running
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import urlparse

from .scheduler import Scheduler, TriggerResult

logger = logging.getLogger(__name__)


class HealthHandler(BaseHTTPRequestHandler):
    scheduler: Scheduler  # set on the per-server subclass

    def log_message(self, format, *args):
        """Override to use Python logging instead of stderr."""
        logger.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self):
        path = urlparse(self.path).path
        if path in ("/", "/health"):
            health = self.scheduler.health()
            last = health.get("last_cycle")
            status = 503 if last is not None and not last.get("ok") else 200
            self._send_json(status, health)
        else:
            self._send_json(404, {"error": "not found"})

    def do_POST(self):
        path = urlparse(self.path).path
        if path == "/refresh":
            result = self.scheduler.trigger_now()
            if result is TriggerResult.STARTED:
                self._send_json(202, {"status": result.value})
            else:
                self._send_json(409, {"status": result.value})
        else:
            self._send_json(404, {"error": "not found"})

    def _send_json(self, status: int, body: dict):
        data = json.dumps(body).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


class HealthServer:
    """Serves the scheduler's health on a background thread."""

    def __init__(self, scheduler: Scheduler, host: str = "127.0.0.1", port: int = 8080):
        self.scheduler = scheduler
        self.host = host
        self.port = port
        self.server: Optional[ThreadingHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.server is not None

    def start(self) -> str:
        """Start the server and return the base URL ("" if it failed)."""
        if self.server is not None:
            return f"http://{self.host}:{self.server.server_address[1]}"

        handler = type("BoundHealthHandler", (HealthHandler,), {"scheduler": self.scheduler})
        try:
            self.server = ThreadingHTTPServer((self.host, self.port), handler)
        except OSError as e:
            logger.error("Failed to start health server on %s:%s: %s", self.host, self.port, e)
            return ""
        self.server_thread = threading.Thread(target=self.server.serve_forever, name="health", daemon=True)
        self.server_thread.start()
        base_url = f"http://{self.host}:{self.server.server_address[1]}"
        logger.info("Health endpoint listening at %s/health", base_url)
        return base_url

    def stop(self):
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Health server stopped")


__all__ = ["HealthServer", "HealthHandler"]
