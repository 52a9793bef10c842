"""Lightweight HTTP health endpoint for the exit engine."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


def engine_health_status(
    last_tick: Optional[Dict[str, Any]],
    tasks: Iterable[Any],
    open_positions: Optional[int],
    stale_after_seconds: float,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Build the health payload.

    Unhealthy when no tick has completed within `stale_after_seconds`, or the
    last tick failed to write its snapshot.
    """
    now = now or datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "ok": True,
        "now": now.isoformat(),
        "open_positions": open_positions,
        "last_tick": last_tick,
        "tasks": {t.name: t.describe() for t in tasks},
    }

    if not last_tick:
        payload["ok"] = False
        payload["reason"] = "no_tick_yet"
        return payload

    started = datetime.fromisoformat(last_tick["started_at"])
    age = (now - started).total_seconds()
    payload["last_tick_age_seconds"] = round(age, 1)
    if age > stale_after_seconds:
        payload["ok"] = False
        payload["reason"] = "tick_stale"
    elif last_tick.get("status") != "ok":
        payload["ok"] = False
        payload["reason"] = last_tick.get("error") or "tick_failed"
    return payload


class HealthServer:
    """Simple JSON health server with pluggable status provider."""

    def __init__(self, port: int, status_provider: Callable[[], Dict[str, Any]], host: str = "0.0.0.0"):
        self._host = host
        self._port = int(port)
        self._status_provider = status_provider
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return

        handler_cls = self._build_handler(self._status_provider)
        self._server = HTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as exc:
            logger.warning("Failed shutting down health server: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    @staticmethod
    def _build_handler(status_provider: Callable[[], Dict[str, Any]]):
        provider = status_provider

        class HealthHandler(BaseHTTPRequestHandler):
            def do_GET(self):  # type: ignore[override]
                if self.path not in ("/", "/health", "/healthz"):
                    self.send_response(404)
                    self.end_headers()
                    return

                payload = provider() or {}
                ok = bool(payload.get("ok", True))
                body = json.dumps(payload, default=str).encode("utf-8")

                self.send_response(200 if ok else 503)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                return

        return HealthHandler


__all__ = ["HealthServer", "engine_health_status"]
