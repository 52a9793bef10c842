"""
Operator alerting for the exit engine.

Delivery targets (either or both):
- Telegram Bot API sendMessage
- Generic JSON webhook ({"text": ...})

Identical alerts (same severity, title and message) are suppressed for
`dedupe_seconds` after the first delivery. Dry-run mode logs instead of
posting. Delivery failures are logged and never raised to the caller.
Called from inside a running event loop, HTTP delivery happens on the
default executor so the tick and guard loops keep running.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

from core.interfaces import NotificationSink

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"

# Forget suppressed alerts after this long even with a short dedupe window
_HISTORY_RETENTION_SECONDS = 300.0


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    @classmethod
    def parse(cls, value: Any, default: "AlertSeverity") -> "AlertSeverity":
        if isinstance(value, AlertSeverity):
            return value
        return cls.__members__.get(str(value or "").strip().upper(), default)


@dataclass
class AlertConfig:
    enabled: bool
    min_severity: AlertSeverity = AlertSeverity.INFO
    dry_run: bool = False
    webhook_url: Optional[str] = None
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    timeout: float = 5.0
    dedupe_seconds: float = 60.0

    @property
    def has_target(self) -> bool:
        return bool(self.webhook_url or (self.telegram_token and self.telegram_chat_id))


def _setting(raw: Dict[str, Any], key: str, default_env: str) -> Optional[str]:
    """Inline value (``${VAR}`` expanded) or the env var named by ``<key>_env``."""
    value = raw.get(key)
    if value not in (None, ""):
        text = os.path.expandvars(str(value))
        if text and "${" not in text:
            return text
    return os.getenv(raw.get(f"{key}_env") or default_env) or None


class AlertService:
    """
    Severity-filtered, deduplicated alert delivery.

    Disabled (every notify returns False) when alerting is switched off, or
    when no delivery target is configured outside dry-run mode.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.has_target or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL or Telegram chat set; disabling alerts")
        self._sent_at: Dict[Tuple[str, str, str], float] = {}

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw = raw_config or {}
        telegram = raw.get("telegram") or {}
        return cls(AlertConfig(
            enabled=bool(enabled),
            min_severity=AlertSeverity.parse(raw.get("min_severity"), AlertSeverity.INFO),
            dry_run=bool(raw.get("dry_run", False)),
            webhook_url=_setting(raw, "webhook_url", raw.get("webhook_env") or "ALERT_WEBHOOK_URL"),
            telegram_token=_setting(telegram, "bot_token", "TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=_setting(telegram, "chat_id", "TELEGRAM_CHAT_ID"),
            timeout=float(raw.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw.get("dedupe_seconds", 60.0)),
        ))

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Deliver one alert.

        Returns True when handed to a delivery channel (or logged in dry-run
        mode); False when disabled, below min severity, or a duplicate.
        """
        if not self._enabled or severity.value < self._config.min_severity.value:
            return False

        now = time.monotonic()
        self._forget_expired(now)
        key = (severity.name, title, message)
        first_sent = self._sent_at.get(key)
        if first_sent is not None and now - first_sent <= self._config.dedupe_seconds:
            logger.debug(f"Suppressed duplicate alert: {title}")
            return False

        self._sent_at[key] = now
        self._send_alert(severity, title, message, context)
        return True

    def as_sink(self, severity: AlertSeverity = AlertSeverity.INFO, title: str = "exit-engine") -> "AlertNotificationSink":
        return AlertNotificationSink(self, severity=severity, title=title)

    def _forget_expired(self, now: float) -> None:
        horizon = max(_HISTORY_RETENTION_SECONDS, self._config.dedupe_seconds)
        for key in [k for k, sent in self._sent_at.items() if now - sent > horizon]:
            del self._sent_at[key]

    def _send_alert(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> None:
        text = format_alert(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s", severity.name, text)
            return

        cfg = self._config
        posts: List[Tuple[str, Dict[str, Any]]] = []
        if cfg.telegram_token and cfg.telegram_chat_id:
            posts.append((TELEGRAM_API_URL.format(token=cfg.telegram_token), {"chat_id": cfg.telegram_chat_id, "text": text}))
        if cfg.webhook_url:
            posts.append((cfg.webhook_url, {"text": text}))

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver(posts, title)
            return
        # Inside the engine loop: post from a worker thread, never from the loop
        future = loop.run_in_executor(None, self._deliver, posts, title)
        future.add_done_callback(partial(_log_delivery_failure, title))

    def _deliver(self, posts: List[Tuple[str, Dict[str, Any]]], title: str) -> None:
        for url, payload in posts:
            self._post_json(url, payload, title)

    def _post_json(self, url: str, payload: Dict[str, Any], title: str) -> None:
        request = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                status = getattr(response, "status", 200)
                if status >= 400:
                    logger.error("Alert '%s' rejected with HTTP %s", title, status)
        except (urllib.error.URLError, socket.timeout) as exc:
            # Never log the Telegram URL, it embeds the bot token
            logger.error("Failed to deliver alert '%s': %s", title, getattr(exc, "reason", exc))


def _log_delivery_failure(title: str, future: "asyncio.Future[None]") -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Alert '{title}' delivery raised: {error}")


def format_alert(
    severity: AlertSeverity,
    title: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
) -> str:
    lines = [f"[{severity.name}] {title}".rstrip(), message]
    if context:
        lines.append(json.dumps(context, sort_keys=True, default=str))
    return "\n".join(line for line in lines if line)


class AlertNotificationSink(NotificationSink):
    """Plain-text notification sink backed by an AlertService."""

    def __init__(self, service: AlertService, severity: AlertSeverity = AlertSeverity.INFO, title: str = "exit-engine"):
        self.service = service
        self.severity = severity
        self.title = title

    def notify(self, text: str) -> None:
        try:
            self.service.notify(self.severity, self.title, text)
        except Exception as exc:  # noqa: BLE001 - notifications are best-effort
            logger.error(f"Notification failed: {exc}")


__all__ = ["AlertService", "AlertSeverity", "AlertConfig", "AlertNotificationSink", "format_alert"]
