"""
Heartbeat & Crash Reporting

- Restart counter persisted next to the instance lock, bumped once per start
- Periodic "alive" ping with uptime and resident memory
- Event loop exception handler that logs and alerts instead of dying silently
"""

import asyncio
import logging
import resource
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from infra.alerting import AlertService, AlertSeverity

logger = logging.getLogger(__name__)

RESTART_COUNT_FILE = "restart-count.txt"


def format_duration(seconds: float) -> str:
    seconds = int(max(0, seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if days or hours:
        parts.append(f"{hours}h")
    if days or hours or minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def rss_megabytes() -> float:
    """Peak resident set size of this process in MB."""
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS bytes
    if sys.platform == "darwin":
        return usage / (1024 * 1024)
    return usage / 1024


def bump_restart_count(state_dir: str) -> int:
    path = Path(state_dir) / RESTART_COUNT_FILE
    try:
        count = int(path.read_text(encoding="utf-8").strip() or 0)
    except (OSError, ValueError):
        count = 0
    count += 1
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(count), encoding="utf-8")
    except OSError as e:
        logger.warning(f"Could not persist restart count to {path}: {e}")
    return count


class Heartbeat:

    def __init__(self, alerts: Optional[AlertService], state_dir: str = "data", clock=time.monotonic):
        self.alerts = alerts
        self.state_dir = state_dir
        self.clock = clock
        self.started_at = clock()
        self.restart_count = 0

    def uptime_seconds(self) -> float:
        return self.clock() - self.started_at

    def _send(self, severity: AlertSeverity, title: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        if self.alerts is None:
            logger.info(f"{title}: {message}")
            return
        self.alerts.notify(severity, title, message, context)

    def announce_start(self, mode: str) -> int:
        self.started_at = self.clock()
        self.restart_count = bump_restart_count(self.state_dir)
        logger.info(f"Exit engine started in {mode} mode (restart #{self.restart_count})")
        self._send(AlertSeverity.INFO, "Exit engine started", f"mode={mode} restart #{self.restart_count}")
        return self.restart_count

    def announce_stop(self, reason: str) -> None:
        uptime = format_duration(self.uptime_seconds())
        self._send(AlertSeverity.WARNING, "Exit engine stopped", f"reason={reason} uptime={uptime}")

    async def ping(self) -> None:
        uptime = format_duration(self.uptime_seconds())
        memory = rss_megabytes()
        logger.info(f"Heartbeat: uptime={uptime} rss={memory:.2f}MB")
        self._send(AlertSeverity.INFO, "Exit engine alive", f"Uptime: {uptime}\nMemory usage: {memory:.2f} MB")

    def report_error(self, where: str, error: BaseException) -> None:
        uptime = format_duration(self.uptime_seconds())
        self._send(
            AlertSeverity.CRITICAL,
            f"Exit engine error in {where}",
            f"{type(error).__name__}: {error} (uptime {uptime})",
        )

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route unhandled event loop exceptions to the log and the alert channel."""

        def _handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
            error = context.get("exception")
            message = context.get("message", "unhandled event loop error")
            logger.error(f"Unhandled event loop exception: {message}", exc_info=error)
            self.report_error("event_loop", error or RuntimeError(message))

        loop.set_exception_handler(_handler)
