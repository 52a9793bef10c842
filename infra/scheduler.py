"""
Periodic Task Scheduler

Runs an async job every `interval_seconds` on the event loop.

- Self non-overlapping: one coroutine per task, the next run is scheduled
  only after the previous one finishes
- Overrun: runs whose start time passed while the previous run was still in
  flight are skipped (not queued) and counted
- Optional jitter added to each sleep to avoid lockstep with other loops
- stop() sets the stop event and waits for the in-flight run; nothing is
  cancelled mid-call
"""

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


class PeriodicTask:

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Awaitable[Any]],
        jitter_pct: float = 0.0,
        run_immediately: bool = True,
        metrics: Optional[MetricsRecorder] = None,
        on_error: Optional[Callable[[str, BaseException], None]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"{name}: interval_seconds must be positive")
        self.name = name
        self.interval_seconds = float(interval_seconds)
        self.job = job
        self.jitter_pct = max(0.0, min(float(jitter_pct), 20.0))  # Clamp 0-20%
        self.run_immediately = run_immediately
        self.metrics = metrics
        self.on_error = on_error

        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

        self.runs = 0
        self.failures = 0
        self.skipped_runs = 0
        self.last_started_at: Optional[datetime] = None
        self.last_duration: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info(f"Started periodic task {self.name} (interval={self.interval_seconds}s, jitter={self.jitter_pct:.1f}%)")

    async def stop(self) -> None:
        if self._task is None:
            return
        assert self._stop is not None
        self._stop.set()
        await self._task
        self._task = None
        logger.info(f"Stopped periodic task {self.name} after {self.runs} run(s)")

    async def run_once(self) -> Any:
        """Execute the job once, recording outcome; errors are logged, not raised."""
        started = time.monotonic()
        self.last_started_at = datetime.now(timezone.utc)
        self.runs += 1
        try:
            return await self.job()
        except Exception as exc:  # noqa: BLE001 - a failing run must not kill the loop
            self.failures += 1
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.error(f"Periodic task {self.name} failed: {exc}", exc_info=True)
            if self.on_error is not None:
                self.on_error(self.name, exc)
            return None
        finally:
            self.last_duration = time.monotonic() - started

    def _sleep_seconds(self, elapsed: float) -> float:
        if elapsed >= self.interval_seconds:
            missed = int(elapsed // self.interval_seconds)
            self.skipped_runs += missed
            if self.metrics:
                for _ in range(missed):
                    self.metrics.record_skipped_run(self.name)
            logger.warning(
                f"Periodic task {self.name} took {elapsed:.2f}s (interval {self.interval_seconds}s); "
                f"skipped {missed} run(s)"
            )
            base = self.interval_seconds - (elapsed % self.interval_seconds)
        else:
            base = self.interval_seconds - elapsed
        jitter = random.uniform(0, self.jitter_pct / 100.0) * self.interval_seconds
        return base + jitter

    async def _wait_or_stop(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True when stop was requested."""
        assert self._stop is not None
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _loop(self) -> None:
        assert self._stop is not None
        if not self.run_immediately and await self._wait_or_stop(self.interval_seconds):
            return
        while not self._stop.is_set():
            started = time.monotonic()
            await self.run_once()
            if await self._wait_or_stop(self._sleep_seconds(time.monotonic() - started)):
                return

    def describe(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "failures": self.failures,
            "skipped_runs": self.skipped_runs,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_duration_seconds": round(self.last_duration, 4) if self.last_duration is not None else None,
            "last_error": self.last_error,
        }
