"""Prometheus-backed metrics hooks for the exit engine tick and guard loops."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "exit_engine_"


@dataclass
class TickStats:
    status: str
    positions: int
    sells_attempted: int
    sells_confirmed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose exit engine stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9110):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9110) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_tick_stats: Optional[TickStats] = None
        self._skipped_runs: Dict[str, int] = {}
        self._sell_outcomes: Dict[str, int] = {}

        if not self._enabled:
            self._tick_summary = None
            self._tick_counter = None
            self._positions_gauge = None
            self._sells_counter = None
            self._guard_signals_counter = None
            self._skipped_runs_counter = None
            return

        self._tick_summary = Summary(
            f"{_METRIC_PREFIX}tick_duration_seconds",
            "Duration of one arbitration tick",
        )
        self._tick_counter = Counter(
            f"{_METRIC_PREFIX}ticks_total",
            "Total arbitration ticks by status",
            labelnames=("status",),
        )
        self._positions_gauge = Gauge(
            f"{_METRIC_PREFIX}open_positions",
            "Number of positions in the store at the last tick",
        )
        self._sells_counter = Counter(
            f"{_METRIC_PREFIX}sells_total",
            "Sell attempts by outcome and exit reason class",
            labelnames=("outcome", "reason"),  # outcome: "confirmed", "failed"
        )
        self._guard_signals_counter = Counter(
            f"{_METRIC_PREFIX}guard_signals_total",
            "Signals drained from the guard bus",
            labelnames=("source", "action"),
        )
        self._skipped_runs_counter = Counter(
            f"{_METRIC_PREFIX}skipped_runs_total",
            "Scheduled runs skipped because the previous run was still in flight",
            labelnames=("task",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)

            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        # All ports exhausted
        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_tick(self, stats: TickStats) -> None:
        if self._enabled:
            assert self._tick_summary and self._tick_counter and self._positions_gauge
            self._tick_summary.observe(stats.duration_seconds)
            self._tick_counter.labels(status=stats.status).inc()
            self._positions_gauge.set(max(stats.positions, 0))

        self._last_tick_stats = stats

    def record_sell(self, outcome: str, reason: str) -> None:
        """Record one sell attempt; `reason` is the full exit reason, bucketed by its prefix."""
        reason_class = self._normalize_exit_reason(reason)
        key = f"{outcome}:{reason_class}"
        self._sell_outcomes[key] = self._sell_outcomes.get(key, 0) + 1
        if self._enabled and self._sells_counter:
            self._sells_counter.labels(outcome=outcome, reason=reason_class).inc()

    def record_guard_signal(self, source: str, action: str) -> None:
        if self._enabled and self._guard_signals_counter:
            self._guard_signals_counter.labels(source=source, action=action).inc()

    def record_skipped_run(self, task: str) -> None:
        self._skipped_runs[task] = self._skipped_runs.get(task, 0) + 1
        if self._enabled and self._skipped_runs_counter:
            self._skipped_runs_counter.labels(task=task).inc()

    def last_tick(self) -> Optional[TickStats]:
        return self._last_tick_stats

    def skipped_runs_snapshot(self) -> Dict[str, int]:
        return dict(self._skipped_runs)

    def sell_outcomes_snapshot(self) -> Dict[str, int]:
        return dict(self._sell_outcomes)

    @staticmethod
    def _normalize_exit_reason(reason: str) -> str:
        """Keep label cardinality bounded: only the reason class before ':' is used"""
        head = (reason or "").split(":", 1)[0].strip().lower()
        if head in ("pattern", "concentration", "collapse", "target", "max_age", "trailing"):
            return head
        return "other"


__all__ = ["MetricsRecorder", "TickStats"]
