"""
Exit Engine: Arbitration & Execution Loop

One tick:
1. Load the full position snapshot
2. Drain the guard signal bus into the signal table
3. Forget guard/signal state for assets no longer held
4. Per asset, in snapshot order, pick the first exit that fires:
   pattern SELL > concentration SELL > collapse > target > max age > trailing
5. Attempt at most one sell per asset; remove the position only on a
   confirmed sell
6. Write the full snapshot back
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from core.collapse import CollapseDetector
from core.exceptions import ExternalDataUnavailable, StateWriteError
from core.interfaces import NotificationSink, NullNotificationSink, PriceOracle, SellBroker
from core.models import Position, SellResult, SignalAction, SignalSource, utcnow
from core.signal_table import GuardContext, SignalBus, SignalTable
from core.trailing import TrailingStopTracker
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder, TickStats
from infra.state_store import PositionStore

logger = logging.getLogger(__name__)


@dataclass
class ExitPolicy:
    target_profit_pct: Optional[float] = 200.0
    max_hold_hours: Optional[float] = 24.0
    sell_amount: str = "100%"
    accept_dry_run: bool = False
    backoff_after_failures: Optional[int] = None
    max_backoff_ticks: int = 8
    alert_after_failures: Optional[int] = 3

    @classmethod
    def from_config(cls, policy: Optional[Dict[str, Any]]) -> "ExitPolicy":
        policy = policy or {}
        exits = policy.get("exits") or {}
        retry = policy.get("sell_retry") or {}
        success = policy.get("sell_success") or {}
        return cls(
            target_profit_pct=exits.get("target_profit_pct", 200.0),
            max_hold_hours=exits.get("max_hold_hours", 24.0),
            sell_amount=str(exits.get("sell_amount", "100%")),
            accept_dry_run=bool(success.get("accept_dry_run", False)),
            backoff_after_failures=retry.get("backoff_after_failures"),
            max_backoff_ticks=int(retry.get("max_backoff_ticks", 8)),
            alert_after_failures=retry.get("alert_after_failures", 3),
        )


@dataclass
class TickResult:
    """Outcome of one arbitration tick."""
    started_at: datetime
    status: str = "ok"  # "ok" | "failed"
    positions_seen: int = 0
    sells_attempted: int = 0
    sells_confirmed: int = 0
    skipped: List[str] = field(default_factory=list)
    decisions: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "status": self.status,
            "positions_seen": self.positions_seen,
            "sells_attempted": self.sells_attempted,
            "sells_confirmed": self.sells_confirmed,
            "skipped": list(self.skipped),
            "decisions": dict(self.decisions),
            "duration_seconds": round(self.duration_seconds, 4),
            "error": self.error,
        }


class ExitEngine:
    """
    Owns the signal table and guard context and runs arbitration ticks.

    Guards publish to `bus`; the engine is the only consumer and the only
    writer of the position store.
    """

    def __init__(
        self,
        store: PositionStore,
        oracle: PriceOracle,
        broker: SellBroker,
        notifier: Optional[NotificationSink] = None,
        policy: Optional[ExitPolicy] = None,
        trailing: Optional[TrailingStopTracker] = None,
        collapse: Optional[CollapseDetector] = None,
        bus: Optional[SignalBus] = None,
        context: Optional[GuardContext] = None,
        signals: Optional[SignalTable] = None,
        metrics: Optional[MetricsRecorder] = None,
        alerts: Optional[AlertService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.oracle = oracle
        self.broker = broker
        self.notifier = notifier or NullNotificationSink()
        self.policy = policy or ExitPolicy()
        self.trailing = trailing or TrailingStopTracker()
        self.collapse = collapse or CollapseDetector()
        self.bus = bus or SignalBus()
        self.context = context or GuardContext()
        self.signals = signals or SignalTable()
        self.metrics = metrics
        self.alerts = alerts
        self.clock = clock

        self._tick_no = 0
        self._defer_until: Dict[str, int] = {}
        # Sold but not yet durably removed (snapshot write failed)
        self._sold_unsaved: Set[str] = set()
        self.last_result: Optional[TickResult] = None

    def load_positions(self) -> List[Position]:
        """Snapshot for the guard loops; excludes assets sold but not yet written."""
        return [p for p in self.store.load() if p.asset_id not in self._sold_unsaved]

    async def run_tick(self) -> TickResult:
        self._tick_no += 1
        started = time.monotonic()
        now = self.clock()
        result = TickResult(started_at=now)

        positions = self.load_positions()
        live = {p.asset_id for p in positions}
        result.positions_seen = len(positions)

        self._absorb_signals(live)
        self.signals.retain_only(live)
        self.context.retain_only(live)
        for asset_id in set(self._defer_until) - live:
            del self._defer_until[asset_id]

        remaining: List[Position] = []
        for position in positions:
            if await self._evaluate_position(position, now, result):
                continue
            remaining.append(position)

        try:
            self.store.save(remaining)
            self._sold_unsaved.clear()
        except StateWriteError as e:
            logger.error(f"Tick {self._tick_no}: snapshot write failed, previous snapshot kept: {e}")
            result.status = "failed"
            result.error = str(e)

        result.duration_seconds = time.monotonic() - started
        self.last_result = result
        if self.metrics:
            self.metrics.observe_tick(TickStats(
                status=result.status,
                positions=len(remaining),
                sells_attempted=result.sells_attempted,
                sells_confirmed=result.sells_confirmed,
                duration_seconds=result.duration_seconds,
            ))

        logger.debug(
            f"Tick {self._tick_no} done: positions={result.positions_seen} "
            f"attempted={result.sells_attempted} confirmed={result.sells_confirmed} "
            f"skipped={len(result.skipped)} in {result.duration_seconds:.3f}s"
        )
        return result

    def _absorb_signals(self, live: Set[str]) -> None:
        for signal in self.bus.drain():
            self.signals.apply(signal)
            if self.metrics:
                self.metrics.record_guard_signal(signal.source.value, signal.action.value)
            if signal.action is SignalAction.HOLD and signal.asset_id in live:
                self.notifier.notify(
                    f"HOLD advisory ({signal.source.value})\nAsset: {signal.asset_id}\n{signal.reason}"
                )

    async def _evaluate_position(self, position: Position, now: datetime, result: TickResult) -> bool:
        """Run the exit checks for one asset; returns True when it was sold."""
        asset_id = position.asset_id

        pattern = self.signals.sell_signal(asset_id, SignalSource.PATTERN)
        if pattern is not None:
            return await self._attempt_sell(position, f"pattern:{pattern.reason}", result)

        concentration = self.signals.sell_signal(asset_id, SignalSource.CONCENTRATION)
        if concentration is not None:
            return await self._attempt_sell(position, f"concentration:{concentration.reason}", result)

        try:
            quote = await self.oracle.get_price(asset_id)
        except ExternalDataUnavailable as e:
            logger.debug(f"[EXIT] skip {asset_id}: price unavailable ({e})")
            result.skipped.append(asset_id)
            return False
        if quote is None or quote.price is None or not quote.price > 0:
            logger.debug(f"[EXIT] skip {asset_id}: no usable price")
            result.skipped.append(asset_id)
            return False

        price = float(quote.price)
        reason = self._pick_exit(position, quote, price, now)
        position.last_price = price
        position.last_checked_at = now

        if reason is None:
            return False
        return await self._attempt_sell(position, reason, result)

    def _pick_exit(self, position: Position, quote, price: float, now: datetime) -> Optional[str]:
        collapse = self.collapse.evaluate(position, quote)
        if collapse.should_sell:
            return f"collapse:{collapse.reason}"

        profit_pct = position.profit_pct(price)
        target = self.policy.target_profit_pct
        if target is not None and profit_pct >= target:
            return f"target:+{profit_pct:.2f}%"

        age_hours = position.age_hours(now)
        max_hold = self.policy.max_hold_hours
        if max_hold is not None and age_hours is not None and age_hours >= max_hold:
            return f"max_age:{age_hours:.2f}h"

        verdict = self.trailing.evaluate(position, price)
        if verdict.should_sell:
            return f"trailing:{verdict.reason}"
        if verdict.signal == "LOCK_ON":
            self.notifier.notify(
                f"Profit lock raised\nAsset: {position.asset_id}\n"
                f"Profit: {verdict.profit_pct:.2f}% Locked: {verdict.locked_profit_pct:.2f}%"
            )
        return None

    def _is_deferred(self, asset_id: str) -> bool:
        return self._tick_no <= self._defer_until.get(asset_id, -1)

    async def _attempt_sell(self, position: Position, reason: str, result: TickResult) -> bool:
        asset_id = position.asset_id
        result.decisions[asset_id] = reason

        if self._is_deferred(asset_id):
            logger.debug(f"[EXIT] {asset_id} sell deferred until tick {self._defer_until[asset_id] + 1}: {reason}")
            result.skipped.append(asset_id)
            return False

        result.sells_attempted += 1
        logger.info(f"[EXIT] {asset_id} selling {self.policy.sell_amount}: {reason}")

        sell_result: Optional[SellResult] = None
        try:
            sell_result = await self.broker.sell(asset_id, self.policy.sell_amount)
            confirmed = isinstance(sell_result, SellResult) and sell_result.is_confirmed(self.policy.accept_dry_run)
        except Exception as e:  # noqa: BLE001 - any broker error is a failed attempt
            logger.error(f"[EXIT] {asset_id} sell raised: {e}")
            confirmed = False

        if confirmed:
            self._on_sell_confirmed(position, reason, sell_result)
            result.sells_confirmed += 1
            return True

        self._on_sell_failed(position, reason, sell_result)
        return False

    def _on_sell_confirmed(self, position: Position, reason: str, sell_result: SellResult) -> None:
        asset_id = position.asset_id
        self.signals.clear_asset(asset_id)
        self.context.forget(asset_id)
        self._defer_until.pop(asset_id, None)
        self._sold_unsaved.add(asset_id)

        if self.metrics:
            self.metrics.record_sell("confirmed", reason)

        signature = sell_result.signature or ("dry-run" if sell_result.dry_run else "n/a")
        logger.info(f"[EXIT] {asset_id} sold ({reason}) signature={signature}")
        self.notifier.notify(f"SOLD {asset_id}\nReason: {reason}\nSignature: {signature}")

    def _on_sell_failed(self, position: Position, reason: str, sell_result: Optional[SellResult]) -> None:
        asset_id = position.asset_id
        position.sell_failures += 1
        failures = position.sell_failures
        detail = "exception"
        if sell_result is not None:
            detail = sell_result.reason or ("unconfirmed" if sell_result.ok else "not ok")

        if self.metrics:
            self.metrics.record_sell("failed", reason)
        logger.warning(f"[EXIT] {asset_id} sell not confirmed ({detail}); failures={failures}, retrying")

        backoff_after = self.policy.backoff_after_failures
        if backoff_after is not None and failures >= backoff_after:
            defer = min(2 ** (failures - backoff_after), self.policy.max_backoff_ticks)
            self._defer_until[asset_id] = self._tick_no + defer
            logger.info(f"[EXIT] {asset_id} next sell attempt deferred {defer} tick(s)")

        if self.policy.alert_after_failures and failures == self.policy.alert_after_failures:
            message = f"Sell for {asset_id} failed {failures} times in a row (last: {detail}); exit reason {reason}"
            if self.alerts is not None:
                self.alerts.notify(AlertSeverity.CRITICAL, "Exit sell failing", message, {"asset_id": asset_id})
            else:
                self.notifier.notify(message)
