"""
Trailing-Stop Tracker

Ratchets a locked-in profit floor upward as gains grow:

    inactive --(profit >= mark)--> active (locked 0)
    active: every `step_trigger_delta_pct` of extra profit raises the floor
            (first ratchet to `start_lock_pct`, then +`lock_step_pct` each)
    active and profit <= floor --> SELL

Above `lock_start_at_pct` a coarser, sticky lock ladder takes over; its floor
only ratchets up and never disturbs the gap-trailing state underneath.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from core.models import Position, TrailingState, compute_profit_pct

logger = logging.getLogger(__name__)


@dataclass
class TrailingVerdict:
    should_sell: bool
    reason: str
    profit_pct: float
    locked_profit_pct: float = 0.0
    signal: Optional[str] = None  # "TRAIL_SELL", "LOCK_SELL", "LOCK_ON"


class TrailingStopTracker:
    """Stateless evaluator; all per-position state lives in Position.trailing_state."""

    def __init__(
        self,
        mark_pct: float = 25.0,
        step_trigger_delta_pct: float = 100.0,
        lock_step_pct: float = 25.0,
        start_lock_pct: Optional[float] = None,
        lock_start_at_pct: Optional[float] = None,
        lock_interval_pct: float = 200.0,
    ):
        if step_trigger_delta_pct <= 0:
            raise ValueError("step_trigger_delta_pct must be positive")
        self.mark_pct = float(mark_pct)
        self.step_trigger_delta_pct = float(step_trigger_delta_pct)
        self.lock_step_pct = float(lock_step_pct)
        self.start_lock_pct = float(lock_step_pct if start_lock_pct is None else start_lock_pct)
        self.lock_start_at_pct = None if lock_start_at_pct is None else float(lock_start_at_pct)
        self.lock_interval_pct = float(lock_interval_pct)

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "TrailingStopTracker":
        cfg = cfg or {}
        return cls(
            mark_pct=cfg.get("mark_pct", 25.0),
            step_trigger_delta_pct=cfg.get("step_trigger_delta_pct", 100.0),
            lock_step_pct=cfg.get("lock_step_pct", 25.0),
            start_lock_pct=cfg.get("start_lock_pct", 10.0),
            lock_start_at_pct=cfg.get("lock_start_at_pct", 400.0),
            lock_interval_pct=cfg.get("lock_interval_pct", 200.0),
        )

    def _ladder_floor(self, profit_pct: float) -> Optional[float]:
        if self.lock_start_at_pct is None or self.lock_interval_pct <= 0:
            return None
        if profit_pct < self.lock_start_at_pct:
            return None
        floor = math.floor(profit_pct / self.lock_interval_pct) * self.lock_interval_pct
        return max(0.0, floor - self.lock_interval_pct)

    def evaluate(self, position: Position, current_price: float) -> TrailingVerdict:
        """Advance the position's trailing state with the current price and decide."""
        profit_pct = compute_profit_pct(position.entry_price, current_price)

        if position.trailing_state is None:
            position.trailing_state = TrailingState()
        t = position.trailing_state
        t.last_profit_pct = profit_pct

        logger.debug(
            f"[TRAIL] {position.asset_id} profit={profit_pct:.2f}% active={t.active} "
            f"locked={t.locked_profit_pct} lock={t.lock_active}/{t.lock_profit_pct} "
            f"steps={t.steps} next={t.next_step_trigger_pct}"
        )

        # Lock ladder (sticky once active)
        ladder = self._ladder_floor(profit_pct)
        raised = False
        if ladder is not None and (not t.lock_active or ladder > t.lock_profit_pct):
            raised = True
            t.lock_active = True
            t.lock_profit_pct = ladder

        if t.lock_active:
            if profit_pct <= t.lock_profit_pct:
                return TrailingVerdict(
                    should_sell=True,
                    reason=f"lock_stop_hit profit={profit_pct:.2f}% <= locked={t.lock_profit_pct:.2f}%",
                    profit_pct=profit_pct,
                    locked_profit_pct=t.lock_profit_pct,
                    signal="LOCK_SELL",
                )
            if raised:
                return TrailingVerdict(
                    should_sell=False,
                    reason=f"lock_active profit={profit_pct:.2f}% locked={t.lock_profit_pct:.2f}%",
                    profit_pct=profit_pct,
                    locked_profit_pct=t.lock_profit_pct,
                    signal="LOCK_ON",
                )
            return TrailingVerdict(False, "lock_holding", profit_pct, t.lock_profit_pct)

        # Gap trailing
        if not t.active:
            if profit_pct >= self.mark_pct:
                t.active = True
                t.locked_profit_pct = 0.0
                t.steps = 0
                t.next_step_trigger_pct = self.mark_pct + self.step_trigger_delta_pct
                return TrailingVerdict(False, "trailing_activated", profit_pct, 0.0)
            return TrailingVerdict(False, "not_marked_yet", profit_pct, 0.0)

        # Fast-forward through every threshold crossed since the last tick
        while t.next_step_trigger_pct is not None and profit_pct >= t.next_step_trigger_pct:
            t.steps += 1
            t.locked_profit_pct = max(
                t.locked_profit_pct,
                self.start_lock_pct + (t.steps - 1) * self.lock_step_pct,
            )
            t.next_step_trigger_pct = self.mark_pct + (t.steps + 1) * self.step_trigger_delta_pct

        if profit_pct <= t.locked_profit_pct:
            return TrailingVerdict(
                should_sell=True,
                reason=f"gap_trailing_stop_hit profit={profit_pct:.2f}% <= locked={t.locked_profit_pct:.2f}%",
                profit_pct=profit_pct,
                locked_profit_pct=t.locked_profit_pct,
                signal="TRAIL_SELL",
            )

        return TrailingVerdict(False, "holding", profit_pct, t.locked_profit_pct)
