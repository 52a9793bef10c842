"""
Pattern Confirmation Guard

Multi-timeframe exhaustion detector. On the coarse (5m) timeframe each asset
walks a forward-only phase machine:

    IDLE --impulse bar--> IMPULSE --higher high on more volume--> HOLD
    HOLD --higher high on fading volume--> EXIT_READY

EXIT_READY alone never sells: the fine (1m) timeframe must confirm with a red
close, a close below the previous bar's low, or a red close on a volume spike.
A confirmed SELL is published to the signal bus and the asset drops back to
HOLD, so a later fading high can trigger again after the cooldown.
"""

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.exceptions import ExternalDataUnavailable
from core.interfaces import CandleSource
from core.models import Candle, GuardSignal, Position, SignalAction, SignalSource
from core.signal_table import GuardContext, SignalBus
from infra.symbols import lookup_candidates

logger = logging.getLogger(__name__)


class PatternPhase(Enum):
    IDLE = "IDLE"
    IMPULSE = "IMPULSE"
    HOLD = "HOLD"
    EXIT_READY = "EXIT_READY"


@dataclass(frozen=True)
class PhaseState:
    phase: PatternPhase = PatternPhase.IDLE
    impulse_high: Optional[float] = None
    impulse_volume: Optional[float] = None
    hold_high: Optional[float] = None
    hold_volume: Optional[float] = None


@dataclass
class PatternGuardConfig:
    batch_size: int = 4
    coarse_timeframe: str = "5m"
    coarse_limit: int = 120
    fine_timeframe: str = "1m"
    fine_limit: int = 60
    avg_n: int = 20
    vol_mult: float = 1.0
    body_ratio: float = 0.6
    m1_vol_avg_n: int = 20
    m1_vol_spike_mult: float = 1.5
    cooldown_seconds: float = 30.0

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "PatternGuardConfig":
        cfg = cfg or {}
        known = {k: v for k, v in cfg.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def average_volume(candles: Sequence[Candle], n: int) -> float:
    window = list(candles)[-n:] if n > 0 else []
    if not window:
        return 0.0
    return sum(float(c.volume) for c in window) / len(window)


def is_impulse(candle: Candle, avg_volume: float, vol_mult: float, body_ratio: float) -> bool:
    if not candle.is_bullish:
        return False
    bar_range = max(1e-12, candle.high - candle.low)
    body = candle.close - candle.open
    return body / bar_range >= body_ratio and candle.volume > avg_volume * vol_mult


def evaluate_phase(
    prev: Optional[PhaseState],
    candles: Optional[Sequence[Candle]],
    avg_n: int = 20,
    vol_mult: float = 1.0,
    body_ratio: float = 0.6,
) -> Optional[PhaseState]:
    """
    Advance the coarse-timeframe phase machine by one observation.

    Returns the previous state unchanged when there is not enough history
    (fewer than avg_n + 2 bars).
    """
    if not candles or len(candles) < avg_n + 2:
        return prev

    state = prev or PhaseState()
    bar = candles[-1]

    if state.phase is PatternPhase.IDLE:
        if is_impulse(bar, average_volume(candles, avg_n), vol_mult, body_ratio):
            return replace(
                state,
                phase=PatternPhase.IMPULSE,
                impulse_high=bar.high,
                impulse_volume=bar.volume,
            )
        return state

    if state.phase is PatternPhase.IMPULSE:
        if bar.high > state.impulse_high and bar.volume >= state.impulse_volume:
            return replace(state, phase=PatternPhase.HOLD, hold_high=bar.high, hold_volume=bar.volume)
        return state

    if state.phase is PatternPhase.HOLD:
        if (
            bar.high > state.hold_high
            and bar.volume < state.hold_volume
            and bar.volume < state.impulse_volume
        ):
            return replace(state, phase=PatternPhase.EXIT_READY)
        return state

    return state


def m1_confirms_exit(
    candles: Optional[Sequence[Candle]],
    vol_avg_n: int = 20,
    vol_spike_mult: float = 1.5,
) -> Tuple[bool, str]:
    """Fine-timeframe confirmation of an EXIT_READY state; returns (confirmed, reason)."""
    if not candles or len(candles) < 2:
        return False, "m1_not_enough_candles"

    last, prev = candles[-1], candles[-2]
    if last.is_red:
        return True, "m1_red_close"
    if last.close < prev.low:
        return True, "m1_break_prev_low"

    avg = average_volume(candles, max(2, int(vol_avg_n)))
    if last.is_red and avg > 0 and last.volume >= avg * vol_spike_mult:
        return True, "m1_red_vol_spike"

    return False, "m1_no_confirmation"


class PatternConfirmationGuard:
    """
    Scans open positions in round-robin batches and publishes pattern verdicts.

    All per-asset memory lives in the shared GuardContext; the guard itself
    only keeps the batch cursor.
    """

    def __init__(
        self,
        candle_source: CandleSource,
        bus: SignalBus,
        context: GuardContext,
        positions_provider: Callable[[], List[Position]],
        config: Optional[PatternGuardConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.candles = candle_source
        self.bus = bus
        self.context = context
        self.positions_provider = positions_provider
        self.config = config or PatternGuardConfig()
        self.clock = clock
        self._cursor = 0

    def next_batch(self, positions: List[Position]) -> List[Position]:
        total = len(positions)
        if not total:
            return []
        size = max(1, min(self.config.batch_size, total))
        start = self._cursor % total
        self._cursor = (start + size) % total
        return [positions[(start + i) % total] for i in range(size)]

    async def scan(self) -> int:
        return await self.scan_once(self.positions_provider())

    async def scan_once(self, positions: List[Position]) -> int:
        """Evaluate one batch; returns the number of signals published."""
        self._discard_gone({p.asset_id for p in positions})
        published = 0
        for position in self.next_batch(positions):
            published += await self._evaluate_asset(position)
        return published

    def _discard_gone(self, live: set) -> None:
        ctx = self.context
        for asset_id in set(ctx.pattern_states) - live:
            ctx.pattern_states.pop(asset_id, None)
        for asset_id in set(ctx.pattern_cooldowns) - live:
            ctx.pattern_cooldowns.pop(asset_id, None)
        ctx.pattern_hold_alerted.intersection_update(live)
        ctx.pattern_sell_pending.intersection_update(live)

    async def _fetch(self, asset_id: str, timeframe: str, limit: int) -> Optional[List[Candle]]:
        try:
            return await self.candles.get_candles(asset_id, timeframe, limit)
        except ExternalDataUnavailable as e:
            logger.debug(f"[PATTERN] {timeframe} candles unavailable for {asset_id}: {e}")
            return None

    async def _fetch_coarse(self, asset_id: str) -> Tuple[Optional[str], Optional[List[Candle]]]:
        for candidate in lookup_candidates(asset_id):
            candles = await self._fetch(candidate, self.config.coarse_timeframe, self.config.coarse_limit)
            if candles:
                return candidate, candles
        return None, None

    async def _evaluate_asset(self, position: Position) -> int:
        cfg = self.config
        ctx = self.context
        asset_id = position.asset_id

        lookup_id, coarse = await self._fetch_coarse(asset_id)
        if not coarse:
            logger.debug(f"[PATTERN] skip {asset_id}: no {cfg.coarse_timeframe} candles for any candidate")
            return 0

        state = evaluate_phase(
            ctx.pattern_states.get(asset_id),
            coarse,
            avg_n=cfg.avg_n,
            vol_mult=cfg.vol_mult,
            body_ratio=cfg.body_ratio,
        )
        if state is None:
            return 0
        ctx.pattern_states[asset_id] = state

        published = 0
        if state.phase is PatternPhase.HOLD and asset_id not in ctx.pattern_hold_alerted:
            ctx.pattern_hold_alerted.add(asset_id)
            if asset_id in ctx.pattern_sell_pending:
                # Re-armed hold after our own SELL; the SELL stays in the table until executed
                logger.info(f"[PATTERN] {asset_id} back in HOLD with SELL pending, advisory not published")
            else:
                await self.bus.publish(GuardSignal(
                    asset_id=asset_id,
                    source=SignalSource.PATTERN,
                    action=SignalAction.HOLD,
                    reason=f"hold impulse_high={state.impulse_high} hold_high={state.hold_high}",
                ))
                published += 1

        if state.phase is not PatternPhase.EXIT_READY:
            return published
        ctx.pattern_hold_alerted.discard(asset_id)

        last_sell = ctx.pattern_cooldowns.get(asset_id)
        if last_sell is not None and self.clock() - last_sell < cfg.cooldown_seconds:
            return published

        fine = await self._fetch(lookup_id, cfg.fine_timeframe, cfg.fine_limit)
        if not fine:
            return published

        confirmed, why = m1_confirms_exit(fine, cfg.m1_vol_avg_n, cfg.m1_vol_spike_mult)
        if not confirmed:
            logger.debug(f"[PATTERN] {asset_id} EXIT_READY but no {cfg.fine_timeframe} confirmation ({why})")
            return published

        ctx.pattern_cooldowns[asset_id] = self.clock()
        ctx.pattern_sell_pending.add(asset_id)
        logger.info(f"[PATTERN] SELL signal for {asset_id}: exit_ready confirmed by {why}")
        await self.bus.publish(GuardSignal(
            asset_id=asset_id,
            source=SignalSource.PATTERN,
            action=SignalAction.SELL,
            reason=f"M5_exit_ready_M1_confirmed:{why}",
            context={
                "lookup_id": lookup_id,
                "impulse_high": state.impulse_high,
                "impulse_volume": state.impulse_volume,
                "hold_high": state.hold_high,
                "hold_volume": state.hold_volume,
            },
        ))
        ctx.pattern_states[asset_id] = replace(state, phase=PatternPhase.HOLD)
        return published + 1
