"""
Concentration Guard

Sells early when a single holder controls too much of the supply while the
position has not yet made much profit, and raises a HOLD advisory when the
same concentration coincides with a large profit.

Decision table (first match wins):
    top > high and profit <  low     -> SELL
    top > high and profit >= target  -> HOLD
    otherwise                        -> NONE
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from core.exceptions import ExternalDataUnavailable
from core.interfaces import ConcentrationSource, PriceOracle
from core.models import GuardSignal, Position, SignalAction, SignalSource, compute_profit_pct
from core.signal_table import GuardContext, SignalBus

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


@dataclass
class ConcentrationGuardConfig:
    high_pct: float = 30.0
    low_profit_pct: float = 60.0
    target_profit_pct: float = 110.0
    fraction_input: bool = False

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "ConcentrationGuardConfig":
        cfg = cfg or {}
        known = {k: v for k, v in cfg.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def parse_percentage(value: Any, fraction_input: bool = False) -> Optional[float]:
    """
    Coerce a concentration reading into a 0-100 percentage.

    Accepts numbers and strings such as "31.5%". Fractions (<= 1.0) are scaled
    only when the source is declared to report fractions.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = _NUMBER_RE.search(str(value))
        if not match:
            return None
        number = float(match.group(0))
    if not math.isfinite(number):
        return None
    if fraction_input and number <= 1.0:
        number *= 100.0
    return number


def decide(top_pct: float, profit_pct: float, config: Optional[ConcentrationGuardConfig] = None) -> str:
    """Return "SELL", "HOLD" or "NONE"."""
    cfg = config or ConcentrationGuardConfig()
    if top_pct > cfg.high_pct:
        if profit_pct < cfg.low_profit_pct:
            return "SELL"
        if profit_pct >= cfg.target_profit_pct:
            return "HOLD"
    return "NONE"


class ConcentrationGuard:

    def __init__(
        self,
        concentration_source: ConcentrationSource,
        price_oracle: PriceOracle,
        bus: SignalBus,
        context: GuardContext,
        positions_provider: Callable[[], List[Position]],
        config: Optional[ConcentrationGuardConfig] = None,
    ):
        self.concentration = concentration_source
        self.oracle = price_oracle
        self.bus = bus
        self.context = context
        self.positions_provider = positions_provider
        self.config = config or ConcentrationGuardConfig()

    async def scan(self) -> int:
        return await self.scan_once(self.positions_provider())

    async def scan_once(self, positions: List[Position]) -> int:
        """Evaluate every open position once; returns the number of signals published."""
        live = {p.asset_id for p in positions}
        self.context.concentration_sold.intersection_update(live)
        self.context.concentration_held.intersection_update(live)

        published = 0
        for position in positions:
            published += await self._evaluate_asset(position)
        return published

    async def _evaluate_asset(self, position: Position) -> int:
        asset_id = position.asset_id
        ctx = self.context

        try:
            raw_top = await self.concentration.get_top_holder_pct(asset_id)
            quote = await self.oracle.get_price(asset_id)
        except ExternalDataUnavailable as e:
            logger.debug(f"[CONCENTRATION] skip {asset_id}: {e}")
            return 0

        top_pct = parse_percentage(raw_top, self.config.fraction_input)
        if top_pct is None:
            logger.warning(f"[CONCENTRATION] skip {asset_id}: unreadable concentration {raw_top!r}")
            return 0
        if quote.price is None or quote.price <= 0:
            logger.debug(f"[CONCENTRATION] skip {asset_id}: no usable price")
            return 0

        profit_pct = compute_profit_pct(position.entry_price, quote.price)
        decision = decide(top_pct, profit_pct, self.config)
        context = {"top_pct": top_pct, "profit_pct": profit_pct, "price": quote.price}

        if decision == "SELL":
            if asset_id in ctx.concentration_sold:
                return 0
            ctx.concentration_sold.add(asset_id)
            reason = f"top>{self.config.high_pct:g} ({top_pct:.2f}%) and profit<{self.config.low_profit_pct:g} ({profit_pct:.2f}%)"
            logger.info(f"[CONCENTRATION] SELL signal for {asset_id}: {reason}")
            await self.bus.publish(GuardSignal(asset_id, SignalSource.CONCENTRATION, SignalAction.SELL, reason, context=context))
            return 1

        if decision == "HOLD":
            if asset_id in ctx.concentration_held:
                return 0
            ctx.concentration_held.add(asset_id)
            reason = f"top>{self.config.high_pct:g} ({top_pct:.2f}%) and profit>={self.config.target_profit_pct:g} ({profit_pct:.2f}%)"
            logger.info(f"[CONCENTRATION] HOLD advisory for {asset_id}: {reason}")
            await self.bus.publish(GuardSignal(asset_id, SignalSource.CONCENTRATION, SignalAction.HOLD, reason, context=context))
            return 1

        if asset_id in ctx.concentration_sold or asset_id in ctx.concentration_held:
            ctx.concentration_sold.discard(asset_id)
            ctx.concentration_held.discard(asset_id)
            await self.bus.publish(GuardSignal(asset_id, SignalSource.CONCENTRATION, SignalAction.CLEAR, "rule_not_met"))
            return 1
        return 0
