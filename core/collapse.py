"""
Collapse Detector

Flags sudden adverse moves measured from the highest reading seen since the
position was first observed, not from the previous tick: a crash followed by
a partial bounce is still a crash.

Signals (independent; any one firing is sufficient):
- price drop from peak price
- liquidity drop from peak liquidity (when the oracle reports liquidity)
- supply spike above the lowest supply seen (when the oracle reports supply)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from core.models import CollapseState, Position, PriceQuote

logger = logging.getLogger(__name__)


@dataclass
class CollapseVerdict:
    should_sell: bool
    reason: str = ""
    metrics: Dict[str, float] = field(default_factory=dict)


def _drop_pct(peak: float, observed: float) -> float:
    if peak <= 0:
        return 0.0
    return (peak - observed) / peak * 100.0


class CollapseDetector:

    def __init__(
        self,
        price_drop_pct: Optional[float] = 55.0,
        liquidity_drop_pct: Optional[float] = 60.0,
        supply_spike_pct: Optional[float] = 80.0,
    ):
        self.price_drop_pct = price_drop_pct
        self.liquidity_drop_pct = liquidity_drop_pct
        self.supply_spike_pct = supply_spike_pct

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "CollapseDetector":
        cfg = cfg or {}
        return cls(
            price_drop_pct=cfg.get("price_drop_pct", 55.0),
            liquidity_drop_pct=cfg.get("liquidity_drop_pct", 60.0),
            supply_spike_pct=cfg.get("supply_spike_pct", 80.0),
        )

    def evaluate(self, position: Position, quote: PriceQuote) -> CollapseVerdict:
        price = float(quote.price)
        if price <= 0:
            return CollapseVerdict(False, "invalid_price")

        liquidity = quote.liquidity if quote.liquidity and quote.liquidity > 0 else None
        supply = quote.supply if quote.supply and quote.supply > 0 else None

        state = position.collapse_state
        if state is None:
            position.collapse_state = CollapseState(
                last_price=price,
                peak_price=price,
                peak_liquidity=liquidity,
                supply_floor=supply,
            )
            return CollapseVerdict(False, "baseline_recorded")

        state.last_price = price
        state.peak_price = max(state.peak_price, price)
        metrics = {"price_drop_pct": _drop_pct(state.peak_price, price)}

        if liquidity is not None:
            state.peak_liquidity = liquidity if state.peak_liquidity is None else max(state.peak_liquidity, liquidity)
            metrics["liquidity_drop_pct"] = _drop_pct(state.peak_liquidity, liquidity)

        if supply is not None:
            state.supply_floor = supply if state.supply_floor is None else min(state.supply_floor, supply)
            metrics["supply_spike_pct"] = (supply - state.supply_floor) / state.supply_floor * 100.0

        checks = (
            ("price_crash", "price_drop_pct", self.price_drop_pct),
            ("liquidity_pull", "liquidity_drop_pct", self.liquidity_drop_pct),
            ("supply_spike", "supply_spike_pct", self.supply_spike_pct),
        )
        for label, key, threshold in checks:
            value = metrics.get(key)
            if threshold is None or value is None:
                continue
            if value >= threshold:
                logger.info(f"Collapse detected for {position.asset_id}: {key}={value:.2f}% >= {threshold}%")
                return CollapseVerdict(True, f"{label} {key}={value:.2f}%", metrics)

        return CollapseVerdict(False, "stable", metrics)
