"""Periodic open-position PnL report."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from core.exceptions import ExternalDataUnavailable
from core.interfaces import NotificationSink, PriceOracle
from core.models import Position, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReportRow:
    asset_id: str
    entry_price: float
    price: Optional[float]
    profit_pct: Optional[float]


def build_report(rows: List[ReportRow], now: datetime) -> str:
    """Best performer first; rows without a price sort last and show n/a."""
    header = f"Active Positions PnL\nTime: {now.isoformat()}"
    if not rows:
        return f"{header}\n\nNo active positions found."

    ordered = sorted(
        rows,
        key=lambda r: r.profit_pct if r.profit_pct is not None else float("-inf"),
        reverse=True,
    )
    blocks = []
    for idx, row in enumerate(ordered, start=1):
        pnl = "n/a" if row.profit_pct is None else f"{row.profit_pct:+.2f}%"
        blocks.append(f"#{idx} {row.asset_id}\nProfit: {pnl}")
    return f"{header}\n\n" + "\n\n".join(blocks)


class PositionReporter:

    def __init__(
        self,
        oracle: PriceOracle,
        notifier: NotificationSink,
        positions_provider: Callable[[], List[Position]],
        max_concurrency: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.oracle = oracle
        self.notifier = notifier
        self.positions_provider = positions_provider
        self.max_concurrency = max(1, int(max_concurrency))
        self.clock = clock

    async def _row(self, position: Position, limiter: asyncio.Semaphore) -> ReportRow:
        async with limiter:
            try:
                quote = await self.oracle.get_price(position.asset_id)
            except ExternalDataUnavailable as e:
                logger.debug(f"Report: no price for {position.asset_id}: {e}")
                return ReportRow(position.asset_id, position.entry_price, None, None)
        price = quote.price if quote.price and quote.price > 0 else None
        profit = position.profit_pct(price) if price is not None else None
        return ReportRow(position.asset_id, position.entry_price, price, profit)

    async def collect(self) -> List[ReportRow]:
        limiter = asyncio.Semaphore(self.max_concurrency)
        positions = self.positions_provider()
        return list(await asyncio.gather(*(self._row(p, limiter) for p in positions)))

    async def send_report(self) -> str:
        rows = await self.collect()
        text = build_report(rows, self.clock())
        self.notifier.notify(text)
        logger.info(f"Sent PnL report for {len(rows)} position(s)")
        return text
