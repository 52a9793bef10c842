"""
Candle stubs for pattern guard tests.

Use the factories instead of hand-built bar lists so the phase-machine
scenarios read as a story: flat baseline, impulse, higher high, fading high.
"""

from typing import List

from core.models import Candle

BAR_MS = 5 * 60 * 1000


class CandleStub:

    @staticmethod
    def create(
        open: float = 1.0,
        close: float = 1.0,
        high: float = None,
        low: float = None,
        volume: float = 100.0,
        t: int = 0,
    ) -> Candle:
        """
        Build a single bar; high/low default to 1% beyond the body.

        Example:
            >>> red = CandleStub.create(open=1.1, close=1.0)
        """
        high = max(open, close) * 1.01 if high is None else high
        low = min(open, close) * 0.99 if low is None else low
        return Candle(t=t, open=open, high=high, low=low, close=close, volume=volume)

    @classmethod
    def create_series(cls, count: int = 22, price: float = 1.0, volume: float = 100.0) -> List[Candle]:
        """Flat, non-bullish bars: enough history for the default avg_n of 20."""
        return [
            cls.create(open=price, close=price, volume=volume, t=i * BAR_MS)
            for i in range(count)
        ]

    @classmethod
    def append(cls, series: List[Candle], **kwargs) -> List[Candle]:
        t = series[-1].t + BAR_MS if series else 0
        return list(series) + [cls.create(t=t, **kwargs)]


def impulse_bar() -> dict:
    # body 0.20 of range 0.23; volume 300 vs ~110 average
    return dict(open=1.0, close=1.2, high=1.22, low=0.99, volume=300.0)


def higher_high_bar() -> dict:
    # above impulse high on at least impulse volume
    return dict(open=1.2, close=1.28, high=1.30, low=1.18, volume=350.0)


def fading_high_bar() -> dict:
    # above hold high on lower volume than both hold and impulse bars
    return dict(open=1.28, close=1.33, high=1.35, low=1.27, volume=200.0)


def pump_sequence() -> List[List[Candle]]:
    """Coarse-timeframe snapshots seen on successive scans: IMPULSE, HOLD, EXIT_READY."""
    base = CandleStub.create_series()
    with_impulse = CandleStub.append(base, **impulse_bar())
    with_hold = CandleStub.append(with_impulse, **higher_high_bar())
    with_fade = CandleStub.append(with_hold, **fading_high_bar())
    return [with_impulse, with_hold, with_fade]


def m1_confirming() -> List[Candle]:
    bars = CandleStub.create_series(count=20, price=1.33, volume=50.0)
    return CandleStub.append(bars, open=1.34, close=1.30, volume=60.0)


def m1_not_confirming() -> List[Candle]:
    bars = CandleStub.create_series(count=20, price=1.33, volume=50.0)
    return CandleStub.append(bars, open=1.33, close=1.36, low=1.33, volume=40.0)
