"""Shared test helpers: in-memory collaborators and candle builders."""

from tests.helpers.candles import (
    CandleStub,
    fading_high_bar,
    higher_high_bar,
    impulse_bar,
    m1_confirming,
    m1_not_confirming,
    pump_sequence,
)
from tests.helpers.fakes import (
    FakeBroker,
    FakeCandleSource,
    FakeConcentrationSource,
    FakePriceOracle,
    RecordingNotifier,
)

__all__ = [
    "CandleStub",
    "FakeBroker",
    "FakeCandleSource",
    "FakeConcentrationSource",
    "FakePriceOracle",
    "RecordingNotifier",
    "fading_high_bar",
    "higher_high_bar",
    "impulse_bar",
    "m1_confirming",
    "m1_not_confirming",
    "pump_sequence",
]
