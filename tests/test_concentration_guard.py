import asyncio

import pytest

from core.concentration_guard import (
    ConcentrationGuard,
    ConcentrationGuardConfig,
    decide,
    parse_percentage,
)
from core.models import Position, SignalAction, SignalSource
from core.signal_table import GuardContext, SignalBus
from tests.helpers import FakeConcentrationSource, FakePriceOracle


@pytest.mark.parametrize(
    "top, profit, expected",
    [
        (35, 10, "SELL"),
        (35, 59.9, "SELL"),
        (35, 60, "NONE"),
        (35, 109.9, "NONE"),
        (35, 110, "HOLD"),
        (30, 10, "NONE"),
        (20, 500, "NONE"),
    ],
)
def test_decision_table(top, profit, expected):
    assert decide(top, profit) == expected


@pytest.mark.parametrize(
    "value, fraction_input, expected",
    [
        (31.5, False, 31.5),
        ("31.5%", False, 31.5),
        ("top holder: 42", False, 42.0),
        (0.35, True, 35.0),
        (0.35, False, 0.35),
        (45, True, 45.0),
        ("n/a", False, None),
        (None, False, None),
        (True, False, None),
        (float("nan"), False, None),
    ],
)
def test_parse_percentage(value, fraction_input, expected):
    result = parse_percentage(value, fraction_input)
    if expected is None:
        assert result is None
    else:
        assert result == pytest.approx(expected)


@pytest.fixture
def sources():
    return FakeConcentrationSource(), FakePriceOracle()


@pytest.fixture
def guard(sources):
    concentration, oracle = sources
    return ConcentrationGuard(
        concentration_source=concentration,
        price_oracle=oracle,
        bus=SignalBus(maxsize=32),
        context=GuardContext(),
        positions_provider=lambda: [Position("AAA", 1.0)],
    )


def scan(guard, positions=None):
    async def run():
        if positions is None:
            count = await guard.scan()
        else:
            count = await guard.scan_once(positions)
        return count, guard.bus.drain()

    return asyncio.run(run())


def test_sell_signal_emitted_once(guard, sources):
    concentration, oracle = sources
    concentration.values["AAA"] = 45.0
    oracle.set("AAA", 1.2)

    count, signals = scan(guard)
    assert count == 1
    [signal] = signals
    assert signal.source is SignalSource.CONCENTRATION
    assert signal.action is SignalAction.SELL
    assert signal.context["top_pct"] == 45.0
    assert signal.context["profit_pct"] == pytest.approx(20.0)

    assert scan(guard) == (0, [])


def test_hold_advisory_emitted_once(guard, sources):
    concentration, oracle = sources
    concentration.values["AAA"] = "45%"
    oracle.set("AAA", 2.5)

    _, signals = scan(guard)
    assert [s.action for s in signals] == [SignalAction.HOLD]
    assert scan(guard) == (0, [])


def test_rule_no_longer_met_clears_and_rearms(guard, sources):
    concentration, oracle = sources
    concentration.values["AAA"] = 45.0
    oracle.set("AAA", 1.2)
    scan(guard)

    concentration.values["AAA"] = 10.0
    _, signals = scan(guard)
    assert [s.action for s in signals] == [SignalAction.CLEAR]
    assert signals[0].reason == "rule_not_met"

    # Nothing flagged any more: no repeated CLEAR
    assert scan(guard) == (0, [])

    concentration.values["AAA"] = 45.0
    _, signals = scan(guard)
    assert [s.action for s in signals] == [SignalAction.SELL]


def test_unavailable_or_unreadable_inputs_are_skipped(guard, sources):
    concentration, oracle = sources
    oracle.set("AAA", 1.2)
    concentration.values["AAA"] = RuntimeError("rpc down")
    assert scan(guard) == (0, [])

    concentration.values["AAA"] = "unknown"
    assert scan(guard) == (0, [])

    concentration.values["AAA"] = 45.0
    oracle.prices.pop("AAA")
    assert scan(guard) == (0, [])


def test_dedup_flags_pruned_for_closed_positions(guard, sources):
    concentration, oracle = sources
    concentration.values["AAA"] = 45.0
    oracle.set("AAA", 1.2)
    scan(guard)
    assert guard.context.concentration_sold == {"AAA"}

    scan(guard, positions=[])
    assert guard.context.concentration_sold == set()


def test_fraction_input_config():
    cfg = ConcentrationGuardConfig.from_config({"enabled": True, "high_pct": 25, "fraction_input": True})
    assert cfg.high_pct == 25
    assert cfg.fraction_input is True
    assert decide(parse_percentage(0.3, cfg.fraction_input), 0.0, cfg) == "SELL"
