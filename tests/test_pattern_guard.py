"""Pattern confirmation guard: phase machine, 1m gating, cooldown and batching."""

import asyncio

import pytest

from core.models import Position, SignalAction, SignalSource
from core.pattern_guard import (
    PatternConfirmationGuard,
    PatternGuardConfig,
    PatternPhase,
    PhaseState,
    evaluate_phase,
    is_impulse,
    m1_confirms_exit,
)
from core.signal_table import GuardContext, SignalBus
from tests.helpers import (
    CandleStub,
    FakeCandleSource,
    impulse_bar,
    m1_confirming,
    m1_not_confirming,
    pump_sequence,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def candles():
    return FakeCandleSource()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(candles, clock):
    return PatternConfirmationGuard(
        candle_source=candles,
        bus=SignalBus(maxsize=32),
        context=GuardContext(),
        positions_provider=lambda: [Position("AAA", 1.0)],
        clock=clock,
    )


def scan(guard, positions=None):
    positions = positions if positions is not None else [Position("AAA", 1.0)]

    async def run():
        count = await guard.scan_once(positions)
        return count, guard.bus.drain()

    return asyncio.run(run())


def phase_of(guard, asset_id="AAA"):
    state = guard.context.pattern_states.get(asset_id)
    return state.phase if state else None


def test_is_impulse_requires_body_and_volume():
    bar = CandleStub.create(**impulse_bar())
    assert is_impulse(bar, avg_volume=110, vol_mult=1.0, body_ratio=0.6)
    assert not is_impulse(bar, avg_volume=400, vol_mult=1.0, body_ratio=0.6)
    wick = CandleStub.create(open=1.0, close=1.05, high=1.5, low=0.9, volume=500)
    assert not is_impulse(wick, avg_volume=100, vol_mult=1.0, body_ratio=0.6)
    red = CandleStub.create(open=1.2, close=1.0, volume=500)
    assert not is_impulse(red, avg_volume=100, vol_mult=1.0, body_ratio=0.6)


def test_phase_machine_walks_forward():
    with_impulse, with_hold, with_fade = pump_sequence()
    state = evaluate_phase(None, with_impulse)
    assert state.phase is PatternPhase.IMPULSE
    assert state.impulse_high == 1.22

    state = evaluate_phase(state, with_hold)
    assert state.phase is PatternPhase.HOLD
    assert state.hold_high == 1.30

    state = evaluate_phase(state, with_fade)
    assert state.phase is PatternPhase.EXIT_READY

    # Absorbing until a confirmed sell resets it
    assert evaluate_phase(state, with_impulse).phase is PatternPhase.EXIT_READY


def test_phase_needs_enough_history():
    short = CandleStub.create_series(count=10)
    assert evaluate_phase(None, short) is None
    prev = PhaseState(phase=PatternPhase.HOLD, impulse_high=1.0, impulse_volume=1.0, hold_high=1.1, hold_volume=1.0)
    assert evaluate_phase(prev, short) is prev
    assert evaluate_phase(prev, None) is prev


def test_impulse_without_higher_high_stays_impulse():
    with_impulse, _, _ = pump_sequence()
    state = evaluate_phase(None, with_impulse)
    lower = CandleStub.append(with_impulse, open=1.2, close=1.21, high=1.21, low=1.19, volume=500)
    assert evaluate_phase(state, lower).phase is PatternPhase.IMPULSE


@pytest.mark.parametrize(
    "bars, expected",
    [
        ([(1.0, 1.1, 0.99), (1.1, 1.05, 1.04)], (True, "m1_red_close")),
        ([(1.0, 1.1, 0.99), (1.1, 1.12, 1.09)], (False, "m1_no_confirmation")),
        ([(1.0, 1.1, 0.99)], (False, "m1_not_enough_candles")),
    ],
)
def test_m1_confirmation(bars, expected):
    candles = [CandleStub.create(open=o, close=c, low=low) for o, c, low in bars]
    assert m1_confirms_exit(candles) == expected


def test_m1_close_below_previous_low_confirms():
    # A green bar that gapped down still closes under the prior low
    prev = CandleStub.create(open=1.0, close=1.1, low=0.98)
    last = CandleStub.create(open=0.90, close=0.95, low=0.89)
    assert m1_confirms_exit([prev, last]) == (True, "m1_break_prev_low")


def test_exit_ready_without_m1_confirmation_never_sells(guard, candles):
    with_impulse, with_hold, with_fade = pump_sequence()
    candles.set("AAA", "1m", m1_not_confirming())

    candles.set("AAA", "5m", with_impulse)
    scan(guard)
    assert phase_of(guard) is PatternPhase.IMPULSE

    candles.set("AAA", "5m", with_hold)
    _, signals = scan(guard)
    assert phase_of(guard) is PatternPhase.HOLD
    assert [s.action for s in signals] == [SignalAction.HOLD]

    candles.set("AAA", "5m", with_fade)
    count, signals = scan(guard)
    assert phase_of(guard) is PatternPhase.EXIT_READY
    assert count == 0 and signals == []

    count, signals = scan(guard)
    assert count == 0 and signals == []


def test_confirmed_exit_emits_one_sell_and_resets_to_hold(guard, candles, clock):
    with_impulse, with_hold, with_fade = pump_sequence()
    candles.set("AAA", "1m", m1_not_confirming())
    for series in (with_impulse, with_hold, with_fade):
        candles.set("AAA", "5m", series)
        scan(guard)
    assert phase_of(guard) is PatternPhase.EXIT_READY

    candles.set("AAA", "1m", m1_confirming())
    count, signals = scan(guard)
    assert count == 1
    [sell] = signals
    assert sell.action is SignalAction.SELL
    assert sell.source is SignalSource.PATTERN
    assert sell.reason == "M5_exit_ready_M1_confirmed:m1_red_close"
    assert sell.context["hold_high"] == 1.30
    assert phase_of(guard) is PatternPhase.HOLD

    # Same fading bar re-qualifies immediately but the cooldown holds it back
    clock.now += 5
    count, signals = scan(guard)
    assert phase_of(guard) is PatternPhase.EXIT_READY
    assert count == 0 and signals == []

    clock.now += 60
    count, signals = scan(guard)
    assert count == 1
    assert signals[0].action is SignalAction.SELL


def test_hold_advisory_published_once_per_hold_phase(guard, candles):
    with_impulse, with_hold, _ = pump_sequence()
    candles.set("AAA", "5m", with_impulse)
    scan(guard)
    candles.set("AAA", "5m", with_hold)
    _, first = scan(guard)
    _, second = scan(guard)
    assert [s.action for s in first] == [SignalAction.HOLD]
    assert second == []


def test_rearmed_hold_is_not_published_while_sell_pending(guard, candles):
    with_impulse, with_hold, with_fade = pump_sequence()
    candles.set("AAA", "1m", m1_confirming())
    for series in (with_impulse, with_hold, with_fade):
        candles.set("AAA", "5m", series)
        scan(guard)
    assert "AAA" in guard.context.pattern_sell_pending

    # Back to a bar that keeps the phase in HOLD: the pending SELL must stand
    candles.set("AAA", "5m", with_hold)
    count, signals = scan(guard)
    assert phase_of(guard) is PatternPhase.HOLD
    assert count == 0 and signals == []

    # Once the engine has executed the sell, a fresh cycle advises again
    guard.context.forget("AAA")
    candles.set("AAA", "5m", with_impulse)
    scan(guard)
    candles.set("AAA", "5m", with_hold)
    _, signals = scan(guard)
    assert [s.action for s in signals] == [SignalAction.HOLD]


def test_missing_candles_are_skipped(guard, candles):
    candles.set("AAA", "5m", RuntimeError("vendor down"))
    count, signals = scan(guard)
    assert count == 0 and signals == []
    assert "AAA" not in guard.context.pattern_states


def test_pump_suffix_falls_back_to_stripped_identifier(guard, candles):
    with_impulse, _, _ = pump_sequence()
    candles.set("XYZ", "5m", with_impulse)
    scan(guard, [Position("XYZpump", 1.0)])

    assert [c[0] for c in candles.calls] == ["XYZpump", "XYZ"]
    assert guard.context.pattern_states["XYZpump"].phase is PatternPhase.IMPULSE


def test_round_robin_batches(candles, clock):
    guard = PatternConfirmationGuard(
        candle_source=candles,
        bus=SignalBus(),
        context=GuardContext(),
        positions_provider=list,
        config=PatternGuardConfig(batch_size=2),
        clock=clock,
    )
    positions = [Position(a, 1.0) for a in ("A", "B", "C")]
    batches = [[p.asset_id for p in guard.next_batch(positions)] for _ in range(3)]
    assert batches == [["A", "B"], ["C", "A"], ["B", "C"]]


def test_state_for_closed_positions_is_discarded(guard, candles):
    with_impulse, _, _ = pump_sequence()
    candles.set("AAA", "5m", with_impulse)
    scan(guard)
    guard.context.pattern_cooldowns["AAA"] = 1.0
    assert "AAA" in guard.context.pattern_states

    scan(guard, [])
    assert guard.context.pattern_states == {}
    assert guard.context.pattern_cooldowns == {}


def test_config_from_dict_ignores_unknown_keys():
    cfg = PatternGuardConfig.from_config({"enabled": True, "batch_size": 7, "cooldown_seconds": 5})
    assert cfg.batch_size == 7
    assert cfg.cooldown_seconds == 5
