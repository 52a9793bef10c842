"""
Pytest configuration and fixtures for exit-engine tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
from pathlib import Path

import pytest

from core.exit_engine import ExitEngine, ExitPolicy
from core.signal_table import GuardContext, SignalBus
from infra.state_store import PositionStore
from tests.helpers import FakeBroker, FakePriceOracle, RecordingNotifier

LOCK_FILE = Path("data/exit-engine.pid")


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Stale lock from an interrupted run would make the runner refuse to start
    if LOCK_FILE.exists():
        LOCK_FILE.unlink()
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()
    if LOCK_FILE.exists():
        LOCK_FILE.unlink()


@pytest.fixture
def store(tmp_path):
    return PositionStore(str(tmp_path / "positions.json"))


@pytest.fixture
def oracle():
    return FakePriceOracle()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def bus():
    return SignalBus(maxsize=64)


@pytest.fixture
def make_engine(store, oracle, broker, notifier, bus):
    """Factory for an engine wired to in-memory fakes; policy fields may be overridden."""

    def _make(**policy_overrides):
        policy = ExitPolicy(**policy_overrides)
        return ExitEngine(
            store=store,
            oracle=oracle,
            broker=broker,
            notifier=notifier,
            policy=policy,
            bus=bus,
            context=GuardContext(),
        )

    return _make
