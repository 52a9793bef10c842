"""PeriodicTask: non-overlapping runs, overrun skips, error isolation, clean stop."""

import asyncio

import pytest

from infra.metrics import MetricsRecorder
from infra.scheduler import PeriodicTask


def test_runs_repeatedly_until_stopped():
    calls = []

    async def job():
        calls.append(1)

    async def scenario():
        task = PeriodicTask("tick", 0.02, job)
        task.start()
        await asyncio.sleep(0.15)
        await task.stop()
        assert not task.running
        return task

    task = asyncio.run(scenario())
    assert len(calls) >= 3
    assert task.runs == len(calls)


def test_runs_never_overlap_and_overruns_are_counted():
    active = []
    max_active = []

    async def slow_job():
        active.append(1)
        max_active.append(len(active))
        await asyncio.sleep(0.12)
        active.pop()

    async def scenario():
        metrics = MetricsRecorder(enabled=False)
        task = PeriodicTask("slow", 0.05, slow_job, metrics=metrics)
        task.start()
        await asyncio.sleep(0.3)
        await task.stop()
        return task, metrics

    task, metrics = asyncio.run(scenario())
    assert max(max_active) == 1
    assert task.skipped_runs >= 2
    assert metrics.skipped_runs_snapshot()["slow"] == task.skipped_runs


def test_stop_waits_for_in_flight_run():
    finished = []

    async def job():
        await asyncio.sleep(0.1)
        finished.append(True)

    async def scenario():
        task = PeriodicTask("inflight", 10.0, job)
        task.start()
        await asyncio.sleep(0.02)
        await task.stop()

    asyncio.run(scenario())
    assert finished == [True]


def test_failing_job_does_not_kill_loop():
    errors = []
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    async def scenario():
        task = PeriodicTask("flaky", 0.02, flaky, on_error=lambda name, exc: errors.append((name, str(exc))))
        task.start()
        await asyncio.sleep(0.12)
        await task.stop()
        return task

    task = asyncio.run(scenario())
    assert errors == [("flaky", "boom")]
    assert len(calls) >= 2
    assert task.failures == 1
    assert task.describe()["last_error"] == "RuntimeError: boom"


def test_delayed_first_run():
    calls = []

    async def job():
        calls.append(1)

    async def scenario():
        task = PeriodicTask("report", 5.0, job, run_immediately=False)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

    asyncio.run(scenario())
    assert calls == []


def test_interval_must_be_positive():
    async def job():
        return None

    with pytest.raises(ValueError):
        PeriodicTask("bad", 0, job)


def test_jitter_is_clamped():
    async def job():
        return None

    task = PeriodicTask("jitter", 10.0, job, jitter_pct=90)
    assert task.jitter_pct == 20.0
    sleep = task._sleep_seconds(0.0)
    assert 10.0 <= sleep <= 12.0
