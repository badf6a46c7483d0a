"""Tests for the adaptive scheduler, cancellation token and cycle timer."""

import asyncio

import pytest


# --- Delay computation ---

def test_volatility_factor():
    from hedgefund.orchestrator.scheduler import volatility_factor
    assert volatility_factor(0.25) == pytest.approx(1.0)
    assert volatility_factor(0.125) == pytest.approx(2.0)
    assert volatility_factor(0.05) == 2.0
    assert volatility_factor(1.0) == 0.5
    assert volatility_factor(0.0) == 2.0
    assert volatility_factor(None) == 2.0
    assert volatility_factor(float("nan")) == 2.0
    assert volatility_factor(-0.3) == 2.0


def test_activity_factor():
    from hedgefund.orchestrator.scheduler import activity_factor
    assert activity_factor({}) == 1.0
    assert activity_factor(None) == 1.0
    assert activity_factor({"a": 0.6, "b": 0.4}) == 0.8
    assert activity_factor({"a": 0.3}) == 1.2
    assert activity_factor({"a": 0.5}) == 1.2


def test_next_delay():
    from hedgefund.orchestrator.scheduler import AdaptiveScheduler
    scheduler = AdaptiveScheduler(60_000)
    assert scheduler.next_delay_ms(0.25, {"a": 1.0}) == 48_000
    assert scheduler.next_delay_ms(0.0, {}) == 120_000
    assert scheduler.next_delay_ms(0.05, {"a": 0.2}) == 144_000
    assert scheduler.next_delay_ms(2.0, {"a": 1.0}) == 24_000


def test_next_delay_always_within_bounds():
    from hedgefund.orchestrator.scheduler import AdaptiveScheduler
    scheduler = AdaptiveScheduler(60_000)
    allocations = [{}, {"a": 0.2}, {"a": 0.5}, {"a": 0.7, "b": 0.3}]
    for i in range(0, 401):
        v = i / 100
        for allocation in allocations:
            delay = scheduler.next_delay_ms(v, allocation)
            assert 24_000 <= delay <= 144_000


def test_scheduler_rejects_non_positive_base():
    from hedgefund.orchestrator.scheduler import AdaptiveScheduler
    with pytest.raises(ValueError):
        AdaptiveScheduler(0)


# --- Cancellation token ---

@pytest.mark.asyncio
async def test_token_wait():
    from hedgefund.orchestrator.scheduler import CancellationToken
    token = CancellationToken()
    assert await token.wait(0.01) is False
    token.cancel()
    assert token.cancelled
    assert await token.wait(5) is True


# --- Cycle timer ---

@pytest.mark.asyncio
async def test_timer_fires_once():
    from hedgefund.orchestrator.scheduler import CancellationToken, CycleTimer
    timer = CycleTimer(CancellationToken())
    calls = []

    async def callback():
        calls.append(1)

    timer.arm(10, callback)
    assert timer.armed
    await asyncio.sleep(0.1)
    assert calls == [1]
    assert not timer.armed


@pytest.mark.asyncio
async def test_timer_cancel_before_fire():
    from hedgefund.orchestrator.scheduler import CancellationToken, CycleTimer
    timer = CycleTimer(CancellationToken())
    calls = []

    async def callback():
        calls.append(1)

    timer.arm(50, callback)
    timer.cancel()
    await asyncio.sleep(0.1)
    assert calls == []
    assert not timer.armed


@pytest.mark.asyncio
async def test_timer_respects_token():
    from hedgefund.orchestrator.scheduler import CancellationToken, CycleTimer
    token = CancellationToken()
    timer = CycleTimer(token)
    calls = []

    async def callback():
        calls.append(1)

    timer.arm(50, callback)
    token.cancel()
    await asyncio.sleep(0.1)
    assert calls == []


@pytest.mark.asyncio
async def test_timer_double_arm_rejected():
    from hedgefund.orchestrator.scheduler import CancellationToken, CycleTimer
    timer = CycleTimer(CancellationToken())

    async def callback():
        pass

    timer.arm(1000, callback)
    with pytest.raises(RuntimeError):
        timer.arm(1000, callback)
    timer.cancel()


@pytest.mark.asyncio
async def test_timer_rearm_from_callback():
    from hedgefund.orchestrator.scheduler import CancellationToken, CycleTimer
    timer = CycleTimer(CancellationToken())
    done = asyncio.Event()
    count = 0

    async def callback():
        nonlocal count
        count += 1
        if count < 3:
            timer.arm(5, callback)
        else:
            done.set()

    timer.arm(5, callback)
    await asyncio.wait_for(done.wait(), timeout=2)
    assert count == 3


@pytest.mark.asyncio
async def test_timer_callback_error_is_contained():
    from hedgefund.orchestrator.scheduler import CancellationToken, CycleTimer
    timer = CycleTimer(CancellationToken())

    async def callback():
        raise RuntimeError("boom")

    timer.arm(1, callback)
    await asyncio.sleep(0.05)
    # Timer is reusable after a failed callback
    assert not timer.armed
    timer.arm(1000, callback)
    timer.cancel()
