"""Adaptive scheduler — decides when the next decision cycle runs.

Higher market volatility shortens the delay; a heavily allocated portfolio
shortens it further. The delay arms a one-shot CycleTimer that is re-armed
only after the cycle it started has fully completed, so cycles never overlap.
"""

from __future__ import annotations

import asyncio
import math
from typing import Awaitable, Callable, Mapping

import structlog

log = structlog.get_logger()

BASE_INTERVAL_MS = 60_000
MIN_VOLATILITY_FACTOR = 0.5
MAX_VOLATILITY_FACTOR = 2.0
ACTIVE_FACTOR = 0.8          # more than half the capital allocated
QUIET_FACTOR = 1.2
NO_ALLOCATION_FACTOR = 1.0
ACTIVE_THRESHOLD = 0.5


def volatility_factor(volatility_index: float | None) -> float:
    """clamp(1 / (4v), 0.5, 2.0). No signal (None, <= 0, non-finite) means slow cadence."""
    if volatility_index is None:
        return MAX_VOLATILITY_FACTOR
    try:
        v = float(volatility_index)
    except (TypeError, ValueError):
        return MAX_VOLATILITY_FACTOR
    if not math.isfinite(v) or v <= 0:
        return MAX_VOLATILITY_FACTOR
    return max(MIN_VOLATILITY_FACTOR, min(MAX_VOLATILITY_FACTOR, 1.0 / (4.0 * v)))


def activity_factor(allocation: Mapping[str, float] | None) -> float:
    if not allocation:
        return NO_ALLOCATION_FACTOR
    return ACTIVE_FACTOR if sum(allocation.values()) > ACTIVE_THRESHOLD else QUIET_FACTOR


class AdaptiveScheduler:
    """Computes next-cycle delays in milliseconds."""

    def __init__(self, base_interval_ms: int = BASE_INTERVAL_MS) -> None:
        if base_interval_ms <= 0:
            raise ValueError(f"base_interval_ms must be > 0, got {base_interval_ms}")
        self._base = base_interval_ms

    @property
    def base_interval_ms(self) -> int:
        return self._base

    def next_delay_ms(self, volatility_index: float | None, allocation: Mapping[str, float] | None) -> int:
        vf = volatility_factor(volatility_index)
        af = activity_factor(allocation)
        delay = int(round(self._base * vf * af))
        log.debug("scheduler.delay", delay_ms=delay, volatility_factor=round(vf, 2), activity_factor=af)
        return delay


class CancellationToken:
    """Explicit stop signal shared between the orchestrator and its timer."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled or timeout elapses. Returns True if cancelled."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class CycleTimer:
    """One-shot timer. Sleeps, then awaits the callback unless cancelled first.

    cancel() only interrupts the sleep: once the callback has started it runs
    to completion and stops cooperatively via the token.
    """

    def __init__(self, token: CancellationToken) -> None:
        self._token = token
        self._task: asyncio.Task | None = None
        self._fired = False

    @property
    def armed(self) -> bool:
        """True while waiting to fire."""
        return self._task is not None and not self._task.done() and not self._fired

    def arm(self, delay_ms: int, callback: Callable[[], Awaitable[None]]) -> None:
        if self.armed:
            raise RuntimeError("CycleTimer is already armed")
        self._fired = False
        self._task = asyncio.get_running_loop().create_task(self._run(delay_ms, callback))
        self._task.add_done_callback(self._on_done)

    def cancel(self) -> None:
        if self.armed:
            self._task.cancel()

    async def _run(self, delay_ms: int, callback: Callable[[], Awaitable[None]]) -> None:
        if await self._token.wait(delay_ms / 1000):
            return
        self._fired = True
        await callback()

    def _on_done(self, task: asyncio.Task) -> None:
        """Log any unexpected errors from the fired callback."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            log.error("scheduler.timer_failed", error=str(exc), type=type(exc).__name__)
