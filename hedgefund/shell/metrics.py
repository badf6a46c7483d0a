"""Observability sink — orchestrator state exported as Prometheus gauges.

The orchestrator only talks to the ObservabilitySink interface; the default
is a no-op so the core has no output concerns of its own.
"""

from __future__ import annotations

from typing import Mapping

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from hedgefund.shell.contract import PerformanceMetrics, RiskProfile

log = structlog.get_logger()


class ObservabilitySink:
    """Hooks the orchestrator calls at well-defined points. All no-ops by default."""

    def state_changed(self, state: str) -> None:
        pass

    def cycle_completed(self, success: bool, duration_s: float) -> None:
        pass

    def allocation_updated(self, allocation: Mapping[str, float]) -> None:
        pass

    def risk_profile_updated(self, profile: RiskProfile) -> None:
        pass

    def performance_updated(self, metrics: PerformanceMetrics) -> None:
        pass

    def next_cycle_scheduled(self, delay_ms: int) -> None:
        pass


class PrometheusSink(ObservabilitySink):
    """Prometheus-backed sink.

    Each sink owns its registry, so several orchestrators (or test runs) in one
    process never collide on metric names.
    """

    STATES = ("idle", "running", "awaiting_next_cycle", "stopped", "halted_on_failure")

    def __init__(self, registry: CollectorRegistry | None = None, prefix: str = "hf") -> None:
        self.registry = registry or CollectorRegistry()
        r = self.registry

        # --- Lifecycle ---
        self._state = Gauge(f"{prefix}_agent_state", "1 for the current orchestrator state", ["state"], registry=r)
        self._cycles = Counter(f"{prefix}_cycles", "Completed decision cycles", ["outcome"], registry=r)
        self._cycle_duration = Histogram(f"{prefix}_cycle_duration_seconds", "Decision cycle wall time", registry=r)
        self._next_delay = Gauge(f"{prefix}_next_cycle_delay_ms", "Delay before the next cycle", registry=r)

        # --- Allocation & risk ---
        self._allocation = Gauge(f"{prefix}_allocation_weight", "Normalized strategy weight", ["strategy"], registry=r)
        self._position_size = Gauge(f"{prefix}_position_size_factor", "Risk profile position size factor", registry=r)
        self._max_exposure = Gauge(f"{prefix}_max_exposure_per_asset", "Risk profile per-asset exposure cap", registry=r)

        # --- Performance ---
        self._total_return = Gauge(f"{prefix}_total_return", "Total return since start", registry=r)
        self._sharpe = Gauge(f"{prefix}_sharpe_ratio", "Daily Sharpe ratio", registry=r)
        self._drawdown = Gauge(f"{prefix}_max_drawdown", "Max drawdown (fraction)", registry=r)
        self._volatility = Gauge(f"{prefix}_volatility", "Std of daily returns", registry=r)
        self._win_rate = Gauge(f"{prefix}_win_rate", "Fraction of positive days", registry=r)

    def state_changed(self, state: str) -> None:
        for s in self.STATES:
            self._state.labels(state=s).set(1 if s == state else 0)

    def cycle_completed(self, success: bool, duration_s: float) -> None:
        self._cycles.labels(outcome="success" if success else "failure").inc()
        self._cycle_duration.observe(duration_s)

    def allocation_updated(self, allocation: Mapping[str, float]) -> None:
        # Clear stale labels then set current
        self._allocation.clear()
        for strategy, weight in allocation.items():
            self._allocation.labels(strategy=strategy).set(weight)

    def risk_profile_updated(self, profile: RiskProfile) -> None:
        self._position_size.set(profile.position_size_factor)
        self._max_exposure.set(profile.max_exposure_per_asset)

    def performance_updated(self, metrics: PerformanceMetrics) -> None:
        self._total_return.set(metrics.total_return)
        self._sharpe.set(metrics.sharpe_ratio)
        self._drawdown.set(metrics.max_drawdown)
        self._volatility.set(metrics.volatility)
        self._win_rate.set(metrics.win_rate)

    def next_cycle_scheduled(self, delay_ms: int) -> None:
        self._next_delay.set(delay_ms)

    def render(self) -> bytes:
        """Prometheus text exposition of this sink's registry."""
        return generate_latest(self.registry)
