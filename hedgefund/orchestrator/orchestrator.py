"""Orchestrator — the repeating decision cycle.

Each cycle runs, in strict order:
1. fetch_snapshot       — market data port
2. analyze_market       — advisory oracle, coerced to MarketAnalysis
3. score_strategies     — one StrategyScore per registered strategy
4. allocate             — advisory allocation (or score-synthesized fallback), normalized
5. execute              — every strategy with weight > 0 gets its capital share
6. update_metrics       — wallet valuation folded into PerformanceMetrics
7. analyze_performance  — advisory commentary on the new metrics
8. adapt_risk           — bounded risk-profile nudges

Any failure aborts the rest of the cycle, counts against the circuit breaker
and is swallowed at the cycle boundary. stop() is honoured at the next step
boundary. After each cycle the adaptive scheduler arms a one-shot timer for
the next one; cycles never overlap.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Mapping, Optional

import structlog

from hedgefund.errors import InvalidStateError
from hedgefund.orchestrator.scheduler import AdaptiveScheduler, CancellationToken, CycleTimer
from hedgefund.shell import activity
from hedgefund.shell.activity import DecisionLog, DecisionLogEntry
from hedgefund.shell.allocation import normalize_allocation, synthesize_allocation
from hedgefund.shell.breaker import FailureCircuitBreaker
from hedgefund.shell.config import OrchestratorConfig
from hedgefund.shell.contract import (
    AdvisoryPort,
    CapitalAllocation,
    MarketAnalysis,
    MarketDataPort,
    MarketSnapshot,
    MetricsSink,
    PerformanceCommentary,
    PerformanceMetrics,
    RiskProfile,
    StrategyBase,
    StrategyScore,
    TradeResult,
    WalletPort,
)
from hedgefund.shell.metrics import ObservabilitySink
from hedgefund.shell.performance import PerformanceTracker
from hedgefund.shell.risk import RiskAdapter

log = structlog.get_logger()


class AgentState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_NEXT_CYCLE = "awaiting_next_cycle"
    STOPPED = "stopped"
    HALTED_ON_FAILURE = "halted_on_failure"


TERMINAL_STATES = frozenset({AgentState.STOPPED, AgentState.HALTED_ON_FAILURE})


class CycleInterrupted(Exception):
    """stop() was observed at a step boundary."""


@dataclass(frozen=True)
class AgentStatus:
    agent_id: str
    state: AgentState
    last_run_timestamp: Optional[datetime]
    risk_profile: RiskProfile
    current_allocation: dict[str, float]
    performance_metrics: PerformanceMetrics
    market_analysis: Optional[MarketAnalysis]
    consecutive_failures: int
    next_cycle_delay_ms: Optional[int]
    recent_decisions: list[DecisionLogEntry]


class Orchestrator:
    """Drives the decision cycle for one agent and owns its mutable state."""

    def __init__(
        self,
        agent_id: str,
        risk_profile: RiskProfile,
        wallet: WalletPort,
        market_data: MarketDataPort,
        advisory: AdvisoryPort,
        metrics_sink: MetricsSink,
        strategies: Mapping[str, StrategyBase] | None = None,
        config: OrchestratorConfig | None = None,
        observer: ObservabilitySink | None = None,
    ) -> None:
        self._agent_id = agent_id
        self._config = config or OrchestratorConfig()
        self._risk_profile = risk_profile
        self._wallet = wallet
        self._market_data = market_data
        self._advisory = advisory
        self._metrics_sink = metrics_sink
        self._observer = observer or ObservabilitySink()

        self._strategies: dict[str, StrategyBase] = {}
        for strategy_id, strategy in (strategies or {}).items():
            self.register_strategy(strategy_id, strategy)

        self._decision_log = DecisionLog(self._config.decision_log_capacity)
        self._breaker = FailureCircuitBreaker(self._config.max_consecutive_failures)
        self._scheduler = AdaptiveScheduler(self._config.base_interval_ms)
        self._risk_adapter = RiskAdapter()
        self._performance = PerformanceTracker()

        self._token = CancellationToken()
        self._timer = CycleTimer(self._token)
        self._cycle_lock = asyncio.Lock()
        self._closed = asyncio.Event()

        self._state = AgentState.IDLE
        self._snapshot: MarketSnapshot | None = None
        self._analysis: MarketAnalysis | None = None
        self._allocation: dict[str, float] = {}
        self._metrics = PerformanceMetrics()
        self._last_run_timestamp: datetime | None = None
        self._next_delay_ms: int | None = None
        self._cycle_count = 0

        log.info("orchestrator.initialized", agent=agent_id, risk_profile=risk_profile.kind.value,
                 strategies=list(self._strategies))

    # --- Properties ---

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def decision_log(self) -> DecisionLog:
        return self._decision_log

    @property
    def strategy_ids(self) -> list[str]:
        return list(self._strategies)

    @property
    def consecutive_failures(self) -> int:
        return self._breaker.consecutive_failures

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    # --- Public API ---

    def register_strategy(self, strategy_id: str, strategy: StrategyBase) -> None:
        """Add a strategy. Takes effect from the next cycle."""
        if strategy_id in self._strategies:
            raise ValueError(f"Strategy '{strategy_id}' is already registered")
        for method in ("evaluate", "execute"):
            if not callable(getattr(strategy, method, None)):
                raise TypeError(f"Strategy '{strategy_id}' does not implement {method}()")
        self._strategies[strategy_id] = strategy
        log.info("orchestrator.strategy_registered", strategy=strategy_id)

    async def start(self) -> None:
        """Run the first cycle inline, then hand over to the adaptive timer."""
        if self._state is not AgentState.IDLE:
            raise InvalidStateError(f"start() is only valid from idle, not {self._state.value}")
        log.info("orchestrator.starting", agent=self._agent_id)
        self._set_state(AgentState.RUNNING)
        await self._cycle_then_reschedule()

    async def stop(self) -> None:
        """Stop scheduling. An in-flight cycle ends at its next step boundary."""
        if self._state in TERMINAL_STATES:
            log.info("orchestrator.stop_ignored", state=self._state.value)
            return
        previous = self._state
        self._token.cancel()
        self._timer.cancel()
        self._set_state(AgentState.STOPPED)
        self._decision_log.record(activity.AGENT_STOPPED, {
            "previous_state": previous.value,
            "cycle_in_flight": self._cycle_lock.locked(),
        })
        self._closed.set()
        log.info("orchestrator.stopped", agent=self._agent_id)

    async def wait_closed(self) -> None:
        """Block until the orchestrator reaches a terminal state."""
        await self._closed.wait()

    def schedule_next(self) -> int | None:
        """Arm the one-shot timer for the next cycle. Returns the delay in ms, or None."""
        if self._state is not AgentState.AWAITING_NEXT_CYCLE or self._token.cancelled:
            return None
        if self._timer.armed:
            return self._next_delay_ms

        volatility = self._snapshot.volatility_index if self._snapshot is not None else None
        delay = self._scheduler.next_delay_ms(volatility, self._allocation)
        self._timer.arm(delay, self._on_timer)
        self._next_delay_ms = delay
        self._observer.next_cycle_scheduled(delay)
        log.info("orchestrator.next_cycle_scheduled", delay_s=round(delay / 1000, 1))
        return delay

    def status(self) -> AgentStatus:
        """Immutable snapshot for status queries. Never exposes live mutable records."""
        return AgentStatus(
            agent_id=self._agent_id,
            state=self._state,
            last_run_timestamp=self._last_run_timestamp,
            risk_profile=self._risk_profile.snapshot(),
            current_allocation=dict(self._allocation),
            performance_metrics=self._metrics.snapshot(),
            market_analysis=self._analysis,
            consecutive_failures=self._breaker.consecutive_failures,
            next_cycle_delay_ms=self._next_delay_ms,
            recent_decisions=self._decision_log.recent(5),
        )

    async def run_cycle(self) -> bool:
        """Execute one full cycle. Returns True on success; failures never propagate."""
        if self._state in TERMINAL_STATES:
            raise InvalidStateError(f"Cannot run a cycle from {self._state.value}")
        if self._cycle_lock.locked():
            raise InvalidStateError("A decision cycle is already in flight")

        async with self._cycle_lock:
            self._set_state(AgentState.RUNNING)
            self._cycle_count += 1
            self._last_run_timestamp = datetime.now(timezone.utc)
            started = time.monotonic()
            strategies = dict(self._strategies)
            step = "start"
            log.info("orchestrator.cycle_start", agent=self._agent_id, cycle=self._cycle_count)

            try:
                step = "fetch_snapshot"
                self._checkpoint(step)
                snapshot = await self._call(self._market_data.get_snapshot())
                self._snapshot = snapshot
                self._decision_log.record(activity.MARKET_SNAPSHOT, {
                    "timestamp": snapshot.timestamp.isoformat(),
                    "volatility_index": snapshot.volatility_index,
                    "assets": len(snapshot.assets),
                })

                step = "analyze_market"
                self._checkpoint(step)
                analysis = MarketAnalysis.from_payload(
                    await self._call(self._advisory.analyze_market(snapshot))
                )
                self._analysis = analysis
                self._decision_log.record(activity.MARKET_ANALYSIS, {
                    "trend": analysis.trend.value,
                    "volatility": analysis.volatility.value,
                    "top_opportunities": analysis.to_dict()["opportunities"][:2],
                    "top_risks": analysis.to_dict()["risks"][:2],
                })
                log.info("orchestrator.market_analysis", trend=analysis.trend.value,
                         volatility=analysis.volatility.value, opportunities=len(analysis.opportunities))

                step = "score_strategies"
                self._checkpoint(step)
                scores = await self._score_strategies(strategies, snapshot)
                self._decision_log.record(activity.STRATEGY_SCORES, {
                    sid: score.to_dict() for sid, score in scores.items()
                })

                step = "allocate"
                self._checkpoint(step)
                allocation, source = await self._allocate(list(strategies), scores, analysis)
                self._decision_log.record(activity.PORTFOLIO_ALLOCATION, {
                    "allocation": allocation,
                    "source": source,
                })
                log.info("orchestrator.allocation", source=source,
                         allocation={k: f"{v:.2%}" for k, v in allocation.items()})

                step = "execute"
                self._checkpoint(step)
                await self._execute_allocation(strategies, snapshot, allocation)

                step = "update_metrics"
                self._checkpoint(step)
                wallet_info = await self._call(self._wallet.get_info())
                self._metrics = self._performance.update(wallet_info.total_value_usd)
                self._observer.performance_updated(self._metrics)
                self._decision_log.record(activity.PERFORMANCE_UPDATE, {
                    "portfolio_value_usd": wallet_info.total_value_usd,
                    "total_return": self._metrics.total_return,
                    "sharpe_ratio": self._metrics.sharpe_ratio,
                    "volatility": self._metrics.volatility,
                    "max_drawdown": self._metrics.max_drawdown,
                })

                step = "analyze_performance"
                self._checkpoint(step)
                commentary = PerformanceCommentary.from_payload(
                    await self._call(self._advisory.analyze_performance(
                        self._metrics.snapshot(), self._risk_profile.snapshot(),
                    ))
                )
                self._decision_log.record(activity.PERFORMANCE_ANALYSIS, commentary.to_dict())

                step = "adapt_risk"
                self._checkpoint(step)
                adjustments = self._risk_adapter.adapt(self._risk_profile, commentary)
                self._decision_log.record(activity.RISK_ADAPTATION, {
                    "adjusted": bool(adjustments),
                    "adjustments": [a.to_dict() for a in adjustments],
                    "risk_profile": self._risk_profile.to_dict(),
                })
                if adjustments:
                    self._observer.risk_profile_updated(self._risk_profile.snapshot())

            except CycleInterrupted:
                duration = time.monotonic() - started
                self._decision_log.record(activity.CYCLE_INTERRUPTED, {"step": step})
                self._observer.cycle_completed(False, duration)
                log.info("orchestrator.cycle_interrupted", step=step)
                return False
            except Exception as e:
                self._on_cycle_failure(step, e, time.monotonic() - started)
                return False

            duration = time.monotonic() - started
            self._breaker.record_success()
            self._allocation = allocation
            self._observer.allocation_updated(dict(allocation))
            self._observer.cycle_completed(True, duration)
            self._decision_log.record(activity.CYCLE_COMPLETED, {
                "cycle": self._cycle_count,
                "duration_s": round(duration, 3),
            })
            log.info("orchestrator.cycle_completed", cycle=self._cycle_count, duration=f"{duration:.2f}s")
            self._transition_after_cycle(AgentState.AWAITING_NEXT_CYCLE)
            return True

    # --- Cycle steps ---

    async def _score_strategies(
        self, strategies: Mapping[str, StrategyBase], snapshot: MarketSnapshot,
    ) -> dict[str, StrategyScore]:
        ids = list(strategies)
        if self._config.parallel_scoring:
            results = await asyncio.gather(
                *(self._call(strategies[sid].evaluate(snapshot)) for sid in ids),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
        else:
            results = []
            for sid in ids:
                results.append(await self._call(strategies[sid].evaluate(snapshot)))

        # Joined: results are in registration order regardless of completion order
        scores = {sid: StrategyScore.from_payload(r) for sid, r in zip(ids, results)}
        log.info("orchestrator.strategy_scores",
                 scores={sid: round(s.score, 1) for sid, s in scores.items()})
        return scores

    async def _allocate(
        self,
        strategy_ids: list[str],
        scores: dict[str, StrategyScore],
        analysis: MarketAnalysis,
    ) -> tuple[dict[str, float], str]:
        try:
            raw = await self._call(self._advisory.optimize_allocation(
                dict(scores), self._risk_profile.snapshot(), analysis,
            ))
            source = "advisory"
        except Exception as e:
            log.warning("orchestrator.allocation_fallback", error=str(e), error_type=type(e).__name__)
            raw = synthesize_allocation(scores, self._risk_profile, analysis)
            source = "scores"
        return normalize_allocation(raw, strategy_ids), source

    async def _execute_allocation(
        self,
        strategies: Mapping[str, StrategyBase],
        snapshot: MarketSnapshot,
        allocation: Mapping[str, float],
    ) -> list[TradeResult]:
        active = [(sid, weight) for sid, weight in allocation.items() if weight > 0]
        if not active:
            return []

        wallet_info = await self._call(self._wallet.get_info())
        portfolio_value = wallet_info.total_value_usd

        results = []
        for sid, weight in active:
            capital = CapitalAllocation(
                weight=weight,
                capital_usd=weight * portfolio_value,
                portfolio_value_usd=portfolio_value,
            )
            log.info("orchestrator.executing", strategy=sid, weight=f"{weight:.2%}",
                     capital=f"${capital.capital_usd:.2f}")
            result = await self._call(strategies[sid].execute(
                snapshot, capital, self._risk_profile.snapshot(),
            ))
            if not isinstance(result, TradeResult):
                raise TypeError(f"Strategy '{sid}' returned {type(result).__name__}, expected TradeResult")

            if result.success:
                self._metrics_sink.record_trade(result)
                self._decision_log.record(activity.TRADE_EXECUTION, result.to_dict())
                log.info("orchestrator.trade_executed", strategy=sid, side=result.side,
                         asset=result.asset, amount=result.amount, price=result.price)
            else:
                self._decision_log.record(activity.TRADE_FAILED, {"strategy": sid, "error": result.error})
                log.info("orchestrator.trade_skipped", strategy=sid, error=result.error)
            results.append(result)
        return results

    # --- Internals ---

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        """Bound a collaborator call by the configured timeout."""
        return await asyncio.wait_for(awaitable, timeout=self._config.call_timeout_s)

    def _checkpoint(self, step: str) -> None:
        if self._token.cancelled:
            raise CycleInterrupted(step)

    async def _on_timer(self) -> None:
        if self._state is not AgentState.AWAITING_NEXT_CYCLE:
            return
        await self._cycle_then_reschedule()

    async def _cycle_then_reschedule(self) -> None:
        if self._token.cancelled:
            return
        await self.run_cycle()
        self.schedule_next()

    def _on_cycle_failure(self, step: str, exc: Exception, duration: float) -> None:
        tripped = self._breaker.record_failure()
        failures = self._breaker.consecutive_failures
        error = str(exc) or type(exc).__name__
        log.warning("orchestrator.cycle_failed", step=step, error=error,
                    error_type=type(exc).__name__, consecutive_failures=failures)
        self._decision_log.record(activity.CYCLE_FAILURE, {
            "step": step,
            "error": error,
            "error_type": type(exc).__name__,
            "consecutive_failures": failures,
        })
        self._observer.cycle_completed(False, duration)

        if tripped and self._state is not AgentState.STOPPED:
            self._decision_log.record(activity.CIRCUIT_BREAKER_TRIPPED, {
                "consecutive_failures": failures,
                "limit": self._breaker.max_consecutive_failures,
            })
            self._halt()
        else:
            self._transition_after_cycle(AgentState.AWAITING_NEXT_CYCLE)

    def _halt(self) -> None:
        self._token.cancel()
        self._timer.cancel()
        self._set_state(AgentState.HALTED_ON_FAILURE)
        self._closed.set()
        log.error("orchestrator.halted", agent=self._agent_id,
                  consecutive_failures=self._breaker.consecutive_failures)

    def _transition_after_cycle(self, state: AgentState) -> None:
        # stop() during the cycle wins
        if self._state in TERMINAL_STATES:
            return
        self._set_state(state)

    def _set_state(self, state: AgentState) -> None:
        if state is self._state:
            return
        log.info("orchestrator.state", previous=self._state.value, state=state.value)
        self._state = state
        self._observer.state_changed(state.value)
