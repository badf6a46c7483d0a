"""Advisory oracles — market analysis, allocation advice and performance commentary.

Two implementations of AdvisoryPort:
- HeuristicAdvisor: deterministic rules over the snapshot, no network.
- AIAdvisor: prompts Claude and extracts JSON from the reply.

Both return payloads the orchestrator coerces at the contract boundary, so a
vague or malformed reply degrades to a neutral analysis or an equal split
instead of failing the cycle.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

import numpy as np
import structlog

from hedgefund.orchestrator.ai_client import AIClient
from hedgefund.shell.allocation import synthesize_allocation
from hedgefund.shell.contract import (
    AdvisoryPort,
    MarketAnalysis,
    MarketRisk,
    MarketSnapshot,
    Opportunity,
    PerformanceCommentary,
    PerformanceMetrics,
    Priority,
    Recommendation,
    RiskProfile,
    StrategyScore,
    Trend,
    VolatilityLevel,
)
from hedgefund.strategies.arbitrage import find_opportunities

log = structlog.get_logger()

HIGH_VOLATILITY = 0.25
LOW_VOLATILITY = 0.15
TREND_MOVE_PCT = 1.0
MOMENTUM_MOVE_PCT = 3.0
CRASH_MOVE_PCT = -5.0

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _first_object(text: str) -> dict | None:
    """Find the first { and walk to its matching }, honouring strings."""
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        c = text[i]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if c == "\\":
                escape_next = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start : i + 1])
                except json.JSONDecodeError:
                    return None
    return None


def extract_json(text: str) -> dict | None:
    """Pull a JSON object out of a model reply.

    Tries a fenced ```json block, then the whole text, then the first
    balanced {...} span. Returns None if nothing parses to an object.
    """
    if not text:
        return None

    fenced = _FENCE.search(text)
    if fenced:
        try:
            data = json.loads(fenced.group(1))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    return _first_object(text)


# --- Heuristic oracle ---

def classify_volatility(volatility_index: float) -> VolatilityLevel:
    if volatility_index >= HIGH_VOLATILITY:
        return VolatilityLevel.HIGH
    if volatility_index <= LOW_VOLATILITY:
        return VolatilityLevel.LOW
    return VolatilityLevel.MODERATE


def classify_trend(snapshot: MarketSnapshot) -> Trend:
    changes = [a.price_change_24h for a in snapshot.assets.values()]
    mean_change = float(np.mean(changes)) if changes else 0.0
    if mean_change > TREND_MOVE_PCT and snapshot.sentiment_score >= 50:
        return Trend.BULLISH
    if mean_change < -TREND_MOVE_PCT and snapshot.sentiment_score <= 50:
        return Trend.BEARISH
    return Trend.NEUTRAL


class HeuristicAdvisor(AdvisoryPort):
    """Rule-based oracle. Same input, same output."""

    async def analyze_market(self, snapshot: MarketSnapshot) -> MarketAnalysis:
        volatility = classify_volatility(snapshot.volatility_index)

        opportunities = []
        for symbol, asset in snapshot.assets.items():
            if asset.price_change_24h >= MOMENTUM_MOVE_PCT:
                opportunities.append(Opportunity(
                    asset=symbol,
                    strategy_kind="momentum",
                    confidence=min(1.0, asset.price_change_24h / 10.0),
                    rationale=f"{asset.price_change_24h:+.1f}% in 24h",
                ))
        for opp in find_opportunities(snapshot):
            opportunities.append(Opportunity(
                asset=opp.symbol,
                strategy_kind="arbitrage",
                confidence=min(1.0, opp.spread * 50),
                rationale=f"{opp.buy_venue} -> {opp.sell_venue} spread {opp.spread:.2%}",
            ))

        risks = []
        if volatility is VolatilityLevel.HIGH:
            risks.append(MarketRisk(
                description="Elevated market volatility",
                severity="high",
                mitigation="Reduce position sizes",
            ))
        for symbol, asset in snapshot.assets.items():
            if asset.price_change_24h <= CRASH_MOVE_PCT:
                risks.append(MarketRisk(
                    description=f"Sharp decline in {symbol}",
                    severity="medium",
                    mitigation=f"Avoid new {symbol} longs",
                ))

        return MarketAnalysis(
            trend=classify_trend(snapshot),
            volatility=volatility,
            opportunities=tuple(sorted(opportunities, key=lambda o: o.confidence, reverse=True)),
            risks=tuple(risks),
        )

    async def optimize_allocation(
        self,
        scores: Mapping[str, StrategyScore],
        risk_profile: RiskProfile,
        analysis: MarketAnalysis,
    ) -> dict[str, float]:
        return synthesize_allocation(scores, risk_profile, analysis)

    async def analyze_performance(
        self, metrics: PerformanceMetrics, risk_profile: RiskProfile,
    ) -> PerformanceCommentary:
        recs = []
        if metrics.max_drawdown > risk_profile.max_drawdown:
            recs.append(Recommendation(
                action="Reduce risk exposure",
                priority=Priority.HIGH,
                reasoning=f"Drawdown {metrics.max_drawdown:.2%} exceeds limit {risk_profile.max_drawdown:.2%}",
            ))
        elif (len(metrics.daily_returns) >= 5 and metrics.sharpe_ratio > 1.5
              and metrics.max_drawdown < risk_profile.max_drawdown / 2):
            recs.append(Recommendation(
                action="Increase exposure to performing strategies",
                priority=Priority.HIGH,
                reasoning=f"Sharpe {metrics.sharpe_ratio:.2f} with contained drawdown",
            ))
        if metrics.win_rate and metrics.win_rate < 0.4:
            recs.append(Recommendation(
                action="Review strategy selection",
                priority=Priority.MEDIUM,
                reasoning=f"Win rate {metrics.win_rate:.0%}",
            ))

        if metrics.total_return > 0.05:
            rating = 8
        elif metrics.total_return >= 0:
            rating = 6
        elif metrics.max_drawdown > risk_profile.max_drawdown:
            rating = 2
        else:
            rating = 4

        return PerformanceCommentary(
            assessment=(f"Total return {metrics.total_return:.2%}, Sharpe {metrics.sharpe_ratio:.2f}, "
                        f"max drawdown {metrics.max_drawdown:.2%}"),
            rating=rating,
            recommendations=tuple(recs),
        )


# --- LLM oracle ---

ANALYST_SYSTEM = (
    "You are the market analyst of an autonomous crypto hedge fund. "
    "Reply with a single JSON object and nothing else."
)


def market_prompt(snapshot: MarketSnapshot) -> str:
    lines = [
        "Analyze the following market data and provide insights on trend, volatility, opportunities and risks.",
        "",
        f"Timestamp: {snapshot.timestamp.isoformat()}",
        f"- Volatility Index: {snapshot.volatility_index:.4f}",
        f"- Sentiment Score: {snapshot.sentiment_score:.1f}",
        f"- Trend Strength: {snapshot.trend_strength:.2f}",
        "",
        "Assets:",
    ]
    for symbol, asset in snapshot.assets.items():
        venues = ", ".join(
            f"{name} (price {q.price:.4f}, liquidity {q.liquidity:.0f})"
            for name, q in asset.exchanges.items()
        )
        lines.append(
            f"{symbol}: price {asset.price:.4f}, 24h {asset.price_change_24h:+.2f}%, "
            f"volume {asset.volume_24h:.0f}, volatility {asset.volatility:.4f}"
            + (f"; venues: {venues}" if venues else "")
        )
    lines += [
        "",
        "Respond in JSON with this structure:",
        '{"trend": "bullish|bearish|neutral", "volatility": "high|moderate|low",',
        ' "opportunities": [{"asset": "symbol", "strategy": "momentum|arbitrage", "confidence": 0-1, "reasoning": "..."}],',
        ' "risks": [{"description": "...", "severity": "high|medium|low", "mitigation": "..."}]}',
    ]
    return "\n".join(lines)


def allocation_prompt(
    scores: Mapping[str, StrategyScore], risk_profile: RiskProfile, analysis: MarketAnalysis,
) -> str:
    score_lines = "\n".join(
        f"- {sid}: score {s.score:.1f}, confidence {s.confidence:.2f}" for sid, s in scores.items()
    )
    return f"""Allocate capital across trading strategies given their scores, the risk profile and market analysis.

Strategy Scores (0-100):
{score_lines}

Risk Profile:
- Type: {risk_profile.kind.value}
- Max Drawdown: {risk_profile.max_drawdown}
- Position Size Factor: {risk_profile.position_size_factor}
- Max Exposure Per Asset: {risk_profile.max_exposure_per_asset}

Market Analysis:
- Trend: {analysis.trend.value}
- Volatility: {analysis.volatility.value}
- Opportunities: {len(analysis.opportunities)}
- Risks: {len(analysis.risks)}

Respond with a JSON object mapping each strategy id to a weight; weights sum to 1.0.
Aggressive profiles concentrate on the best scores, low-risk profiles diversify.
Give 0 to any strategy unsuited to current conditions."""


def performance_prompt(metrics: PerformanceMetrics, risk_profile: RiskProfile) -> str:
    recent = dict(sorted(metrics.daily_returns.items())[-7:])
    return f"""Review the fund's performance and recommend adjustments.

Metrics:
- Total Return: {metrics.total_return:.4f}
- Sharpe Ratio: {metrics.sharpe_ratio:.3f}
- Max Drawdown: {metrics.max_drawdown:.4f}
- Volatility: {metrics.volatility:.4f}
- Win Rate: {metrics.win_rate:.2f}
- Recent Daily Returns: {json.dumps(recent)}

Risk Profile: {risk_profile.kind.value} (max drawdown {risk_profile.max_drawdown})

Respond in JSON:
{{"assessment": "...", "rating": 1-10,
 "recommendations": [{{"action": "...", "priority": "high|medium|low", "reasoning": "..."}}]}}
Phrase risk changes explicitly, e.g. "Reduce risk exposure" or "Increase exposure"."""


class AIAdvisor(AdvisoryPort):
    """Claude-backed oracle. API errors propagate; unparseable replies degrade."""

    def __init__(self, ai: AIClient) -> None:
        self._ai = ai

    async def _ask_json(self, prompt: str, purpose: str) -> dict | None:
        text = await self._ai.ask(prompt, system=ANALYST_SYSTEM, purpose=purpose)
        data = extract_json(text)
        if data is None:
            log.warning("advisor.unparseable_reply", purpose=purpose, preview=text[:200])
        return data

    async def analyze_market(self, snapshot: MarketSnapshot) -> MarketAnalysis:
        data = await self._ask_json(market_prompt(snapshot), purpose="market_analysis")
        return MarketAnalysis.from_payload(data)

    async def optimize_allocation(
        self,
        scores: Mapping[str, StrategyScore],
        risk_profile: RiskProfile,
        analysis: MarketAnalysis,
    ) -> dict[str, Any]:
        data = await self._ask_json(allocation_prompt(scores, risk_profile, analysis), purpose="allocation")
        if data is None:
            return {}
        # Some replies nest the weights under "allocation"
        nested = data.get("allocation")
        return nested if isinstance(nested, dict) else data

    async def analyze_performance(
        self, metrics: PerformanceMetrics, risk_profile: RiskProfile,
    ) -> PerformanceCommentary:
        data = await self._ask_json(performance_prompt(metrics, risk_profile), purpose="performance_review")
        return PerformanceCommentary.from_payload(data)
