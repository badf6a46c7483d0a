"""Allocation normalizer — every weight vector leaving here sums to 1.0.

Raw weights may come from the advisory oracle (untrusted) or be synthesized
from strategy scores. Either way they are normalized over the full set of
known strategy ids, so a stale or degenerate advisory response can never
starve a registered strategy of capital.
"""

from __future__ import annotations

import math
from typing import Any, Mapping, Sequence

import structlog

from hedgefund.shell.contract import (
    MarketAnalysis,
    RiskProfile,
    RiskProfileKind,
    StrategyScore,
    VolatilityLevel,
)

log = structlog.get_logger()

ALLOCATION_TOLERANCE = 1e-9

# Exponents applied to score shares before normalizing
AGGRESSIVE_CONCENTRATION = 1.25
LOW_RISK_FLATTENING = 0.5


def _weight(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        w = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(w) or math.isinf(w) or w < 0:
        return 0.0
    return w


def equal_split(strategy_ids: Sequence[str]) -> dict[str, float]:
    ids = list(dict.fromkeys(strategy_ids))
    if not ids:
        return {}
    share = 1.0 / len(ids)
    return {sid: share for sid in ids}


def allocation_total(allocation: Mapping[str, float] | None) -> float:
    if not allocation:
        return 0.0
    return sum(allocation.values())


def normalize_allocation(raw: Mapping[str, Any] | None, known_ids: Sequence[str]) -> dict[str, float]:
    """Normalize raw weights over known_ids. Never raises.

    Unknown keys are dropped, invalid weights count as zero, and known ids
    missing from the input get zero. An all-zero result falls back to an equal
    split across every known id. Empty iff known_ids is empty.
    """
    ids = list(dict.fromkeys(known_ids))
    if not ids:
        return {}

    cleaned = {sid: 0.0 for sid in ids}
    dropped = []
    if isinstance(raw, Mapping):
        for key, value in raw.items():
            if key in cleaned:
                cleaned[key] = _weight(value)
            else:
                dropped.append(key)
    elif raw is not None:
        log.warning("allocation.raw_not_mapping", raw_type=type(raw).__name__)

    if dropped:
        log.info("allocation.unknown_strategies_dropped", dropped=dropped)

    # Scale by the largest weight first so the total cannot overflow
    peak = max(cleaned.values())
    if peak <= 0:
        log.info("allocation.equal_split_fallback", strategies=len(ids))
        return equal_split(ids)

    scaled = {sid: w / peak for sid, w in cleaned.items()}
    total = math.fsum(scaled.values())
    return {sid: w / total for sid, w in scaled.items()}


def synthesize_allocation(
    scores: Mapping[str, StrategyScore],
    risk_profile: RiskProfile,
    analysis: MarketAnalysis | None = None,
) -> dict[str, float]:
    """Score-proportional raw weights, shaped by risk appetite and market volatility.

    Output is raw — run it through normalize_allocation().
    """
    total_score = sum(s.score for s in scores.values())
    if total_score <= 0:
        return {sid: 0.0 for sid in scores}

    high_vol = analysis is not None and analysis.volatility is VolatilityLevel.HIGH
    raw = {}
    for sid, score in scores.items():
        share = score.score / total_score
        if risk_profile.kind is RiskProfileKind.AGGRESSIVE:
            share = share ** AGGRESSIVE_CONCENTRATION
        elif risk_profile.kind is RiskProfileKind.LOW_RISK:
            share = share ** LOW_RISK_FLATTENING

        # Low-confidence strategies give ground when the market is choppy
        if high_vol and risk_profile.kind is not RiskProfileKind.AGGRESSIVE:
            share *= 0.5 + 0.5 * score.confidence

        raw[sid] = share
    return raw
