"""Risk Adapter — bounded in-place adjustments to the live risk profile.

Part of the rigid shell. Advisory commentary can only nudge the profile by
one fixed step per high-priority recommendation, and the result is always
clamped to the hard bounds declared in the contract.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import structlog

from hedgefund.shell.contract import (
    MAX_EXPOSURE_PER_ASSET_BOUNDS,
    POSITION_SIZE_FACTOR_BOUNDS,
    PerformanceCommentary,
    Priority,
    RiskProfile,
)

log = structlog.get_logger()

REDUCE_PHRASES = ("reduce risk", "lower risk", "decrease risk", "reduce exposure", "lower exposure")
INCREASE_PHRASES = ("increase risk", "raise risk", "increase exposure", "higher exposure")


class RiskIntent(Enum):
    REDUCE = "reduce"
    INCREASE = "increase"


@dataclass(frozen=True)
class RiskAdjustment:
    intent: RiskIntent
    trigger: str
    position_size_factor: float
    max_exposure_per_asset: float

    def to_dict(self) -> dict:
        return {
            "intent": self.intent.value,
            "trigger": self.trigger,
            "position_size_factor": self.position_size_factor,
            "max_exposure_per_asset": self.max_exposure_per_asset,
        }


def classify_action(action: str) -> RiskIntent | None:
    """Map free-text recommendation to a risk intent, or None if it isn't about risk."""
    text = action.lower()
    if "risk" not in text and "exposure" not in text:
        return None
    if any(p in text for p in REDUCE_PHRASES):
        return RiskIntent.REDUCE
    if any(p in text for p in INCREASE_PHRASES):
        return RiskIntent.INCREASE
    return None


def _bounded(value: float, bounds: tuple[float, float]) -> float:
    return max(bounds[0], min(bounds[1], value))


class RiskAdapter:
    """Applies high-priority risk recommendations to a RiskProfile."""

    def __init__(self, reduce_factor: float = 0.9, increase_factor: float = 1.1) -> None:
        self._reduce_factor = reduce_factor
        self._increase_factor = increase_factor

    def adapt(self, profile: RiskProfile, commentary: PerformanceCommentary) -> list[RiskAdjustment]:
        """Mutate profile in place. Returns the adjustments applied (may be empty)."""
        adjustments: list[RiskAdjustment] = []

        for rec in commentary.recommendations:
            if rec.priority is not Priority.HIGH:
                continue
            intent = classify_action(rec.action)
            if intent is None:
                continue

            factor = self._reduce_factor if intent is RiskIntent.REDUCE else self._increase_factor
            profile.position_size_factor = _bounded(
                profile.position_size_factor * factor, POSITION_SIZE_FACTOR_BOUNDS,
            )
            profile.max_exposure_per_asset = _bounded(
                profile.max_exposure_per_asset * factor, MAX_EXPOSURE_PER_ASSET_BOUNDS,
            )

            adjustments.append(RiskAdjustment(
                intent=intent,
                trigger=rec.action,
                position_size_factor=profile.position_size_factor,
                max_exposure_per_asset=profile.max_exposure_per_asset,
            ))
            log.info("risk.adapted", intent=intent.value, trigger=rec.action,
                     position_size_factor=round(profile.position_size_factor, 4),
                     max_exposure_per_asset=round(profile.max_exposure_per_asset, 4))

        return adjustments
