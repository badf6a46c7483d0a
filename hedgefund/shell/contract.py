"""IO Contract — rigid interface between the orchestrator core and its collaborators.

These types define EXACTLY what strategies, advisors, wallets and market feeds
receive and what they must return. Payloads coming back from the advisory
oracle are coerced here, at the boundary, so nothing untyped flows inward.
"""

from __future__ import annotations

import copy
import math
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

import structlog

log = structlog.get_logger()


# --- Bounds enforced on the mutable risk profile ---

POSITION_SIZE_FACTOR_BOUNDS = (0.5, 1.5)
MAX_EXPOSURE_PER_ASSET_BOUNDS = (0.05, 0.25)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_float(value: Any, default: float = 0.0) -> float:
    """Best-effort float conversion. Non-finite and unparseable values map to default."""
    if isinstance(value, bool):
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(result) or math.isinf(result):
        return default
    return result


def _items(value: Any) -> tuple:
    """Payload sequences arrive loosely typed; anything but a list or tuple is empty."""
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return ()


# --- Enums ---

class RiskProfileKind(Enum):
    AGGRESSIVE = "aggressive"
    BALANCED = "balanced"
    LOW_RISK = "low-risk"


class Trend(Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class VolatilityLevel(Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


class Priority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def _parse_enum(enum_cls, value: Any, default):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    return default


# --- Risk profile ---

@dataclass
class RiskProfile:
    """Guardrail parameters bounding position sizing and exposure.

    Owned by the orchestrator. Only the RiskAdapter mutates it, in place.
    """
    kind: RiskProfileKind
    max_drawdown: float
    leverage: float
    position_size_factor: float
    max_exposure_per_asset: float
    stop_loss_pct: float
    take_profit_pct: float

    def snapshot(self) -> RiskProfile:
        return replace(self)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


# --- Market data (MarketDataPort -> core) ---

@dataclass(frozen=True)
class ExchangeQuote:
    price: float
    volume_24h: float
    liquidity: float


@dataclass(frozen=True)
class AssetData:
    symbol: str
    price: float
    price_change_24h: float      # percent
    volume_24h: float
    volatility: float
    exchanges: Mapping[str, ExchangeQuote] = field(default_factory=dict)


@dataclass(frozen=True)
class MarketSnapshot:
    timestamp: datetime
    volatility_index: float      # 0.0-1.0
    assets: Mapping[str, AssetData] = field(default_factory=dict)
    sentiment_score: float = 50.0
    trend_strength: float = 0.5


# --- Strategy scoring ---

@dataclass(frozen=True)
class StrategyScore:
    score: float                 # 0-100
    confidence: float            # 0.0-1.0
    rationale: str = ""

    def __post_init__(self):
        object.__setattr__(self, "score", _clamp(_as_float(self.score), 0.0, 100.0))
        object.__setattr__(self, "confidence", _clamp(_as_float(self.confidence), 0.0, 1.0))

    @classmethod
    def from_payload(cls, payload: Any) -> StrategyScore:
        if isinstance(payload, StrategyScore):
            # Rebuilt so out-of-range values set after construction are clamped again
            return cls(payload.score, payload.confidence, str(payload.rationale))
        if isinstance(payload, Mapping):
            return cls(
                score=payload.get("score", 0.0),
                confidence=payload.get("confidence", 0.0),
                rationale=str(payload.get("rationale", payload.get("reasoning", ""))),
            )
        raise TypeError(f"Cannot interpret {type(payload).__name__} as a StrategyScore")

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CapitalAllocation:
    """What a strategy receives when it is asked to execute."""
    weight: float
    capital_usd: float
    portfolio_value_usd: float


# --- Trades ---

@dataclass(frozen=True)
class TradeResult:
    strategy: str
    asset: str
    side: str                    # "buy" or "sell"
    amount: float
    price: float
    fee: float = 0.0
    success: bool = True
    error: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    tx_hash: Optional[str] = None

    @classmethod
    def failed(cls, strategy: str, error: str, asset: str = "", side: str = "buy") -> TradeResult:
        return cls(strategy=strategy, asset=asset, side=side, amount=0.0, price=0.0,
                   success=False, error=error)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


# --- Wallet ---

@dataclass(frozen=True)
class TokenBalance:
    symbol: str
    amount: float
    usd_value: float


@dataclass(frozen=True)
class WalletInfo:
    address: str
    balances: Mapping[str, TokenBalance] = field(default_factory=dict)

    @property
    def total_value_usd(self) -> float:
        return sum(b.usd_value for b in self.balances.values())


# --- Performance ---

@dataclass
class PerformanceMetrics:
    total_return: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    volatility: float = 0.0
    win_rate: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0
    daily_returns: dict[str, float] = field(default_factory=dict)   # ISO date -> return

    def snapshot(self) -> PerformanceMetrics:
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return asdict(self)


# --- Advisory payloads ---

@dataclass(frozen=True)
class Opportunity:
    asset: str
    strategy_kind: str
    confidence: float
    rationale: str = ""


@dataclass(frozen=True)
class MarketRisk:
    description: str
    severity: str = "medium"
    mitigation: str = ""


@dataclass(frozen=True)
class MarketAnalysis:
    trend: Trend
    volatility: VolatilityLevel
    opportunities: tuple[Opportunity, ...] = ()
    risks: tuple[MarketRisk, ...] = ()

    @classmethod
    def neutral(cls) -> MarketAnalysis:
        return cls(trend=Trend.NEUTRAL, volatility=VolatilityLevel.MODERATE)

    @classmethod
    def from_payload(cls, payload: Any) -> MarketAnalysis:
        """Coerce an advisory payload. Never raises; garbage becomes a neutral analysis."""
        if isinstance(payload, MarketAnalysis):
            return payload
        if not isinstance(payload, Mapping):
            log.warning("contract.analysis_unparseable", payload_type=type(payload).__name__)
            return cls.neutral()

        trend = _parse_enum(Trend, payload.get("trend", payload.get("market_trend")), Trend.NEUTRAL)
        volatility = _parse_enum(
            VolatilityLevel,
            payload.get("volatility", payload.get("volatility_assessment")),
            VolatilityLevel.MODERATE,
        )

        opportunities = []
        for op in _items(payload.get("opportunities")):
            if not isinstance(op, Mapping) or not op.get("asset"):
                continue
            opportunities.append(Opportunity(
                asset=str(op["asset"]),
                strategy_kind=str(op.get("strategy_kind", op.get("strategy", ""))),
                confidence=_clamp(_as_float(op.get("confidence")), 0.0, 1.0),
                rationale=str(op.get("rationale", op.get("reasoning", ""))),
            ))

        risks = []
        for risk in _items(payload.get("risks")):
            if not isinstance(risk, Mapping) or not risk.get("description"):
                continue
            risks.append(MarketRisk(
                description=str(risk["description"]),
                severity=str(risk.get("severity", "medium")).lower(),
                mitigation=str(risk.get("mitigation", "")),
            ))

        return cls(trend=trend, volatility=volatility,
                   opportunities=tuple(opportunities), risks=tuple(risks))

    def to_dict(self) -> dict:
        return {
            "trend": self.trend.value,
            "volatility": self.volatility.value,
            "opportunities": [asdict(o) for o in self.opportunities],
            "risks": [asdict(r) for r in self.risks],
        }


@dataclass(frozen=True)
class Recommendation:
    action: str
    priority: Priority = Priority.MEDIUM
    reasoning: str = ""


@dataclass(frozen=True)
class PerformanceCommentary:
    assessment: str = ""
    rating: Optional[int] = None
    recommendations: tuple[Recommendation, ...] = ()

    @classmethod
    def from_payload(cls, payload: Any) -> PerformanceCommentary:
        if isinstance(payload, PerformanceCommentary):
            return payload
        if not isinstance(payload, Mapping):
            log.warning("contract.commentary_unparseable", payload_type=type(payload).__name__)
            return cls(assessment="Unable to interpret performance commentary")

        recs = []
        for rec in _items(payload.get("recommendations")):
            if not isinstance(rec, Mapping) or not rec.get("action"):
                continue
            recs.append(Recommendation(
                action=str(rec["action"]),
                priority=_parse_enum(Priority, rec.get("priority"), Priority.LOW),
                reasoning=str(rec.get("reasoning", "")),
            ))

        rating = payload.get("rating", payload.get("performance_rating"))
        rating = int(_as_float(rating)) if rating is not None else None
        return cls(
            assessment=str(payload.get("assessment", "")),
            rating=rating,
            recommendations=tuple(recs),
        )

    def to_dict(self) -> dict:
        return {
            "assessment": self.assessment,
            "rating": self.rating,
            "recommendations": [
                {"action": r.action, "priority": r.priority.value, "reasoning": r.reasoning}
                for r in self.recommendations
            ],
        }


# --- Ports ---

class WalletPort(ABC):
    """Account access: balances and trade submission."""

    @abstractmethod
    async def get_info(self) -> WalletInfo: ...

    @abstractmethod
    async def execute_trade(self, asset: str, amount: float, is_buy: bool) -> TradeResult: ...


class MarketDataPort(ABC):

    @abstractmethod
    async def get_snapshot(self) -> MarketSnapshot: ...


class AdvisoryPort(ABC):
    """Opaque advisory oracle. May return typed records or raw payloads."""

    @abstractmethod
    async def analyze_market(self, snapshot: MarketSnapshot) -> MarketAnalysis | Mapping: ...

    @abstractmethod
    async def optimize_allocation(
        self,
        scores: Mapping[str, StrategyScore],
        risk_profile: RiskProfile,
        analysis: MarketAnalysis,
    ) -> Mapping[str, Any]: ...

    @abstractmethod
    async def analyze_performance(
        self, metrics: PerformanceMetrics, risk_profile: RiskProfile,
    ) -> PerformanceCommentary | Mapping: ...


class MetricsSink(ABC):

    @abstractmethod
    def record_trade(self, trade: TradeResult) -> None: ...


class StrategyBase:
    """Base class that defines the IO contract for strategy modules.

    Strategies MUST implement: evaluate(), execute()
    Any object exposing these two coroutines can be registered with the
    orchestrator; subclassing is a convenience, not a requirement.
    """

    name: str = "strategy"

    async def evaluate(self, snapshot: MarketSnapshot) -> StrategyScore:
        """Score how well this strategy suits the current market (0-100)."""
        raise NotImplementedError

    async def execute(
        self,
        snapshot: MarketSnapshot,
        allocation: CapitalAllocation,
        risk_profile: RiskProfile,
    ) -> TradeResult:
        """Deploy the allocated capital. Return a failed TradeResult rather than raising
        for expected trading conditions (no signal, insufficient funds)."""
        raise NotImplementedError
