"""Momentum: buy the asset with the strongest volatility-adjusted 24h gain.

Scoring favours trending, calm markets:
- base 50, plus trend_strength * 20
- +10 when the volatility index is below 0.3, -15 above 0.7
- +2 for every asset up more than 5% on the day
"""

from __future__ import annotations

from dataclasses import dataclass, replace

import structlog

from hedgefund.shell.contract import (
    CapitalAllocation, MarketSnapshot, RiskProfile, StrategyBase, StrategyScore, TradeResult, WalletPort,
)
from hedgefund.strategies.sizing import is_stablecoin, order_quantity

log = structlog.get_logger()

MIN_MOVE_PCT = 3.0
STRONG_MOVE_PCT = 5.0


@dataclass(frozen=True)
class MomentumCandidate:
    symbol: str
    momentum: float
    price: float
    venue: str | None


def best_venue(asset) -> str | None:
    """Venue with the deepest liquidity, if the asset carries per-venue quotes."""
    if not asset.exchanges:
        return None
    return max(asset.exchanges.items(), key=lambda kv: kv[1].liquidity)[0]


def find_momentum(snapshot: MarketSnapshot) -> list[MomentumCandidate]:
    candidates = []
    for symbol, asset in snapshot.assets.items():
        if is_stablecoin(symbol) or asset.price_change_24h < MIN_MOVE_PCT:
            continue
        candidates.append(MomentumCandidate(
            symbol=symbol,
            momentum=asset.price_change_24h * (1.0 - asset.volatility),
            price=asset.price,
            venue=best_venue(asset),
        ))
    return sorted(candidates, key=lambda c: c.momentum, reverse=True)


class MomentumStrategy(StrategyBase):
    name = "momentum"

    def __init__(self, wallet: WalletPort) -> None:
        self._wallet = wallet

    async def evaluate(self, snapshot: MarketSnapshot) -> StrategyScore:
        score = 50.0 + snapshot.trend_strength * 20
        if snapshot.volatility_index < 0.3:
            score += 10
        elif snapshot.volatility_index > 0.7:
            score -= 15
        strong = sum(1 for a in snapshot.assets.values() if a.price_change_24h > STRONG_MOVE_PCT)
        score += strong * 2
        score = max(0.0, min(100.0, score))
        return StrategyScore(
            score=score,
            confidence=score / 100,
            rationale=f"trend={snapshot.trend_strength:.2f} vol={snapshot.volatility_index:.2f} strong_movers={strong}",
        )

    async def execute(
        self,
        snapshot: MarketSnapshot,
        allocation: CapitalAllocation,
        risk_profile: RiskProfile,
    ) -> TradeResult:
        candidates = find_momentum(snapshot)
        if not candidates:
            return TradeResult.failed(self.name, "No suitable momentum assets found")

        top = candidates[0]
        qty = order_quantity(top.price, allocation, risk_profile)
        if qty <= 0:
            return TradeResult.failed(self.name, "Position size is zero", asset=top.symbol)

        log.info("momentum.buy", symbol=top.symbol, qty=round(qty, 8),
                 momentum=round(top.momentum, 2), venue=top.venue)
        result = await self._wallet.execute_trade(top.symbol, qty, True)
        return replace(result, strategy=self.name)
