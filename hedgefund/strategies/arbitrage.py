"""Cross-venue arbitrage: buy where an asset is cheapest when venues disagree."""

from __future__ import annotations

from dataclasses import dataclass, replace
from itertools import combinations

import structlog

from hedgefund.shell.contract import (
    CapitalAllocation, MarketSnapshot, RiskProfile, StrategyBase, StrategyScore, TradeResult, WalletPort,
)
from hedgefund.strategies.sizing import is_stablecoin, order_quantity

log = structlog.get_logger()

MIN_PRICE_DIFFERENCE = 0.005   # 0.5% spread between venues
MIN_LIQUIDITY = 10_000.0
ROUND_TRIP_FEES = 0.003


@dataclass(frozen=True)
class ArbitrageOpportunity:
    symbol: str
    buy_venue: str
    buy_price: float
    sell_venue: str
    sell_price: float
    spread: float

    @property
    def profit_potential(self) -> float:
        return self.spread - ROUND_TRIP_FEES


def find_opportunities(snapshot: MarketSnapshot) -> list[ArbitrageOpportunity]:
    """Every liquid venue pair whose prices differ by more than the threshold, best first."""
    found = []
    for symbol, asset in snapshot.assets.items():
        if is_stablecoin(symbol) or len(asset.exchanges) < 2:
            continue
        for (venue_a, a), (venue_b, b) in combinations(asset.exchanges.items(), 2):
            low = min(a.price, b.price)
            if low <= 0:
                continue
            spread = abs(a.price - b.price) / low
            if spread <= MIN_PRICE_DIFFERENCE:
                continue
            if a.liquidity <= MIN_LIQUIDITY or b.liquidity <= MIN_LIQUIDITY:
                continue
            (buy_venue, buy), (sell_venue, sell) = sorted(
                [(venue_a, a), (venue_b, b)], key=lambda kv: kv[1].price,
            )
            found.append(ArbitrageOpportunity(
                symbol=symbol,
                buy_venue=buy_venue,
                buy_price=buy.price,
                sell_venue=sell_venue,
                sell_price=sell.price,
                spread=spread,
            ))
    return sorted(found, key=lambda o: o.profit_potential, reverse=True)


class ArbitrageStrategy(StrategyBase):
    name = "arbitrage"

    def __init__(self, wallet: WalletPort) -> None:
        self._wallet = wallet

    async def evaluate(self, snapshot: MarketSnapshot) -> StrategyScore:
        opportunities = find_opportunities(snapshot)
        score = 50.0 + min(50.0, len(opportunities) * 10.0) if opportunities else 25.0
        return StrategyScore(
            score=score,
            confidence=score / 100,
            rationale=f"{len(opportunities)} cross-venue opportunities",
        )

    async def execute(
        self,
        snapshot: MarketSnapshot,
        allocation: CapitalAllocation,
        risk_profile: RiskProfile,
    ) -> TradeResult:
        opportunities = find_opportunities(snapshot)
        if not opportunities:
            return TradeResult.failed(self.name, "No arbitrage opportunities found")

        best = opportunities[0]
        qty = order_quantity(best.buy_price, allocation, risk_profile)
        if qty <= 0:
            return TradeResult.failed(self.name, "Position size is zero", asset=best.symbol)

        log.info("arbitrage.buy", symbol=best.symbol, qty=round(qty, 8),
                 buy_venue=best.buy_venue, sell_venue=best.sell_venue, spread=f"{best.spread:.2%}")
        result = await self._wallet.execute_trade(best.symbol, qty, True)
        return replace(result, strategy=self.name)
