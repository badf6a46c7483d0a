"""Position sizing shared by the reference strategies."""

from __future__ import annotations

from hedgefund.shell.contract import CapitalAllocation, RiskProfile

STABLECOINS = frozenset({"USD", "USDC", "USDT", "DAI"})


def base_symbol(symbol: str) -> str:
    """'BTC/USD' -> 'BTC'."""
    return symbol.split("/", 1)[0].upper()


def is_stablecoin(symbol: str) -> bool:
    return base_symbol(symbol) in STABLECOINS


def order_quantity(price: float, allocation: CapitalAllocation, risk_profile: RiskProfile) -> float:
    """Units to buy: capital share scaled by position size, capped per asset."""
    if price <= 0:
        return 0.0
    notional = allocation.capital_usd * risk_profile.position_size_factor
    cap = risk_profile.max_exposure_per_asset * allocation.portfolio_value_usd
    return max(0.0, min(notional, cap) / price)
