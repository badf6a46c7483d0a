"""Paper wallet and trade ledger.

PaperWallet implements WalletPort with in-memory balances: a USD cash leg plus
one holding per traded pair, valued at the latest mark. TradeLedger implements
MetricsSink and keeps a bounded history of fills.
"""

from __future__ import annotations

import uuid
from collections import deque
from typing import Callable

import structlog

from hedgefund.shell.contract import MetricsSink, TokenBalance, TradeResult, WalletInfo, WalletPort

log = structlog.get_logger()

CASH_SYMBOL = "USD"


class PaperWallet(WalletPort):
    """Simulated fills at the current mark, with a percentage fee per fill."""

    def __init__(
        self,
        starting_cash: float,
        fee_pct: float,
        price_lookup: Callable[[str], float | None],
        address: str = "paper-wallet",
    ) -> None:
        self._cash = starting_cash
        self._starting_cash = starting_cash
        self._fee_rate = fee_pct / 100
        self._price_lookup = price_lookup
        self._address = address
        self._holdings: dict[str, float] = {}      # pair -> qty
        self._marks: dict[str, float] = {}         # pair -> last fill price
        self._fees_paid = 0.0

    @property
    def cash(self) -> float:
        return self._cash

    @property
    def holdings(self) -> dict[str, float]:
        return dict(self._holdings)

    @property
    def fees_paid(self) -> float:
        return self._fees_paid

    def _mark(self, asset: str) -> float | None:
        price = self._price_lookup(asset)
        if price is None or price <= 0:
            return self._marks.get(asset)
        return price

    async def get_info(self) -> WalletInfo:
        balances = {CASH_SYMBOL: TokenBalance(symbol=CASH_SYMBOL, amount=self._cash, usd_value=self._cash)}
        for asset, qty in self._holdings.items():
            symbol = asset.split("/", 1)[0]
            price = self._mark(asset) or 0.0
            balances[symbol] = TokenBalance(symbol=symbol, amount=qty, usd_value=qty * price)
        return WalletInfo(address=self._address, balances=balances)

    async def execute_trade(self, asset: str, amount: float, is_buy: bool) -> TradeResult:
        side = "buy" if is_buy else "sell"
        price = self._price_lookup(asset)
        if price is None or price <= 0:
            return TradeResult.failed("", f"No price available for {asset}", asset=asset, side=side)
        if amount <= 0:
            return TradeResult.failed("", f"Invalid trade amount {amount}", asset=asset, side=side)

        notional = amount * price
        fee = notional * self._fee_rate

        if is_buy:
            if notional + fee > self._cash:
                log.info("wallet.insufficient_funds", asset=asset, needed=round(notional + fee, 2),
                         cash=round(self._cash, 2))
                return TradeResult.failed("", "Insufficient funds", asset=asset, side=side)
            self._cash -= notional + fee
            self._holdings[asset] = self._holdings.get(asset, 0.0) + amount
        else:
            held = self._holdings.get(asset, 0.0)
            if amount > held:
                return TradeResult.failed("", "Insufficient holdings", asset=asset, side=side)
            self._cash += notional - fee
            remaining = held - amount
            if remaining > 0:
                self._holdings[asset] = remaining
            else:
                self._holdings.pop(asset, None)

        self._marks[asset] = price
        self._fees_paid += fee
        log.info("wallet.filled", side=side, asset=asset, qty=round(amount, 8),
                 price=price, fee=round(fee, 4), cash=round(self._cash, 2))
        return TradeResult(
            strategy="",
            asset=asset,
            side=side,
            amount=amount,
            price=price,
            fee=fee,
            tx_hash=f"paper-{uuid.uuid4().hex[:12]}",
        )


class TradeLedger(MetricsSink):
    """Bounded fill history with per-strategy totals."""

    def __init__(self, capacity: int = 1000) -> None:
        self._trades: deque[TradeResult] = deque(maxlen=capacity)
        self._per_strategy: dict[str, dict[str, float]] = {}

    def record_trade(self, trade: TradeResult) -> None:
        self._trades.append(trade)
        stats = self._per_strategy.setdefault(trade.strategy, {"trades": 0, "volume_usd": 0.0, "fees": 0.0})
        stats["trades"] += 1
        stats["volume_usd"] += trade.amount * trade.price
        stats["fees"] += trade.fee

    @property
    def trades(self) -> list[TradeResult]:
        return list(self._trades)

    def summary(self) -> dict[str, dict[str, float]]:
        return {name: dict(stats) for name, stats in self._per_strategy.items()}
