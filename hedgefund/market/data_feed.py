"""Market data feeds implementing MarketDataPort.

- SimulatedMarketData: seeded geometric random walk with per-venue quotes.
- KrakenMarketData: Kraken public Ticker endpoint over REST.

Both expose last_price() so the paper wallet can fill at the latest mark.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Iterable

import httpx
import numpy as np
import structlog

from hedgefund.shell.contract import AssetData, ExchangeQuote, MarketDataPort, MarketSnapshot, utcnow

log = structlog.get_logger()

# Starting marks for the simulator
REFERENCE_PRICES = {
    "BTC/USD": 65_000.0,
    "ETH/USD": 3_200.0,
    "SOL/USD": 150.0,
    "LINK/USD": 15.0,
    "AVAX/USD": 30.0,
    "DOGE/USD": 0.15,
}

WINDOW = 24                   # steps treated as one "24h" window
VENUE_DISPERSION = 0.004      # std of per-venue price deviation


def _market_aggregates(assets: dict[str, AssetData]) -> tuple[float, float, float]:
    """(volatility_index, sentiment_score, trend_strength) across all assets."""
    if not assets:
        return 0.0, 50.0, 0.0
    changes = np.array([a.price_change_24h for a in assets.values()])
    vols = np.array([a.volatility for a in assets.values()])
    volatility_index = float(np.clip(vols.mean(), 0.0, 1.0))
    sentiment = float(np.clip(50.0 + 5.0 * changes.mean(), 0.0, 100.0))
    trend_strength = float(abs(np.sign(changes).mean()))
    return volatility_index, sentiment, trend_strength


class SimulatedMarketData(MarketDataPort):
    """Offline random-walk feed. A fixed seed gives a reproducible series."""

    def __init__(
        self,
        symbols: Iterable[str],
        seed: int | None = None,
        venues: Iterable[str] = ("SoneSwap", "UnoSwap"),
        drift: float = 0.0,
    ) -> None:
        self._symbols = list(symbols)
        self._venues = list(venues)
        self._rng = np.random.default_rng(seed)
        self._drift = drift
        self._sigma = {s: float(self._rng.uniform(0.005, 0.03)) for s in self._symbols}
        self._history: dict[str, deque[float]] = {}
        for symbol in self._symbols:
            history = deque([REFERENCE_PRICES.get(symbol, 100.0)], maxlen=WINDOW + 1)
            for _ in range(WINDOW):
                history.append(self._step(symbol, history[-1]))
            self._history[symbol] = history

    def _step(self, symbol: str, price: float) -> float:
        return price * float(np.exp(self._rng.normal(self._drift, self._sigma[symbol])))

    def last_price(self, symbol: str) -> float | None:
        history = self._history.get(symbol)
        return history[-1] if history else None

    async def get_snapshot(self) -> MarketSnapshot:
        assets = {}
        for symbol in self._symbols:
            history = self._history[symbol]
            history.append(self._step(symbol, history[-1]))

            prices = np.array(history)
            log_returns = np.diff(np.log(prices))
            price = float(prices[-1])
            volume = float(self._rng.uniform(1e5, 5e6))

            exchanges = {}
            for venue in self._venues:
                exchanges[venue] = ExchangeQuote(
                    price=price * (1.0 + float(self._rng.normal(0.0, VENUE_DISPERSION))),
                    volume_24h=volume / max(len(self._venues), 1),
                    liquidity=float(self._rng.uniform(5e3, 5e5)),
                )

            assets[symbol] = AssetData(
                symbol=symbol,
                price=price,
                price_change_24h=(price / float(prices[0]) - 1.0) * 100,
                volume_24h=volume,
                volatility=float(np.clip(log_returns.std() * np.sqrt(len(log_returns)), 0.0, 1.0)),
                exchanges=exchanges,
            )

        volatility_index, sentiment, trend_strength = _market_aggregates(assets)
        return MarketSnapshot(
            timestamp=utcnow(),
            volatility_index=volatility_index,
            assets=assets,
            sentiment_score=sentiment,
            trend_strength=trend_strength,
        )


# Kraken pair mapping: user-friendly -> REST API format
PAIR_MAP = {
    "BTC/USD": "XBTUSD",
    "ETH/USD": "ETHUSD",
    "SOL/USD": "SOLUSD",
    "DOGE/USD": "XDGUSD",
    "LINK/USD": "LINKUSD",
    "AVAX/USD": "AVAXUSD",
}


def to_kraken_pair(symbol: str) -> str:
    return PAIR_MAP.get(symbol, symbol.replace("/", ""))


def parse_ticker(symbol: str, ticker: dict[str, Any]) -> AssetData:
    """Kraken Ticker entry -> AssetData.

    c = last trade, o = today's open, h/l/v = [today, last 24h].
    """
    last = float(ticker["c"][0])
    opened = float(ticker["o"])
    high = float(ticker["h"][1])
    low = float(ticker["l"][1])
    volume_usd = float(ticker["v"][1]) * last
    return AssetData(
        symbol=symbol,
        price=last,
        price_change_24h=(last / opened - 1.0) * 100 if opened > 0 else 0.0,
        volume_24h=volume_usd,
        volatility=min(1.0, (high - low) / last) if last > 0 else 0.0,
        exchanges={"kraken": ExchangeQuote(price=last, volume_24h=volume_usd, liquidity=volume_usd)},
    )


class KrakenMarketData(MarketDataPort):
    """Live marks from Kraken's public REST API. No credentials needed."""

    def __init__(
        self,
        symbols: Iterable[str],
        rest_url: str = "https://api.kraken.com",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._symbols = list(symbols)
        self._base_url = rest_url
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._last_prices: dict[str, float] = {}

    async def close(self) -> None:
        await self._client.aclose()

    async def _public(self, endpoint: str, params: dict | None = None) -> dict:
        url = f"{self._base_url}/0/public/{endpoint}"
        resp = await self._client.get(url, params=params)
        resp.raise_for_status()
        data = resp.json()
        if data.get("error"):
            raise RuntimeError(f"Kraken API error: {data['error']}")
        return data["result"]

    async def get_ticker(self, symbol: str) -> dict:
        result = await self._public("Ticker", {"pair": to_kraken_pair(symbol)})
        if not result:
            raise RuntimeError(f"Kraken returned empty ticker for {symbol}")
        return next(iter(result.values()))

    def last_price(self, symbol: str) -> float | None:
        return self._last_prices.get(symbol)

    async def get_snapshot(self) -> MarketSnapshot:
        assets = {}
        for symbol in self._symbols:
            asset = parse_ticker(symbol, await self.get_ticker(symbol))
            assets[symbol] = asset
            self._last_prices[symbol] = asset.price

        volatility_index, sentiment, trend_strength = _market_aggregates(assets)
        log.debug("market.snapshot", source="kraken", assets=len(assets),
                  volatility_index=round(volatility_index, 4))
        return MarketSnapshot(
            timestamp=utcnow(),
            volatility_index=volatility_index,
            assets=assets,
            sentiment_score=sentiment,
            trend_strength=trend_strength,
        )
