"""Tests for the reference port implementations: advisors, AI client,
strategies, market feeds and the application wiring.
"""

import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest


def _profile(kind="balanced", psf=1.0, exposure=0.20, max_drawdown=0.15):
    from hedgefund.shell.contract import RiskProfile, RiskProfileKind
    return RiskProfile(
        kind=RiskProfileKind(kind), max_drawdown=max_drawdown, leverage=1.0,
        position_size_factor=psf, max_exposure_per_asset=exposure,
        stop_loss_pct=5.0, take_profit_pct=15.0,
    )


def _asset(symbol, price, change, volatility=0.1, venues=None):
    from hedgefund.shell.contract import AssetData, ExchangeQuote
    exchanges = {
        name: ExchangeQuote(price=p, volume_24h=1e6, liquidity=liq)
        for name, (p, liq) in (venues or {}).items()
    }
    return AssetData(symbol, price, change, 1e6, volatility, exchanges)


def _snapshot(assets, volatility=0.2, sentiment=50.0, trend=0.5):
    from hedgefund.shell.contract import MarketSnapshot
    return MarketSnapshot(
        timestamp=datetime.now(timezone.utc),
        volatility_index=volatility,
        assets={a.symbol: a for a in assets},
        sentiment_score=sentiment,
        trend_strength=trend,
    )


# --- JSON extraction ---

def test_extract_json_variants():
    from hedgefund.orchestrator.advisor import extract_json

    assert extract_json('{"a": 1}') == {"a": 1}
    assert extract_json('Here you go:\n```json\n{"a": 0.6, "b": 0.4}\n```\nGood luck') == {"a": 0.6, "b": 0.4}
    assert extract_json('Sure! {"trend": "bullish", "note": "uses {braces}"} -- done') == {
        "trend": "bullish", "note": "uses {braces}",
    }
    assert extract_json("no json here") is None
    assert extract_json("") is None
    assert extract_json("[1, 2, 3]") is None


# --- Heuristic advisor ---

@pytest.mark.asyncio
async def test_heuristic_market_analysis():
    from hedgefund.orchestrator.advisor import HeuristicAdvisor
    from hedgefund.shell.contract import Trend, VolatilityLevel

    snapshot = _snapshot([
        _asset("ETH/USD", 3000.0, 6.0),
        _asset("SOL/USD", 150.0, 2.0),
        _asset("DOGE/USD", 0.1, -7.0),
    ], volatility=0.4, sentiment=60.0)
    analysis = await HeuristicAdvisor().analyze_market(snapshot)

    assert analysis.volatility is VolatilityLevel.HIGH
    assert analysis.trend is Trend.NEUTRAL          # mean change is +0.33%
    assert [o.asset for o in analysis.opportunities] == ["ETH/USD"]
    descriptions = [r.description for r in analysis.risks]
    assert "Elevated market volatility" in descriptions
    assert "Sharp decline in DOGE/USD" in descriptions


@pytest.mark.asyncio
async def test_heuristic_trend_and_arbitrage():
    from hedgefund.orchestrator.advisor import HeuristicAdvisor
    from hedgefund.shell.contract import Trend, VolatilityLevel

    snapshot = _snapshot([
        _asset("BTC/USD", 100.0, 4.0, venues={"A": (100.0, 50_000), "B": (101.5, 50_000)}),
    ], volatility=0.1, sentiment=70.0)
    analysis = await HeuristicAdvisor().analyze_market(snapshot)

    assert analysis.trend is Trend.BULLISH
    assert analysis.volatility is VolatilityLevel.LOW
    kinds = {o.strategy_kind for o in analysis.opportunities}
    assert kinds == {"momentum", "arbitrage"}


@pytest.mark.asyncio
async def test_heuristic_performance_commentary_drives_risk_adapter():
    from hedgefund.orchestrator.advisor import HeuristicAdvisor
    from hedgefund.shell.contract import PerformanceMetrics, Priority
    from hedgefund.shell.risk import RiskAdapter

    profile = _profile(max_drawdown=0.10)
    metrics = PerformanceMetrics(total_return=-0.12, max_drawdown=0.18)
    commentary = await HeuristicAdvisor().analyze_performance(metrics, profile)

    assert commentary.recommendations[0].priority is Priority.HIGH
    assert commentary.rating == 2
    RiskAdapter().adapt(profile, commentary)
    assert profile.position_size_factor == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_heuristic_allocation_matches_synthesis():
    from hedgefund.orchestrator.advisor import HeuristicAdvisor
    from hedgefund.shell.contract import MarketAnalysis, StrategyScore

    scores = {"a": StrategyScore(30, 0.3), "b": StrategyScore(90, 0.9)}
    raw = await HeuristicAdvisor().optimize_allocation(scores, _profile(), MarketAnalysis.neutral())
    assert raw == pytest.approx({"a": 0.25, "b": 0.75})


# --- AI advisor ---

@pytest.mark.asyncio
async def test_ai_advisor_parses_fenced_reply():
    from hedgefund.orchestrator.advisor import AIAdvisor
    from hedgefund.shell.contract import Trend

    ai = MagicMock()
    ai.ask = AsyncMock(return_value='```json\n{"market_trend": "bearish", "volatility_assessment": "low"}\n```')
    analysis = await AIAdvisor(ai).analyze_market(_snapshot([_asset("BTC/USD", 100.0, -2.0)]))

    assert analysis.trend is Trend.BEARISH
    assert "BTC/USD" in ai.ask.call_args.args[0]


@pytest.mark.asyncio
async def test_ai_advisor_degrades_on_garbage():
    from hedgefund.orchestrator.advisor import AIAdvisor
    from hedgefund.shell.contract import MarketAnalysis, PerformanceMetrics, StrategyScore, Trend

    ai = MagicMock()
    ai.ask = AsyncMock(return_value="I would rather not say.")
    advisor = AIAdvisor(ai)

    analysis = await advisor.analyze_market(_snapshot([]))
    assert analysis.trend is Trend.NEUTRAL
    allocation = await advisor.optimize_allocation({"a": StrategyScore(50, 0.5)}, _profile(), MarketAnalysis.neutral())
    assert allocation == {}
    commentary = await advisor.analyze_performance(PerformanceMetrics(), _profile())
    assert commentary.recommendations == ()


@pytest.mark.asyncio
async def test_ai_advisor_unwraps_nested_allocation():
    from hedgefund.orchestrator.advisor import AIAdvisor
    from hedgefund.shell.contract import MarketAnalysis, StrategyScore

    ai = MagicMock()
    ai.ask = AsyncMock(return_value=json.dumps({"allocation": {"a": 0.7, "b": 0.3}, "reasoning": "..."}))
    allocation = await AIAdvisor(ai).optimize_allocation(
        {"a": StrategyScore(70, 0.7), "b": StrategyScore(30, 0.3)}, _profile(), MarketAnalysis.neutral(),
    )
    assert allocation == {"a": 0.7, "b": 0.3}


@pytest.mark.asyncio
async def test_ai_advisor_propagates_api_errors():
    from hedgefund.orchestrator.advisor import AIAdvisor

    ai = MagicMock()
    ai.ask = AsyncMock(side_effect=RuntimeError("401 unauthorized"))
    with pytest.raises(RuntimeError):
        await AIAdvisor(ai).analyze_market(_snapshot([]))


# --- AI client ---

def _response(text, input_tokens=10, output_tokens=5):
    return SimpleNamespace(
        content=[SimpleNamespace(text=text)],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


@pytest.mark.asyncio
async def test_ai_client_tracks_tokens():
    from hedgefund.orchestrator.ai_client import AIClient
    from hedgefund.shell.config import AIConfig

    client = MagicMock()
    client.messages.create = AsyncMock(return_value=_response('{"ok": true}'))
    ai = AIClient(AIConfig(), client=client)

    text = await ai.ask("hello", system="be brief", purpose="test")
    assert text == '{"ok": true}'
    assert ai.tokens_used_today == 15
    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["system"] == "be brief"
    assert kwargs["model"] == AIConfig().model


@pytest.mark.asyncio
async def test_ai_client_daily_limit():
    from hedgefund.errors import AdvisoryError
    from hedgefund.orchestrator.ai_client import AIClient
    from hedgefund.shell.config import AIConfig

    client = MagicMock()
    client.messages.create = AsyncMock(return_value=_response("{}"))
    ai = AIClient(AIConfig(daily_token_limit=10), client=client)

    await ai.ask("first")
    with pytest.raises(AdvisoryError):
        await ai.ask("second")
    assert client.messages.create.await_count == 1


@pytest.mark.asyncio
async def test_ai_client_retries_transient_errors():
    from hedgefund.orchestrator.ai_client import AIClient
    from hedgefund.shell.config import AIConfig

    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=[Exception("529 overloaded"), _response("{}")])
    ai = AIClient(AIConfig(), client=client)

    with patch("hedgefund.orchestrator.ai_client.asyncio.sleep", new=AsyncMock()) as sleep:
        assert await ai.ask("hi") == "{}"
    assert client.messages.create.await_count == 2
    sleep.assert_awaited_once_with(1)


@pytest.mark.asyncio
async def test_ai_client_gives_up_after_three_attempts():
    from unittest.mock import call
    from hedgefund.orchestrator.ai_client import MAX_RETRIES, AIClient
    from hedgefund.shell.config import AIConfig

    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=Exception("529 overloaded"))
    ai = AIClient(AIConfig(), client=client)

    with patch("hedgefund.orchestrator.ai_client.asyncio.sleep", new=AsyncMock()) as sleep:
        with pytest.raises(Exception, match="overloaded"):
            await ai.ask("hi")
    assert client.messages.create.await_count == MAX_RETRIES == 3
    assert sleep.await_args_list == [call(1), call(2)]


@pytest.mark.asyncio
async def test_ai_client_does_not_retry_permanent_errors():
    from hedgefund.orchestrator.ai_client import AIClient
    from hedgefund.shell.config import AIConfig

    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=ValueError("invalid request"))
    ai = AIClient(AIConfig(), client=client)

    with pytest.raises(ValueError):
        await ai.ask("hi")
    assert client.messages.create.await_count == 1


@pytest.mark.asyncio
async def test_ai_client_requires_initialize():
    from hedgefund.orchestrator.ai_client import AIClient
    from hedgefund.shell.config import AIConfig

    with pytest.raises(RuntimeError):
        await AIClient(AIConfig()).ask("hi")


# --- Strategies ---

@pytest.mark.asyncio
async def test_momentum_buys_strongest_mover():
    from hedgefund.shell.contract import CapitalAllocation, TradeResult
    from hedgefund.strategies.momentum import MomentumStrategy

    wallet = MagicMock()
    wallet.execute_trade = AsyncMock(return_value=TradeResult(
        strategy="", asset="ETH/USD", side="buy", amount=0.5, price=2000.0,
    ))
    strategy = MomentumStrategy(wallet)
    snapshot = _snapshot([
        _asset("ETH/USD", 2000.0, 8.0, volatility=0.1),
        _asset("SOL/USD", 100.0, 4.0, volatility=0.1),
        _asset("USDC/USD", 1.0, 9.0),
    ])
    allocation = CapitalAllocation(weight=0.5, capital_usd=500.0, portfolio_value_usd=1000.0)

    result = await strategy.execute(snapshot, allocation, _profile(exposure=0.25))

    assert result.strategy == "momentum"
    asset, qty, is_buy = wallet.execute_trade.call_args.args
    assert asset == "ETH/USD"
    assert is_buy is True
    # 500 capital capped at 25% of 1000
    assert qty == pytest.approx(250.0 / 2000.0)


@pytest.mark.asyncio
async def test_momentum_without_signal_returns_failed_trade():
    from hedgefund.shell.contract import CapitalAllocation
    from hedgefund.strategies.momentum import MomentumStrategy

    wallet = MagicMock()
    wallet.execute_trade = AsyncMock()
    snapshot = _snapshot([_asset("BTC/USD", 100.0, 1.0)])
    result = await MomentumStrategy(wallet).execute(
        snapshot, CapitalAllocation(1.0, 1000.0, 1000.0), _profile(),
    )
    assert not result.success
    wallet.execute_trade.assert_not_awaited()


@pytest.mark.asyncio
async def test_momentum_score_bounds():
    from hedgefund.strategies.momentum import MomentumStrategy
    strategy = MomentumStrategy(MagicMock())

    calm = await strategy.evaluate(_snapshot([_asset("A/USD", 1.0, 6.0)], volatility=0.1, trend=1.0))
    assert calm.score == pytest.approx(50 + 20 + 10 + 2)
    wild = await strategy.evaluate(_snapshot([], volatility=0.9, trend=0.0))
    assert wild.score == pytest.approx(35)
    assert 0.0 <= wild.confidence <= 1.0


def test_find_arbitrage_opportunities():
    from hedgefund.strategies.arbitrage import find_opportunities

    snapshot = _snapshot([
        _asset("BTC/USD", 100.0, 0.0, venues={"A": (100.0, 50_000), "B": (102.0, 50_000), "C": (100.2, 50_000)}),
        _asset("ETH/USD", 100.0, 0.0, venues={"A": (100.0, 5_000), "B": (110.0, 50_000)}),   # too thin
        _asset("SOL/USD", 100.0, 0.0, venues={"A": (100.0, 50_000), "B": (100.3, 50_000)}),  # spread too small
    ])
    opportunities = find_opportunities(snapshot)

    assert {o.symbol for o in opportunities} == {"BTC/USD"}
    best = opportunities[0]
    assert (best.buy_venue, best.sell_venue) == ("A", "B")
    assert best.spread == pytest.approx(0.02)


@pytest.mark.asyncio
async def test_arbitrage_evaluate_and_execute():
    from hedgefund.shell.contract import CapitalAllocation, TradeResult
    from hedgefund.strategies.arbitrage import ArbitrageStrategy

    wallet = MagicMock()
    wallet.execute_trade = AsyncMock(return_value=TradeResult(
        strategy="", asset="BTC/USD", side="buy", amount=1.0, price=100.0,
    ))
    strategy = ArbitrageStrategy(wallet)
    snapshot = _snapshot([
        _asset("BTC/USD", 100.0, 0.0, venues={"A": (100.0, 50_000), "B": (101.0, 50_000)}),
    ])

    score = await strategy.evaluate(snapshot)
    assert score.score == 60.0

    result = await strategy.execute(snapshot, CapitalAllocation(0.1, 100.0, 1000.0), _profile(psf=0.5))
    assert result.strategy == "arbitrage"
    assert wallet.execute_trade.call_args.args[1] == pytest.approx(0.5)

    empty = await strategy.evaluate(_snapshot([]))
    assert empty.score == 25.0


def test_strategy_registry():
    from hedgefund.strategies.registry import build_strategies

    strategies = build_strategies(["arbitrage", "momentum"], MagicMock())
    assert list(strategies) == ["arbitrage", "momentum"]
    assert strategies["momentum"].name == "momentum"
    with pytest.raises(ValueError):
        build_strategies(["copy_trading"], MagicMock())


def test_order_quantity_caps_exposure():
    from hedgefund.shell.contract import CapitalAllocation
    from hedgefund.strategies.sizing import is_stablecoin, order_quantity

    allocation = CapitalAllocation(weight=1.0, capital_usd=1000.0, portfolio_value_usd=1000.0)
    assert order_quantity(10.0, allocation, _profile(exposure=0.1)) == pytest.approx(10.0)
    assert order_quantity(0.0, allocation, _profile()) == 0.0
    assert is_stablecoin("USDT/USD")
    assert not is_stablecoin("BTC/USD")


# --- Market data ---

@pytest.mark.asyncio
async def test_simulated_feed_is_reproducible():
    from hedgefund.market.data_feed import SimulatedMarketData

    symbols = ["BTC/USD", "ETH/USD"]
    a = SimulatedMarketData(symbols, seed=11, venues=["X", "Y"])
    b = SimulatedMarketData(symbols, seed=11, venues=["X", "Y"])
    snap_a = await a.get_snapshot()
    snap_b = await b.get_snapshot()

    assert snap_a.assets["BTC/USD"].price == snap_b.assets["BTC/USD"].price
    assert 0.0 <= snap_a.volatility_index <= 1.0
    assert 0.0 <= snap_a.sentiment_score <= 100.0
    assert set(snap_a.assets["ETH/USD"].exchanges) == {"X", "Y"}
    assert a.last_price("ETH/USD") == snap_a.assets["ETH/USD"].price
    assert a.last_price("XRP/USD") is None


def test_parse_kraken_ticker():
    from hedgefund.market.data_feed import parse_ticker

    ticker = {
        "c": ["105.0", "0.1"],
        "o": "100.0",
        "h": ["106.0", "110.0"],
        "l": ["99.0", "99.0"],
        "v": ["50.0", "200.0"],
    }
    asset = parse_ticker("SOL/USD", ticker)
    assert asset.price == 105.0
    assert asset.price_change_24h == pytest.approx(5.0)
    assert asset.volatility == pytest.approx(11.0 / 105.0)
    assert asset.volume_24h == pytest.approx(200.0 * 105.0)


@pytest.mark.asyncio
async def test_kraken_feed_snapshot():
    from hedgefund.market.data_feed import KrakenMarketData

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/0/public/Ticker"
        assert request.url.params["pair"] == "XBTUSD"
        return httpx.Response(200, json={"error": [], "result": {"XXBTZUSD": {
            "c": ["65000.0", "0.01"], "o": "64000.0",
            "h": ["65500.0", "66000.0"], "l": ["63000.0", "62000.0"], "v": ["10.0", "120.0"],
        }}})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    feed = KrakenMarketData(["BTC/USD"], rest_url="https://kraken.test", client=client)
    snapshot = await feed.get_snapshot()
    await feed.close()

    assert snapshot.assets["BTC/USD"].price == 65000.0
    assert feed.last_price("BTC/USD") == 65000.0
    assert snapshot.trend_strength == 1.0


@pytest.mark.asyncio
async def test_kraken_feed_api_error():
    from hedgefund.market.data_feed import KrakenMarketData

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": ["EQuery:Unknown asset pair"], "result": {}})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    feed = KrakenMarketData(["FOO/USD"], rest_url="https://kraken.test", client=client)
    with pytest.raises(RuntimeError):
        await feed.get_snapshot()
    await feed.close()


# --- Application wiring ---

@pytest.mark.asyncio
async def test_app_builds_and_runs_paper_cycle():
    from hedgefund.main import HedgeFundApp
    from hedgefund.orchestrator.orchestrator import AgentState
    from hedgefund.shell.config import Config

    config = Config()
    config.market.seed = 7
    app = HedgeFundApp(config)
    orch = app.build()

    assert orch.strategy_ids == ["momentum", "arbitrage"]
    assert await orch.run_cycle() is True
    assert orch.state is AgentState.AWAITING_NEXT_CYCLE
    assert sum(orch.status().current_allocation.values()) == pytest.approx(1.0)

    await app.stop()
    assert orch.state is AgentState.STOPPED
