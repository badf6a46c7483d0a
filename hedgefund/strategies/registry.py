"""Maps strategy names used in settings.toml to their factories."""

from __future__ import annotations

from typing import Callable, Iterable

from hedgefund.shell.contract import StrategyBase, WalletPort
from hedgefund.strategies.arbitrage import ArbitrageStrategy
from hedgefund.strategies.momentum import MomentumStrategy

STRATEGY_FACTORIES: dict[str, Callable[[WalletPort], StrategyBase]] = {
    "momentum": MomentumStrategy,
    "arbitrage": ArbitrageStrategy,
}


def build_strategies(names: Iterable[str], wallet: WalletPort) -> dict[str, StrategyBase]:
    """Instantiate the named strategies, keyed by name, in the given order."""
    strategies = {}
    for name in names:
        try:
            factory = STRATEGY_FACTORIES[name]
        except KeyError:
            raise ValueError(f"Unknown strategy '{name}' (known: {sorted(STRATEGY_FACTORIES)})") from None
        strategies[name] = factory(wallet)
    return strategies
