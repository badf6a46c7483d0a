"""Performance metric calculations.

Turns successive portfolio valuations into PerformanceMetrics. Daily returns
are keyed by calendar date; a second valuation on the same day overwrites
that day's return instead of appending a new one.
"""

from __future__ import annotations

from datetime import datetime, timezone

import numpy as np
import pandas as pd
import structlog

from hedgefund.shell.contract import PerformanceMetrics

log = structlog.get_logger()

RISK_FREE_DAILY = 0.0003  # 0.03% per day


def compute_return_statistics(daily_returns: dict[str, float]) -> dict[str, float]:
    """Volatility, Sharpe, drawdown and win/loss stats from a date -> return map."""
    stats = {
        "volatility": 0.0,
        "sharpe_ratio": 0.0,
        "max_drawdown": 0.0,
        "win_rate": 0.0,
        "average_win": 0.0,
        "average_loss": 0.0,
        "profit_factor": 0.0,
    }
    if not daily_returns:
        return stats

    returns = pd.Series(daily_returns, dtype=float).sort_index()

    if len(returns) > 1:
        vol = float(returns.std(ddof=0))
        stats["volatility"] = vol
        if vol > 0:
            stats["sharpe_ratio"] = float((returns.mean() - RISK_FREE_DAILY) / vol)

    wealth = np.concatenate(([1.0], (1.0 + returns).cumprod().to_numpy()))
    peak = np.maximum.accumulate(wealth)
    drawdowns = np.where(peak > 0, (peak - wealth) / peak, 0.0)
    stats["max_drawdown"] = float(drawdowns.max())

    wins = returns[returns > 0]
    losses = returns[returns < 0]
    stats["win_rate"] = len(wins) / len(returns)
    stats["average_win"] = float(wins.mean()) if len(wins) else 0.0
    stats["average_loss"] = float(losses.mean()) if len(losses) else 0.0
    loss_total = float(losses.sum())
    if loss_total < 0:
        stats["profit_factor"] = float(wins.sum()) / abs(loss_total)

    return stats


class PerformanceTracker:
    """Maintains PerformanceMetrics across cycles.

    The orchestrator owns the tracker; readers get snapshots.
    """

    def __init__(self, initial_value: float | None = None) -> None:
        self._initial_value = initial_value
        self._metrics = PerformanceMetrics()
        self._last_value: float | None = None
        self._last_date: str | None = None
        self._day_open: float | None = None

    @property
    def metrics(self) -> PerformanceMetrics:
        return self._metrics.snapshot()

    @property
    def initial_value(self) -> float | None:
        return self._initial_value

    def update(self, portfolio_value: float, now: datetime | None = None) -> PerformanceMetrics:
        """Fold one valuation into the metrics. Returns a snapshot."""
        now = now or datetime.now(timezone.utc)
        today = now.date().isoformat()

        if self._initial_value is None:
            self._initial_value = portfolio_value

        if today != self._last_date:
            self._day_open = self._last_value if self._last_value is not None else self._initial_value
            self._last_date = today

        daily_return = portfolio_value / self._day_open - 1.0 if self._day_open else 0.0
        total_return = portfolio_value / self._initial_value - 1.0 if self._initial_value else 0.0

        daily_returns = dict(self._metrics.daily_returns)
        daily_returns[today] = daily_return

        stats = compute_return_statistics(daily_returns)
        self._metrics = PerformanceMetrics(
            total_return=total_return,
            daily_returns=daily_returns,
            **stats,
        )
        self._last_value = portfolio_value

        log.info("performance.updated", value=round(portfolio_value, 2),
                 total_return=f"{total_return:.2%}", today=f"{daily_return:.2%}",
                 sharpe=round(self._metrics.sharpe_ratio, 4))
        return self._metrics.snapshot()
