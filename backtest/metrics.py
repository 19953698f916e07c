from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any

import numpy as np
import pandas as pd

from utils.numeric import clamp

TRADING_DAYS = 252
RATIO_LIMIT = 10.0
PROFIT_FACTOR_CAP = 99.0


@dataclass(frozen=True)
class BacktestSummary:
    template_id: str
    total_return_pct: float = 0.0
    cagr_pct: float = 0.0
    max_drawdown_pct: float = 0.0
    sharpe: float = 0.0
    sortino: float = 0.0
    calmar: float = 0.0
    win_rate_pct: float = 0.0
    profit_factor: float = 0.0
    average_holding_days: float = 0.0
    trades: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def max_drawdown(equity: pd.Series | np.ndarray) -> float:
    """Most negative ``equity / running_peak - 1`` (0 for an empty curve)."""
    values = np.asarray(equity, dtype=float)
    if values.size == 0:
        return 0.0
    peaks = np.maximum.accumulate(values)
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdowns = values / peaks - 1.0
    drawdowns = drawdowns[np.isfinite(drawdowns)]
    if drawdowns.size == 0:
        return 0.0
    return float(min(drawdowns.min(), 0.0))


def daily_returns(equity: pd.Series | np.ndarray) -> np.ndarray:
    """Bar-over-bar returns, skipping bars whose previous equity is not positive."""
    values = np.asarray(equity, dtype=float)
    if values.size < 2:
        return np.array([])
    prev = values[:-1]
    cur = values[1:]
    keep = prev > 0
    return cur[keep] / prev[keep] - 1.0


def _sample_std(values: np.ndarray) -> float:
    if values.size <= 1:
        return 0.0
    return float(np.std(values, ddof=1))


def sharpe_sortino(returns: np.ndarray) -> tuple[float, float]:
    if returns.size == 0:
        return 0.0, 0.0
    avg = float(np.mean(returns))
    std = _sample_std(returns)
    downside = returns[returns < 0]
    downside_std = _sample_std(downside) if downside.size else 0.0
    sharpe = avg / std * math.sqrt(TRADING_DAYS) if std > 1e-12 else 0.0
    sortino = avg / downside_std * math.sqrt(TRADING_DAYS) if downside_std > 1e-12 else 0.0
    return sharpe, sortino


def compute_summary(template_id: str, equity_curve: pd.DataFrame, trades: pd.DataFrame) -> BacktestSummary:
    """Summarize an equity curve (``date, equity``) and its trade log."""
    equity = equity_curve["equity"].to_numpy(dtype=float) if not equity_curve.empty else np.array([1.0])
    final_equity = float(equity[-1])
    total_return = final_equity - 1.0

    years = max((len(equity) - 1) / TRADING_DAYS, 1.0 / TRADING_DAYS)
    if final_equity > 0:
        try:
            cagr = final_equity ** (1.0 / years) - 1.0
        except OverflowError:
            cagr = 0.0
    else:
        cagr = -1.0
    if not math.isfinite(cagr):
        cagr = 0.0

    sharpe, sortino = sharpe_sortino(daily_returns(equity))
    mdd = max_drawdown(equity)
    calmar = cagr / abs(mdd) if mdd < 0 else 0.0

    trade_count = int(len(trades))
    if trade_count:
        net = trades["net_return_pct"].astype(float)
        wins = net[net > 0]
        losses = net[net < 0]
        win_rate = len(wins) / trade_count
        gross_profit = float(wins.sum())
        gross_loss = float(losses.abs().sum())
        if gross_loss > 1e-12:
            profit_factor = gross_profit / gross_loss
        else:
            profit_factor = PROFIT_FACTOR_CAP if gross_profit > 0 else 0.0
        avg_hold = float(trades["holding_days"].astype(float).mean())
    else:
        win_rate = 0.0
        profit_factor = 0.0
        avg_hold = 0.0

    return BacktestSummary(
        template_id=template_id,
        total_return_pct=total_return * 100.0,
        cagr_pct=cagr * 100.0,
        max_drawdown_pct=mdd * 100.0,
        sharpe=clamp(sharpe, -RATIO_LIMIT, RATIO_LIMIT),
        sortino=clamp(sortino, -RATIO_LIMIT, RATIO_LIMIT),
        calmar=clamp(calmar, -RATIO_LIMIT, RATIO_LIMIT),
        win_rate_pct=win_rate * 100.0,
        profit_factor=float(profit_factor),
        average_holding_days=avg_hold,
        trades=trade_count,
    )


__all__ = ["BacktestSummary", "compute_summary", "daily_returns", "max_drawdown", "sharpe_sortino"]
