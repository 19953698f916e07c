"""Single-position, close-to-close replay of a crash strategy template."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import numpy as np
import pandas as pd

from crash_engine.types import CrashEvent
from market_data.candles import frame_to_records

from .metrics import BacktestSummary, compute_summary
from .templates import MA200_RECLAIM, MEAN_REBOUND, BacktestParams, merge_backtest_params, parse_template_id

log = logging.getLogger(__name__)

MIN_POINTS = 3

TRADE_COLUMNS = [
    "entry_date",
    "exit_date",
    "entry_price",
    "exit_price",
    "gross_return_pct",
    "net_return_pct",
    "holding_days",
    "exit_reason",
]


@dataclass(frozen=True)
class BacktestResult:
    summary: BacktestSummary
    equity_curve: pd.DataFrame
    trades: pd.DataFrame

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "equity_curve": frame_to_records(self.equity_curve),
            "trades": frame_to_records(self.trades),
        }


def _event_days(events: Iterable[CrashEvent | Any]) -> set[pd.Timestamp]:
    days: set[pd.Timestamp] = set()
    for event in events:
        if isinstance(event, CrashEvent):
            raw = event.date
        elif isinstance(event, Mapping):
            raw = event["date"]
        else:
            raw = event
        days.add(pd.Timestamp(raw).normalize())
    return days


def _column(frame: pd.DataFrame, name: str) -> np.ndarray:
    if name not in frame.columns:
        return np.full(len(frame), np.nan)
    return pd.to_numeric(frame[name], errors="coerce").to_numpy(dtype=float)


def _empty_trades() -> pd.DataFrame:
    return pd.DataFrame({col: pd.Series(dtype=object if col == "exit_reason" else float) for col in TRADE_COLUMNS})


def run_backtest(
    template_id: str,
    scored_points: pd.DataFrame | Iterable[Mapping[str, Any]],
    events: Iterable[CrashEvent | Any],
    params: Mapping[str, Any] | BacktestParams | None = None,
) -> BacktestResult:
    """Replay ``template_id`` over ``scored_points`` and summarize the result.

    ``scored_points`` needs ``date`` and ``close`` plus, depending on the
    template, ``crash_score``/``rsi`` or ``sma200``/``slope200``. ``events``
    are the retained crash events, their ``to_dict`` records, or their dates.
    Entries and exits fill at the bar's close; at most one position is open
    at a time.
    """
    template = parse_template_id(template_id)
    resolved = merge_backtest_params(params)

    frame = scored_points.copy() if isinstance(scored_points, pd.DataFrame) else pd.DataFrame(list(scored_points))
    if not frame.empty:
        frame["date"] = pd.to_datetime(frame["date"]).dt.normalize()
    frame = frame.reset_index(drop=True)

    if len(frame) < MIN_POINTS:
        dates = frame["date"] if "date" in frame.columns else pd.Series(dtype="datetime64[ns]")
        curve = pd.DataFrame({"date": dates, "equity": np.ones(len(frame))})
        return BacktestResult(BacktestSummary(template_id=template), curve, _empty_trades())

    event_days = _event_days(events)
    dates = list(frame["date"])
    is_event = np.array([d in event_days for d in dates])
    close = _column(frame, "close")
    score = _column(frame, "crash_score")
    rsi = _column(frame, "rsi")
    sma = _column(frame, "sma200")
    slope = _column(frame, "slope200")

    fee = resolved.fee_rate
    cash = 1.0
    qty = 0.0
    entry_price = 0.0
    entry_date: pd.Timestamp | None = None
    entry_index = -1
    entry_capital = 1.0
    armed_until = -1

    equity = [1.0]
    trades: list[dict[str, Any]] = []

    for i in range(1, len(frame)):
        prev = i - 1
        if is_event[prev]:
            armed_until = i + resolved.arm_window_days

        if qty == 0:
            enter = False
            if template == MEAN_REBOUND and is_event[prev]:
                prev_score = 0.0 if np.isnan(score[prev]) else score[prev]
                enter = (
                    prev_score >= resolved.entry_threshold
                    and not np.isnan(rsi[prev])
                    and rsi[prev] <= resolved.rsi_max
                )
            elif template == MA200_RECLAIM and armed_until >= i:
                enter = (
                    not np.isnan(sma[i])
                    and not np.isnan(slope[i])
                    and close[i] > sma[i]
                    and slope[i] > 0
                )

            if enter:
                effective_entry = close[i] * (1.0 + fee)
                if effective_entry > 0:
                    qty = cash / effective_entry
                    entry_price = float(close[i])
                    entry_date = dates[i]
                    entry_index = i
                    entry_capital = cash
                    cash = 0.0
        else:
            hold_days = i - entry_index
            gross_return = close[i] / entry_price - 1.0

            if gross_return >= resolved.take_profit_pct / 100.0:
                exit_reason = "take-profit"
            elif gross_return <= resolved.stop_loss_pct / 100.0:
                exit_reason = "stop-loss"
            elif template == MA200_RECLAIM and not np.isnan(sma[i]) and close[i] < sma[i]:
                exit_reason = "trend-break"
            elif hold_days >= resolved.max_hold_days:
                exit_reason = "max-hold"
            elif i == len(frame) - 1:
                exit_reason = "end-of-data"
            else:
                exit_reason = ""

            if exit_reason:
                cash = qty * close[i] * (1.0 - fee)
                trades.append(
                    {
                        "entry_date": entry_date,
                        "exit_date": dates[i],
                        "entry_price": entry_price,
                        "exit_price": float(close[i]),
                        "gross_return_pct": float(gross_return * 100.0),
                        "net_return_pct": float((cash / entry_capital - 1.0) * 100.0),
                        "holding_days": int(hold_days),
                        "exit_reason": exit_reason,
                    }
                )
                qty = 0.0
                entry_price = 0.0
                entry_date = None
                entry_index = -1

        equity.append(float(qty * close[i]) if qty > 0 else cash)

    curve = pd.DataFrame({"date": frame["date"], "equity": equity})
    trades_df = pd.DataFrame(trades, columns=TRADE_COLUMNS) if trades else _empty_trades()
    summary = compute_summary(template, curve, trades_df)
    log.info(
        "run_backtest template=%s points=%d trades=%d total_return_pct=%.4f",
        template,
        len(frame),
        summary.trades,
        summary.total_return_pct,
    )
    return BacktestResult(summary, curve, trades_df)


__all__ = ["BacktestResult", "TRADE_COLUMNS", "run_backtest"]
