from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

import numpy as np
import pandas as pd

from market_data.candles import frame_to_records, normalize_candles
from market_data.schemas import CANDLE_COLUMNS
from market_data.symbols import is_index_symbol

from .features import (
    compute_atr,
    compute_rsi,
    compute_streak,
    percent_rank,
    rolling_max,
    rolling_min,
    rolling_sma,
    rolling_std,
    rolling_sum,
)
from .params import IndicatorParams, merge_indicator_params

log = logging.getLogger(__name__)

FEATURE_COLUMNS = [
    "day_return_pct",
    "z_score",
    "rsi",
    "crsi",
    "drawdown_rate",
    "drawdown_speed5",
    "drawdown_speed10",
    "drawdown_speed",
    "atr",
    "atr_pct",
    "volume_shock",
    "sma200",
    "slope200",
    "below200",
    "regime200",
    "gap_down_pct",
    "gap_down_freq",
    "is_52w_low",
    "breadth",
]
BOOLEAN_COLUMNS = ("below200", "is_52w_low")
INDICATOR_COLUMNS = CANDLE_COLUMNS + FEATURE_COLUMNS


@dataclass(frozen=True)
class IndicatorResult:
    points: pd.DataFrame
    params: IndicatorParams
    symbol: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "count": int(len(self.points)),
            "params": self.params.to_dict(),
            "points": frame_to_records(self.points),
        }


def _empty_points() -> pd.DataFrame:
    frame = pd.DataFrame({col: pd.Series(dtype=float) for col in INDICATOR_COLUMNS})
    frame["date"] = pd.Series(dtype="datetime64[ns]")
    for col in BOOLEAN_COLUMNS:
        frame[col] = pd.Series(dtype="boolean")
    return frame


def _ratio(numer: pd.Series, denom: pd.Series) -> pd.Series:
    """numer / denom with NaN wherever the divisor is zero or missing."""
    with np.errstate(divide="ignore", invalid="ignore"):
        out = numer / denom
    return out.where(denom.notna() & (denom != 0))


def _flag(condition: pd.Series, defined: pd.Series) -> pd.Series:
    return condition.astype("boolean").mask(~defined)


def compute_indicators(
    candles: pd.DataFrame | Iterable[Mapping[str, Any]] | None,
    symbol: str | None = None,
    params: Mapping[str, Any] | IndicatorParams | None = None,
) -> IndicatorResult:
    """Derive the crash feature columns for every candle.

    Candles are normalized first (calendar-day dates, ascending, one row per
    day). The returned frame has one row per normalized candle, in the same
    order, with NaN / NA marking values whose lookback is not yet satisfied
    or whose divisor is zero.
    """
    resolved = merge_indicator_params(params)
    working = normalize_candles(candles)
    log.debug("compute_indicators symbol=%s rows=%d params=%s", symbol, len(working), resolved)
    if working.empty:
        return IndicatorResult(_empty_points(), resolved, symbol)

    close = working["close"]
    open_ = working["open"]
    high = working["high"]
    low = working["low"]
    volume = working["volume"]
    prev_close = close.shift(1)

    day_return_pct = _ratio(close - prev_close, prev_close) * 100.0
    working["day_return_pct"] = day_return_pct

    # Z-score of close against its rolling mean
    z_mean = rolling_sma(close, resolved.z_score.window)
    z_std = rolling_std(close, resolved.z_score.window)
    working["z_score"] = _ratio(close - z_mean, z_std)

    working["rsi"] = compute_rsi(close, resolved.rsi.window)

    # Connors-style RSI: short RSI, streak RSI, percentile of daily returns
    short_rsi = compute_rsi(close, resolved.crsi.rsi_window)
    streak_rsi = compute_rsi(compute_streak(close), resolved.crsi.streak_window)
    return_rank = percent_rank(day_return_pct.fillna(0.0), resolved.crsi.rank_window)
    working["crsi"] = (short_rsi + streak_rsi + return_rank) / 3.0

    peak = rolling_max(close, resolved.drawdown.lookback)
    working["drawdown_rate"] = _ratio(close, peak) - 1.0

    speed_fast = _ratio(close, close.shift(resolved.drawdown_speed.window1)) - 1.0
    speed_slow = _ratio(close, close.shift(resolved.drawdown_speed.window2)) - 1.0
    working["drawdown_speed5"] = speed_fast
    working["drawdown_speed10"] = speed_slow
    working["drawdown_speed"] = pd.concat([speed_fast, speed_slow], axis=1).min(axis=1)

    atr = compute_atr(high, low, close, resolved.atr.window)
    working["atr"] = atr
    working["atr_pct"] = _ratio(atr, close) * 100.0

    volume_mean = rolling_sma(volume, resolved.volume_shock.window)
    working["volume_shock"] = _ratio(volume, volume_mean)

    # Trend regime against the long moving average
    sma = rolling_sma(close, resolved.ma200.window)
    slope = sma - sma.shift(resolved.ma200.slope_lookback)
    below = close < sma
    falling = slope < 0
    regime = pd.Series(
        np.where(below & falling, 1.0, np.where(below | falling, 0.6, 0.0)),
        index=working.index,
    )
    working["sma200"] = sma
    working["slope200"] = slope
    working["below200"] = _flag(below, sma.notna())
    working["regime200"] = regime.where(sma.notna() & slope.notna())

    gap_pct = _ratio(open_ - prev_close, prev_close) * 100.0
    gap_flag = (gap_pct <= resolved.gap_down.threshold_pct).astype(float).where(gap_pct.notna())
    working["gap_down_pct"] = gap_pct
    working["gap_down_freq"] = rolling_sum(gap_flag, resolved.gap_down.window)

    floor = rolling_min(close, resolved.low52w.window)
    working["is_52w_low"] = _flag(close <= floor, floor.notna())

    if is_index_symbol(symbol):
        up_day = (close > prev_close).astype(float).where(prev_close.notna())
        working["breadth"] = rolling_sma(up_day, resolved.breadth.window) * 100.0
    else:
        working["breadth"] = np.nan

    for col in FEATURE_COLUMNS:
        if col not in BOOLEAN_COLUMNS:
            working[col] = working[col].astype(float).replace([np.inf, -np.inf], np.nan)

    return IndicatorResult(working[INDICATOR_COLUMNS].copy(), resolved, symbol)


def points_to_records(points: pd.DataFrame) -> list[dict[str, Any]]:
    return frame_to_records(points)


__all__ = [
    "BOOLEAN_COLUMNS",
    "FEATURE_COLUMNS",
    "INDICATOR_COLUMNS",
    "IndicatorResult",
    "compute_indicators",
    "points_to_records",
]
