"""Synthetic candles, points and events shared by the test modules."""
from __future__ import annotations

import math
from typing import Any

import pandas as pd

from crash_engine.types import CrashEvent, CrashFeature

BASE_DATE = pd.Timestamp("2020-01-01")


def date_at(offset_days: int) -> pd.Timestamp:
    return BASE_DATE + pd.Timedelta(days=offset_days)


def iso_at(offset_days: int) -> str:
    return date_at(offset_days).strftime("%Y-%m-%d")


def build_synthetic_candles(
    length: int,
    start_price: float = 100.0,
    drift: float = 0.22,
    wave: float = 0.9,
) -> pd.DataFrame:
    """Upward drifting series with periodic sell-off shocks."""
    rows = []
    prev_close = start_price
    for i in range(length):
        base_move = drift + math.sin(i / 9) * wave
        if i % 67 == 0:
            shock = -6.0
        elif i % 89 == 0:
            shock = -8.0
        elif i % 41 == 0:
            shock = 3.0
        else:
            shock = 0.0
        close = max(1.0, prev_close + base_move + shock)
        open_ = prev_close + math.sin(i / 5) * 0.4
        rows.append(
            {
                "date": iso_at(i),
                "open": open_,
                "high": max(open_, close) + 1.4,
                "low": min(open_, close) - 1.1,
                "close": close,
                "volume": 100_000 + (i % 12) * 4_000 + round(abs(shock) * 1_500),
            }
        )
        prev_close = close
    return pd.DataFrame(rows)


def build_crash_candles(
    length: int = 320,
    crash_at: int = 290,
    crash_days: int = 8,
    drop_pct: float = 5.0,
) -> pd.DataFrame:
    """Calm uptrend broken by ``crash_days`` consecutive gap-down sell-offs."""
    rows = []
    prev_close = 100.0
    for i in range(length):
        if crash_at <= i < crash_at + crash_days:
            open_ = prev_close * 0.97
            close = prev_close * (1 - drop_pct / 100)
            volume = 450_000
        elif i >= crash_at + crash_days:
            open_ = prev_close
            close = prev_close + 0.1
            volume = 120_000
        else:
            close = 100 + i * 0.2 + math.sin(i / 6) * 1.5
            open_ = prev_close + math.sin(i / 4) * 0.3
            volume = 100_000 + (i % 7) * 3_000
        rows.append(
            {
                "date": iso_at(i),
                "open": open_,
                "high": max(open_, close) + 0.5,
                "low": min(open_, close) - 0.5,
                "close": close,
                "volume": volume,
            }
        )
        prev_close = close
    return pd.DataFrame(rows)


def build_point(index: int, **overrides: Any) -> dict[str, Any]:
    """One scored-point row with plausible defaults."""
    close = overrides.pop("close", 100.0)
    row = {
        "date": date_at(index),
        "open": close,
        "high": close + 1,
        "low": close - 1,
        "close": close,
        "volume": 100_000.0,
        "day_return_pct": 0.0,
        "z_score": -1.2,
        "rsi": 30.0,
        "crsi": 24.0,
        "drawdown_rate": -0.12,
        "drawdown_speed5": -0.04,
        "drawdown_speed10": -0.08,
        "drawdown_speed": -0.08,
        "atr": 2.4,
        "atr_pct": 2.3,
        "volume_shock": 1.6,
        "sma200": 110.0,
        "slope200": -0.2,
        "below200": True,
        "regime200": 1.0,
        "gap_down_pct": -1.1,
        "gap_down_freq": 2.4,
        "is_52w_low": False,
        "breadth": 42.0,
        "crash_score": float("nan"),
    }
    row.update(overrides)
    return row


def build_points(rows: list[dict[str, Any]]) -> pd.DataFrame:
    return pd.DataFrame(rows)


def build_full_metrics(**overrides: float) -> dict[CrashFeature, float]:
    metrics = {
        CrashFeature.DRAWDOWN_RATE: -0.24,
        CrashFeature.DRAWDOWN_SPEED: -0.1,
        CrashFeature.ATR_PCT: 3.8,
        CrashFeature.VOLUME_SHOCK: 2.1,
        CrashFeature.REGIME200: 1.0,
        CrashFeature.GAP_DOWN_FREQ: 3.0,
        CrashFeature.Z_SCORE: -2.4,
        CrashFeature.RSI: 23.0,
        CrashFeature.CRSI: 19.0,
        CrashFeature.LOW52W: 1.0,
        CrashFeature.BREADTH: 35.0,
    }
    for key, value in overrides.items():
        metrics[CrashFeature(key)] = float(value)
    return metrics


def build_crash_event(
    index: int,
    crash_score: float | None,
    severity: float | None = None,
    metrics: dict[CrashFeature, float] | None = None,
    symbol: str = "^N225",
) -> CrashEvent:
    return CrashEvent(
        index=index,
        date=date_at(index),
        crash_score=crash_score,
        severity=severity if severity is not None else float(crash_score or 0.0),
        signals={},
        metrics=metrics if metrics is not None else build_full_metrics(),
        symbol=symbol,
    )
