from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

import numpy as np
import pandas as pd

from .schemas import CANDLE_COLUMNS, PRICE_COLUMNS

log = logging.getLogger(__name__)

_COLUMN_ALIASES = {
    "date": "date",
    "datetime": "date",
    "timestamp": "date",
    "index": "date",
    "open": "open",
    "high": "high",
    "low": "low",
    "close": "close",
    "volume": "volume",
}


def _normalize_key(col: Any) -> str:
    return str(col).strip().lower().replace(" ", "_")


def candles_frame(candles: pd.DataFrame | Iterable[Mapping[str, Any]] | None) -> pd.DataFrame:
    """Return a DataFrame with lower-case ``date, open, high, low, close, volume`` columns.

    Accepts a DataFrame (date either as a column or as the index) or any
    iterable of candle mappings. Extra columns are dropped; a missing volume
    column becomes zeros.
    """
    if candles is None:
        return pd.DataFrame(columns=CANDLE_COLUMNS)
    if isinstance(candles, pd.DataFrame):
        working = candles.copy()
        if isinstance(working.index, pd.DatetimeIndex) and not any(
            _normalize_key(c) in {"date", "datetime", "timestamp"} for c in working.columns
        ):
            working = working.reset_index()
    else:
        working = pd.DataFrame(list(candles))

    if working.empty and len(working.columns) == 0:
        return pd.DataFrame(columns=CANDLE_COLUMNS)

    rename_map: dict[Any, str] = {}
    for col in working.columns:
        target = _COLUMN_ALIASES.get(_normalize_key(col))
        if target and target not in rename_map.values():
            rename_map[col] = target
    working = working.rename(columns=rename_map)

    missing = [c for c in ["date", *PRICE_COLUMNS] if c not in working.columns]
    if missing:
        raise ValueError(f"Missing required candle columns: {', '.join(missing)}")
    if "volume" not in working.columns:
        working["volume"] = 0.0

    return working[CANDLE_COLUMNS].reset_index(drop=True)


def _coerce_dates(raw: pd.Series) -> pd.Series:
    if pd.api.types.is_datetime64_any_dtype(raw):
        dates = raw
        if getattr(dates.dt, "tz", None) is not None:
            # Drop timezone without shifting wall-clock time
            dates = dates.dt.tz_localize(None)
        return dates.dt.normalize()
    text = raw.map(lambda v: v if isinstance(v, str) else (None if pd.isna(v) else str(v)))
    return pd.to_datetime(text.str.slice(0, 10), format="%Y-%m-%d", errors="coerce")


def validate_candles(df: pd.DataFrame) -> None:
    """Raise ``ValueError`` for unparseable dates, non-finite prices or bad volume."""
    if df is None or df.empty:
        return
    if df["date"].isna().any():
        raise ValueError("Candle 'date' values must be calendar dates (YYYY-MM-DD)")
    for col in PRICE_COLUMNS + ["volume"]:
        values = pd.to_numeric(df[col], errors="coerce").to_numpy(dtype=float)
        if not np.isfinite(values).all():
            raise ValueError(f"Candle column '{col}' contains missing or non-finite values")
    if (pd.to_numeric(df["volume"]) < 0).any():
        raise ValueError("Candle 'volume' must be non-negative")


def normalize_candles(candles: pd.DataFrame | Iterable[Mapping[str, Any]] | None) -> pd.DataFrame:
    """Validated candles truncated to calendar days and sorted ascending.

    Rows sharing a day collapse to the last one in sorted order.
    """
    working = candles_frame(candles)
    if working.empty:
        return working
    working["date"] = _coerce_dates(working["date"])
    validate_candles(working)
    for col in PRICE_COLUMNS + ["volume"]:
        working[col] = pd.to_numeric(working[col]).astype(float)

    before = len(working)
    working = working.sort_values("date", kind="mergesort").drop_duplicates(subset=["date"], keep="last")
    if len(working) != before:
        log.debug("normalize_candles: dropped %d duplicate dates", before - len(working))
    return working.reset_index(drop=True)


def frame_to_records(df: pd.DataFrame | None) -> list[dict[str, Any]]:
    """JSON-shaped rows: ISO dates, ``None`` for NaN/NA, plain Python scalars."""
    if df is None or df.empty:
        return []
    records: list[dict[str, Any]] = []
    for row in df.to_dict(orient="records"):
        out: dict[str, Any] = {}
        for key, value in row.items():
            if isinstance(value, pd.Timestamp):
                out[key] = value.strftime("%Y-%m-%d")
            elif isinstance(value, (dict, list, tuple)):
                out[key] = value
            elif value is None or pd.isna(value):
                out[key] = None
            elif isinstance(value, (bool, np.bool_)):
                out[key] = bool(value)
            elif isinstance(value, (int, np.integer)):
                out[key] = int(value)
            elif isinstance(value, (float, np.floating)):
                out[key] = float(value) if np.isfinite(value) else None
            else:
                out[key] = value
        records.append(out)
    return records


__all__ = ["candles_frame", "frame_to_records", "normalize_candles", "validate_candles"]
