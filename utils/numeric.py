"""Numeric utility helpers."""

from __future__ import annotations

import math
from typing import Any

import numpy as np
import pandas as pd


def safe_float(x: Any) -> float:
    """Best effort float conversion handling iterables and NaNs.

    Parameters
    ----------
    x : Any
        Value to convert. If ``x`` is a pandas Series or other iterable,
        the first element is used. ``None`` or invalid inputs result in
        ``numpy.nan``.

    Returns
    -------
    float
        Converted float or ``numpy.nan`` when conversion is not possible.
    """
    if isinstance(x, pd.Series):
        x = x.iloc[0] if not x.empty else np.nan
    elif isinstance(x, (np.ndarray, list, tuple)):
        x = x[0] if len(x) else np.nan

    if x is None or x is pd.NA:
        return np.nan
    try:
        if pd.isna(x):
            return np.nan
        return float(x)
    except (TypeError, ValueError):
        return np.nan


def optional_float(x: Any) -> float | None:
    """Return ``float(x)`` when finite, otherwise ``None``."""
    value = safe_float(x)
    if math.isfinite(value):
        return value
    return None


def clamp(value: float, lower: float, upper: float) -> float:
    return min(upper, max(lower, value))


__all__ = ["safe_float", "optional_float", "clamp"]
