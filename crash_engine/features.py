"""Rolling statistics and oscillators shared by the indicator pipeline.

Every helper is pure: it takes a numeric sequence (list, ndarray or Series)
and returns a new float Series aligned with the input. Positions whose
lookback is not yet satisfied hold ``NaN``.
"""

from __future__ import annotations

from typing import Literal, Sequence, Union

import numpy as np
import pandas as pd
from numpy.lib.stride_tricks import sliding_window_view

ArrayLike = Union[Sequence[float], np.ndarray, pd.Series]
Direction = Literal["high-is-bad", "low-is-bad"]

MAD_SCALE = 1.4826
SCALE_CLIP = 3.5


def _as_series(values: ArrayLike) -> pd.Series:
    if isinstance(values, pd.Series):
        return values.astype(float)
    return pd.Series(np.asarray(values, dtype=float))


def _check_window(window: int) -> int:
    window = int(window)
    if window <= 0:
        raise ValueError(f"window must be positive, got {window}")
    return window


def rolling_sma(values: ArrayLike, window: int) -> pd.Series:
    window = _check_window(window)
    return _as_series(values).rolling(window, min_periods=window).mean()


def rolling_std(values: ArrayLike, window: int) -> pd.Series:
    """Sample standard deviation; a single-bar window yields NaN.

    Constant windows return exactly 0 (the online rolling variance leaves a
    tiny residual there otherwise).
    """
    window = _check_window(window)
    series = _as_series(values)
    rolling = series.rolling(window, min_periods=window)
    std = rolling.std(ddof=1)
    return std.mask(rolling.max() == rolling.min(), 0.0)


def rolling_sum(values: ArrayLike, window: int) -> pd.Series:
    window = _check_window(window)
    return _as_series(values).rolling(window, min_periods=window).sum()


def rolling_max(values: ArrayLike, window: int) -> pd.Series:
    window = _check_window(window)
    return _as_series(values).rolling(window, min_periods=window).max()


def rolling_min(values: ArrayLike, window: int) -> pd.Series:
    window = _check_window(window)
    return _as_series(values).rolling(window, min_periods=window).min()


def _rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0 and avg_gain == 0:
        return 50.0
    if avg_loss == 0:
        return 100.0
    if avg_gain == 0:
        return 0.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def compute_rsi(values: ArrayLike, window: int) -> pd.Series:
    """Wilder RSI seeded with the plain average of the first ``window`` moves."""
    window = _check_window(window)
    series = _as_series(values)
    arr = series.to_numpy()
    out = np.full(len(arr), np.nan)
    if len(arr) <= window:
        return pd.Series(out, index=series.index)

    diffs = np.diff(arr)
    gains = np.clip(diffs, 0.0, None)
    losses = np.clip(-diffs, 0.0, None)

    avg_gain = float(gains[:window].sum() / window)
    avg_loss = float(losses[:window].sum() / window)
    out[window] = _rsi_from_averages(avg_gain, avg_loss)

    for i in range(window + 1, len(arr)):
        avg_gain = (avg_gain * (window - 1) + gains[i - 1]) / window
        avg_loss = (avg_loss * (window - 1) + losses[i - 1]) / window
        out[i] = _rsi_from_averages(avg_gain, avg_loss)

    return pd.Series(out, index=series.index)


def true_range(high: ArrayLike, low: ArrayLike, close: ArrayLike) -> pd.Series:
    high_s = _as_series(high)
    low_s = _as_series(low).set_axis(high_s.index)
    prev_close = _as_series(close).set_axis(high_s.index).shift(1)
    # max() skips the NaN previous close on the first bar, leaving high - low
    return pd.concat(
        [
            high_s - low_s,
            (high_s - prev_close).abs(),
            (low_s - prev_close).abs(),
        ],
        axis=1,
    ).max(axis=1)


def _wilder_rma(tr: pd.Series, window: int) -> pd.Series:
    """Return Wilder's moving average (RMA) seeded with the SMA of the first window."""

    values = tr.astype(float).to_numpy()
    out = np.full_like(values, fill_value=np.nan, dtype=float)
    if len(values) < window:
        return pd.Series(out, index=tr.index)

    seed = float(np.mean(values[:window]))
    out[window - 1] = seed
    prev = seed

    for i in range(window, len(values)):
        prev = ((window - 1) * prev + values[i]) / window
        out[i] = prev

    return pd.Series(out, index=tr.index)


def compute_atr(high: ArrayLike, low: ArrayLike, close: ArrayLike, window: int) -> pd.Series:
    """Average True Range, Wilder-smoothed."""
    window = _check_window(window)
    return _wilder_rma(true_range(high, low, close), window)


def compute_streak(values: ArrayLike) -> pd.Series:
    """Signed count of consecutive up (+) or down (-) closes; ties reset to 0."""
    series = _as_series(values)
    arr = series.to_numpy()
    out = np.zeros(len(arr))
    for i in range(1, len(arr)):
        if arr[i] > arr[i - 1]:
            out[i] = out[i - 1] + 1 if out[i - 1] >= 0 else 1
        elif arr[i] < arr[i - 1]:
            out[i] = out[i - 1] - 1 if out[i - 1] <= 0 else -1
        else:
            out[i] = 0
    return pd.Series(out, index=series.index)


def percent_rank(values: ArrayLike, window: int) -> pd.Series:
    """Share (0-100) of the previous ``window`` values that are <= the current one."""
    window = _check_window(window)
    series = _as_series(values)
    arr = series.to_numpy()
    out = np.full(len(arr), np.nan)
    if len(arr) <= window:
        return pd.Series(out, index=series.index)

    frames = sliding_window_view(arr, window + 1)
    counts = (frames[:, :-1] <= frames[:, -1:]).sum(axis=1)
    out[window:] = counts / window * 100.0
    return pd.Series(out, index=series.index)


def robust_center_scale(reference: ArrayLike) -> tuple[float, float]:
    """Median and robust spread of the finite values in ``reference``."""
    ref = np.asarray(reference, dtype=float)
    ref = ref[np.isfinite(ref)]
    if ref.size == 0:
        return 0.0, 1.0
    med = float(np.median(ref))
    mad = float(np.median(np.abs(ref - med)))
    if mad > 1e-9:
        return med, mad * MAD_SCALE
    std = float(np.std(ref, ddof=0))
    if std > 1e-9:
        return med, std
    return med, 1.0


def robust_scale(value, reference: ArrayLike, direction: Direction):
    """Map ``value`` onto 0-100 via a clipped median/MAD z-score.

    ``value`` may be a scalar or an array; the return type follows it.
    With ``direction="low-is-bad"`` lower raw values score higher.
    """
    if direction not in ("high-is-bad", "low-is-bad"):
        raise ValueError(f"unknown direction: {direction}")
    med, denom = robust_center_scale(reference)
    z = (np.asarray(value, dtype=float) - med) / denom
    if direction == "low-is-bad":
        z = -z
    scaled = (np.clip(z, -SCALE_CLIP, SCALE_CLIP) + SCALE_CLIP) / (2 * SCALE_CLIP) * 100.0
    if np.ndim(scaled) == 0:
        return float(scaled)
    return scaled


__all__ = [
    "compute_atr",
    "compute_rsi",
    "compute_streak",
    "percent_rank",
    "robust_center_scale",
    "robust_scale",
    "rolling_max",
    "rolling_min",
    "rolling_sma",
    "rolling_std",
    "rolling_sum",
    "true_range",
]
