import numpy as np
import pandas as pd
import pytest

from crash_engine.features import (
    compute_atr,
    compute_rsi,
    compute_streak,
    percent_rank,
    robust_center_scale,
    robust_scale,
    rolling_max,
    rolling_sma,
    rolling_std,
    true_range,
)


def test_rolling_windows_are_nan_until_full():
    values = [1.0, 2.0, 3.0, 4.0]
    sma = rolling_sma(values, 3)
    assert sma.isna().tolist() == [True, True, False, False]
    assert sma.iloc[2] == pytest.approx(2.0)
    assert rolling_max(values, 2).iloc[-1] == pytest.approx(4.0)
    assert rolling_std(values, 3).iloc[-1] == pytest.approx(1.0)


def test_rolling_rejects_non_positive_window():
    with pytest.raises(ValueError):
        rolling_sma([1.0, 2.0], 0)


def test_rsi_warm_up_and_seed():
    closes = [100, 101, 102, 101, 103, 104, 103, 105, 106, 107]
    rsi = compute_rsi(closes, 3)
    assert rsi.iloc[:3].isna().all()
    assert rsi.iloc[3:].notna().all()
    # seed over the first three moves: +1, +1, -1
    assert rsi.iloc[3] == pytest.approx(100 - 100 / (1 + (2 / 3) / (1 / 3)))


def test_rsi_flat_series_is_neutral_and_monotonic_series_saturates():
    assert compute_rsi([5.0] * 6, 3).iloc[-1] == pytest.approx(50.0)
    assert compute_rsi([1.0, 2.0, 3.0, 4.0, 5.0], 3).iloc[-1] == pytest.approx(100.0)
    assert compute_rsi([5.0, 4.0, 3.0, 2.0, 1.0], 3).iloc[-1] == pytest.approx(0.0)


def test_rsi_short_series_is_all_nan():
    assert compute_rsi([1.0, 2.0], 3).isna().all()


def test_atr_seed_is_mean_of_first_true_ranges():
    tr_values = np.array([1.0, 2.0, 3.0, 4.0, 5.0])
    base = 50.0
    highs = pd.Series(base + tr_values / 2.0)
    lows = pd.Series(base - tr_values / 2.0)
    close = pd.Series(np.full(len(tr_values), base))

    atr = compute_atr(highs, lows, close, 3)

    assert atr.iloc[:2].isna().all()
    assert atr.iloc[2] == pytest.approx(2.0)
    assert atr.iloc[3] == pytest.approx((2.0 * 2 + 4.0) / 3.0)


def test_true_range_uses_previous_close_gap():
    tr = true_range([10.0, 12.0], [9.0, 11.0], [9.5, 11.5])
    assert tr.iloc[0] == pytest.approx(1.0)
    assert tr.iloc[1] == pytest.approx(2.5)


def test_streak_counts_runs_and_resets_on_ties():
    streak = compute_streak([1, 2, 3, 2, 1, 1, 2])
    assert streak.tolist() == [0, 1, 2, -1, -2, 0, 1]


def test_percent_rank_compares_against_previous_window():
    ranks = percent_rank([1.0, 2.0, 3.0, 0.5, 2.5], 2)
    assert ranks.iloc[:2].isna().all()
    assert ranks.iloc[2] == pytest.approx(100.0)
    assert ranks.iloc[3] == pytest.approx(0.0)
    assert ranks.iloc[4] == pytest.approx(50.0)


def test_robust_scale_median_maps_to_fifty_and_clips():
    reference = np.arange(1.0, 21.0)
    med, _ = robust_center_scale(reference)
    assert robust_scale(med, reference, "high-is-bad") == pytest.approx(50.0)
    assert robust_scale(1e9, reference, "high-is-bad") == pytest.approx(100.0)
    assert robust_scale(1e9, reference, "low-is-bad") == pytest.approx(0.0)
    assert robust_scale(-1e9, reference, "low-is-bad") == pytest.approx(100.0)


def test_robust_scale_falls_back_to_std_then_one():
    # MAD is zero here but the population std is not
    reference = [1.0, 1.0, 1.0, 1.0, 5.0]
    med, denom = robust_center_scale(reference)
    assert med == pytest.approx(1.0)
    assert denom == pytest.approx(np.std(reference))

    assert robust_center_scale([3.0, 3.0, 3.0]) == (3.0, 1.0)
    assert robust_center_scale([]) == (0.0, 1.0)


def test_robust_scale_vectorized_and_rejects_unknown_direction():
    out = robust_scale(np.array([0.0, 10.0]), np.arange(0.0, 11.0), "high-is-bad")
    assert isinstance(out, np.ndarray)
    assert out[0] < out[1]
    with pytest.raises(ValueError):
        robust_scale(1.0, [1.0, 2.0], "sideways")


def test_rolling_std_is_exactly_zero_on_flat_windows():
    values = list(np.linspace(50.0, 100.0, 60)) + [1234.567] * 30
    std = rolling_std(values, 20)
    assert (std.iloc[-10:] == 0.0).all()
    assert std.iloc[59] > 0
