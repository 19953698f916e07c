import math

import numpy as np
import pandas as pd
import pytest

from crash_engine.indicators import compute_indicators
from crash_engine.similarity import (
    compare_event_windows,
    cosine_distance,
    dtw_distance,
    euclidean_distance,
    feature_vector,
    find_similar_events,
    min_max_normalize,
    standardize,
)
from crash_engine.types import CrashFeature
from helpers import build_crash_event, build_full_metrics, date_at, iso_at


def _wave_candles(length=220):
    rows = []
    for i in range(length):
        wave = math.sin(i / 8) * 1.2
        if i in (80, 81):
            shock = -7.0
        elif i in (100, 101):
            shock = -6.8
        elif i == 120:
            shock = 4.4
        elif i == 140:
            shock = -2.5
        else:
            shock = 0.0
        close = 100 + i * 0.12 + wave + shock
        rows.append(
            {
                "date": iso_at(i),
                "open": close - 0.2,
                "high": close + 0.8,
                "low": close - 0.9,
                "close": close,
                "volume": 100_000 + (i % 5) * 2_000,
            }
        )
    return pd.DataFrame(rows)


def _events():
    return [
        build_crash_event(80, 90.0, metrics=build_full_metrics()),
        build_crash_event(
            100,
            88.0,
            metrics=build_full_metrics(
                drawdown_rate=-0.238, drawdown_speed=-0.098, atr_pct=3.75, volume_shock=2.05, z_score=-2.35
            ),
        ),
        build_crash_event(
            120,
            45.0,
            metrics=build_full_metrics(
                drawdown_rate=-0.08,
                drawdown_speed=-0.02,
                atr_pct=1.1,
                volume_shock=1.1,
                regime200=0,
                z_score=-0.4,
                rsi=52,
                crsi=57,
                low52w=0,
                breadth=58,
            ),
        ),
        build_crash_event(
            140,
            68.0,
            metrics=build_full_metrics(
                drawdown_rate=-0.19, drawdown_speed=-0.07, atr_pct=2.9, volume_shock=1.8, z_score=-1.8, rsi=30, crsi=29
            ),
        ),
    ]


def test_closest_event_ranks_in_top_two_and_outlier_excluded():
    result = find_similar_events(_wave_candles(), _events(), iso_at(80), top_n=2, pre_days=10, post_days=20)

    assert result.target_date == date_at(80)
    assert len(result.matches) == 2
    top_dates = [m.date for m in result.matches]
    assert date_at(100) in top_dates
    assert date_at(120) not in top_dates

    near = next(m for m in result.matches if m.date == date_at(100))
    assert 0 <= near.similarity_score <= 100
    assert len(near.reasons) >= 3
    assert near.reasons[-1].feature == "price_path"
    assert near.reasons[-1].note.startswith("price path DTW distance=")
    assert near.metrics[CrashFeature.DRAWDOWN_RATE] == pytest.approx(-0.238)


def test_matches_sorted_and_target_excluded():
    result = find_similar_events(_wave_candles(), _events(), pd.Timestamp("2020-03-21"), top_n=10)
    scores = [m.similarity_score for m in result.matches]
    assert scores == sorted(scores, reverse=True)
    assert date_at(80) not in [m.date for m in result.matches]
    assert len(result.matches) == 3
    payload = result.to_dict()
    assert payload["target_date"] == "2020-03-21"
    assert set(payload["matches"][0]) == {
        "date",
        "similarity_score",
        "combined_distance",
        "feature_distance",
        "dtw_distance",
        "reasons",
        "metrics",
    }


def test_missing_target_returns_empty():
    assert find_similar_events(_wave_candles(), _events(), iso_at(81)).matches == []
    # target event exists but its date is outside the candles
    short = _wave_candles(50)
    assert find_similar_events(short, _events(), iso_at(80)).matches == []


def test_events_with_missing_metrics_are_skipped():
    events = _events()
    partial = build_full_metrics()
    del partial[CrashFeature.BREADTH]
    events[1] = build_crash_event(100, 88.0, metrics=partial)
    assert feature_vector(events[1]) is None
    result = find_similar_events(_wave_candles(), events, iso_at(80), top_n=5)
    assert date_at(100) not in [m.date for m in result.matches]
    assert len(result.matches) == 2


def test_missing_crash_score_counts_as_zero():
    event = build_crash_event(5, None, severity=1.0)
    vec = feature_vector(event)
    assert vec is not None
    assert len(vec) == 12
    assert vec[-1] == 0.0


def test_distance_helpers():
    assert dtw_distance([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == 0.0
    assert dtw_distance([0.0, 0.0], [1.0, 1.0]) == pytest.approx(2.0 / 4.0)
    assert math.isinf(dtw_distance([], [1.0]))
    assert euclidean_distance([0, 0], [3, 4]) == pytest.approx(5.0)
    assert cosine_distance([1, 0], [0, 1]) == pytest.approx(1.0)
    assert cosine_distance([1, 1], [2, 2]) == pytest.approx(0.0)
    assert cosine_distance([0, 0], [1, 1]) == 1.0
    assert min_max_normalize([2.0, 2.0]).tolist() == [0.5, 0.5]
    assert min_max_normalize([1.0, 3.0, 2.0]).tolist() == [0.0, 1.0, 0.5]


def test_standardize_uses_sample_std_and_flat_floor():
    matrix = np.array([[1.0, 5.0], [3.0, 5.0]])
    out = standardize(matrix)
    assert out[:, 0] == pytest.approx([-1 / math.sqrt(2), 1 / math.sqrt(2)])
    assert out[:, 1] == pytest.approx([0.0, 0.0])


def test_compare_windows_default_to_leading_events():
    candles = _wave_candles()
    points = compute_indicators(candles).points
    windows = compare_event_windows(candles, points, _events(), pre_days=10, post_days=20)

    assert [w.event.index for w in windows] == [80, 100, 120, 140]
    first = windows[0]
    assert first.marker_index == 10
    assert len(first.window) == 31
    assert first.window["close"].iloc[0] == pytest.approx(100.0)
    marker = first.window.iloc[first.marker_index]
    assert marker["offset"] == 0
    assert marker["date"] == date_at(80)
    expected_rsi = points.set_index("date")["rsi"].loc[date_at(70) : date_at(100)].to_numpy()
    assert first.window["rsi"].to_numpy() == pytest.approx(expected_rsi, nan_ok=True)
    payload = first.to_dict()
    assert payload["event"]["date"] == iso_at(80)
    assert payload["length"] == 31
    assert payload["window"][0]["date"] == iso_at(70)


def test_compare_windows_follow_selected_dates():
    candles = _wave_candles()
    events = _events()
    chosen = compare_event_windows(candles, None, events, [iso_at(120), "2020-01-02", iso_at(80), iso_at(120)])
    assert [w.event.index for w in chosen] == [120, 80]
    assert chosen[0].window["sma200"].isna().all()

    assert [w.event.index for w in compare_event_windows(candles, None, events, [iso_at(140)], limit=1)] == [140]
    fallback = compare_event_windows(candles, None, events, ["1999-01-01"], limit=2)
    assert [w.event.index for w in fallback] == [80, 100]


def test_compare_window_clips_and_rebases_sma():
    candles = _wave_candles()
    points = compute_indicators(candles).points
    event = build_crash_event(215, 80.0)
    (window,) = compare_event_windows(candles, points, [event], pre_days=5, post_days=20)

    assert window.marker_index == 5
    assert len(window.window) == 10
    base = candles["close"].iloc[210]
    expected_sma = points["sma200"].iloc[210] / base * 100
    assert window.window["sma200"].iloc[0] == pytest.approx(expected_sma)

    with pytest.raises(ValueError):
        compare_event_windows(candles, points, [event], limit=-1)
