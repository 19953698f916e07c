import math

import numpy as np
import pandas as pd
import pytest

from market_data.candles import candles_frame, frame_to_records, normalize_candles


def _row(date, close=10.0, volume=1000.0):
    return {"date": date, "open": close, "high": close + 1, "low": close - 1, "close": close, "volume": volume}


def test_normalize_sorts_truncates_and_dedupes():
    raw = [
        _row("2021-01-05T15:30:00Z", close=12.0),
        _row("2021-01-04", close=11.0),
        _row("2021-01-05", close=13.0),
    ]
    out = normalize_candles(raw)
    assert list(out["date"]) == [pd.Timestamp("2021-01-04"), pd.Timestamp("2021-01-05")]
    assert out["date"].is_monotonic_increasing
    # last row in sorted order wins for a duplicated day
    assert out["close"].iloc[-1] == pytest.approx(13.0)


def test_normalize_accepts_title_case_and_datetime_index():
    idx = pd.DatetimeIndex(["2022-03-02", "2022-03-01"], tz="America/New_York", name="Date")
    df = pd.DataFrame({"Open": [1.0, 2.0], "High": [2.0, 3.0], "Low": [0.5, 1.5], "Close": [1.5, 2.5]}, index=idx)
    out = normalize_candles(df)
    assert list(out.columns) == ["date", "open", "high", "low", "close", "volume"]
    assert out["date"].dt.tz is None
    assert out["close"].tolist() == [2.5, 1.5]
    assert (out["volume"] == 0).all()


def test_missing_required_column_raises():
    with pytest.raises(ValueError, match="close"):
        candles_frame([{"date": "2021-01-01", "open": 1, "high": 1, "low": 1}])


@pytest.mark.parametrize(
    "bad",
    [
        _row("not-a-date"),
        _row("2021-01-01", close=float("nan")),
        _row("2021-01-01", close=float("inf")),
        _row("2021-01-01", volume=-5),
    ],
)
def test_invalid_candles_raise(bad):
    with pytest.raises(ValueError):
        normalize_candles([_row("2020-12-31"), bad])


def test_empty_input_yields_empty_frame():
    assert normalize_candles([]).empty
    assert normalize_candles(None).empty


def test_frame_to_records_converts_missing_and_dates():
    df = pd.DataFrame(
        {
            "date": [pd.Timestamp("2021-01-04")],
            "value": [np.nan],
            "flag": pd.array([pd.NA], dtype="boolean"),
            "count": [np.int64(3)],
            "ratio": [np.float64(0.5)],
        }
    )
    rec = frame_to_records(df)[0]
    assert rec == {"date": "2021-01-04", "value": None, "flag": None, "count": 3, "ratio": 0.5}
    assert not any(isinstance(v, float) and math.isnan(v) for v in rec.values())
