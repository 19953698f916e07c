import json

import pytest

from crash_engine.scan_runner import (
    BACKTEST_RANGE,
    CRASH_SCAN_RANGE,
    SIMILARITY_RANGE,
    CrashScanParams,
    run_backtest_scan,
    run_compare_scan,
    run_crash_scan,
    run_crash_scans,
    run_similarity_scan,
)
from market_data.provider import MarketData, MarketDataError
from market_data.candles import normalize_candles
from helpers import build_synthetic_candles


class FakeFetcher:
    def __init__(self, length=320, failing=(), broken=()):
        self.length = length
        self.failing = set(failing)
        self.broken = set(broken)
        self.calls = []

    def __call__(self, symbol, source="chart", range="max", **kwargs):
        self.calls.append((symbol, source, range))
        if symbol in self.failing:
            raise MarketDataError(f"Yahoo API error for {symbol}: Not Found")
        if symbol in self.broken:
            raise KeyError("close")
        candles = normalize_candles(build_synthetic_candles(self.length))
        return MarketData(candles, {"symbol": symbol, "currency": "JPY", "exchange_name": "OSA", "timezone": "Asia/Tokyo"})


def test_run_crash_scan_payload():
    fetcher = FakeFetcher()
    payload = run_crash_scan(CrashScanParams("^N225", threshold=0), fetcher=fetcher)

    assert fetcher.calls == [("^N225", "chart", CRASH_SCAN_RANGE)]
    assert payload["symbol"] == "^N225"
    assert payload["meta"]["currency"] == "JPY"
    assert payload["threshold"] == 0.0
    assert payload["cooling_days"] == 10
    assert payload["count"] == len(payload["events"]) > 0
    assert len(payload["points"]) == 320
    assert "signals" in payload["points"][0]
    assert payload["ranking"][0]["severity"] >= payload["ranking"][-1]["severity"]
    # the payload is plain JSON
    json.dumps(payload)


def test_run_crash_scan_with_inline_candles_skips_fetch():
    fetcher = FakeFetcher()
    payload = run_crash_scan(
        CrashScanParams("7203.T", mode="single", cooling_days=3),
        candles=build_synthetic_candles(260),
        fetcher=fetcher,
    )
    assert fetcher.calls == []
    assert payload["mode"] == "single"
    assert payload["meta"] == {"symbol": "7203.T"}
    for event in payload["events"]:
        assert event["metrics"]["drawdown_rate"] <= -0.15


def test_run_similarity_scan_uses_detected_events():
    fetcher = FakeFetcher()
    params = CrashScanParams("^N225", threshold=0, cooling_days=5)
    scan = run_crash_scan(params, fetcher=fetcher)
    target = scan["ranking"][0]["date"]

    payload = run_similarity_scan(params, target, top_n=2, pre_days=5, post_days=10, fetcher=fetcher)
    assert fetcher.calls[-1][2] == SIMILARITY_RANGE
    assert payload["target_date"] == target
    assert payload["count"] == len(payload["matches"]) <= 2
    assert all(m["date"] != target for m in payload["matches"])


def test_run_backtest_scan_payload():
    fetcher = FakeFetcher()
    payload = run_backtest_scan(
        CrashScanParams("^N225", threshold=0),
        "ma200-reclaim",
        backtest_params={"armWindowDays": 60},
        fetcher=fetcher,
    )
    assert fetcher.calls[-1][2] == BACKTEST_RANGE
    assert payload["template_id"] == "ma200-reclaim"
    assert len(payload["equity_curve"]) == 320
    assert payload["equity_curve"][0]["equity"] == 1.0
    assert payload["summary"]["trades"] == len(payload["trades"])

    with pytest.raises(ValueError):
        run_backtest_scan(CrashScanParams("^N225"), "hold-forever", fetcher=fetcher)


def test_run_crash_scans_isolates_failures():
    fetcher = FakeFetcher(length=260, failing={"BAD"})
    batch = [CrashScanParams(s, threshold=0) for s in ("^N225", "BAD", "7203.T")]
    report = run_crash_scans(batch, max_workers=3, fetcher=fetcher)

    assert set(report["results"]) == {"^N225", "7203.T"}
    assert set(report["errors"]) == {"BAD"}
    assert "Not Found" in report["errors"]["BAD"]
    assert run_crash_scans([], fetcher=fetcher) == {"results": {}, "errors": {}}


def test_params_from_settings_with_overrides():
    settings = {
        "detection": {"mode": "single", "threshold": 55, "cooling_days": 4},
        "weights": {"rsi": 0.3},
        "indicator_params": {},
    }
    params = CrashScanParams.from_settings("^GSPC", settings, threshold=80, mode=None)
    assert params.mode == "single"
    assert params.threshold == 80
    assert params.cooling_days == 4
    assert params.weights == {"rsi": 0.3}
    assert params.indicator_params is None

    bare = CrashScanParams.from_settings("^GSPC", None)
    assert bare.mode == "score" and bare.threshold is None


def test_run_crash_scans_reports_unexpected_errors(caplog):
    fetcher = FakeFetcher(length=260, broken={"A", "B"})
    batch = [CrashScanParams(s, threshold=0) for s in ("A", "^N225", "B")]
    with caplog.at_level("ERROR"):
        report = run_crash_scans(batch, max_workers=2, fetcher=fetcher)

    assert set(report["results"]) == {"^N225"}
    assert report["errors"] == {"A": "KeyError: 'close'", "B": "KeyError: 'close'"}
    assert any("run_crash_scans" in rec.getMessage() for rec in caplog.records)


def test_run_compare_scan_defaults_to_worst_events():
    fetcher = FakeFetcher()
    params = CrashScanParams("^N225", threshold=0, cooling_days=5)
    ranking = run_crash_scan(params, fetcher=fetcher)["ranking"]

    payload = run_compare_scan(params, pre_days=5, post_days=10, fetcher=fetcher)
    assert fetcher.calls[-1][2] == SIMILARITY_RANGE
    assert payload["count"] == len(payload["windows"]) <= 4
    assert [w["event"]["date"] for w in payload["windows"]] == [e["date"] for e in ranking[: payload["count"]]]
    for window in payload["windows"]:
        assert window["window"][0]["close"] == pytest.approx(100.0)
        assert window["window"][window["marker_index"]]["offset"] == 0

    picked = run_compare_scan(params, [ranking[-1]["date"]], fetcher=fetcher)
    assert [w["event"]["date"] for w in picked["windows"]] == [ranking[-1]["date"]]
