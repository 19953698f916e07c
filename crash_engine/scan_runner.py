from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import pandas as pd

from backtest.simulator import run_backtest
from market_data.candles import frame_to_records, normalize_candles
from market_data.provider import MarketData, MarketDataError, fetch_candles

from .crash_detection import CrashDetectionResult, detect_crash_events, scored_points_to_records
from .indicators import IndicatorResult, compute_indicators
from .params import DEFAULT_COOLING_DAYS, DEFAULT_SCORE_THRESHOLD
from .similarity import (
    COMPARE_LIMIT,
    DEFAULT_POST_DAYS,
    DEFAULT_PRE_DAYS,
    DEFAULT_TOP_N,
    compare_event_windows,
    find_similar_events,
)
from .types import CrashEvent

log = logging.getLogger(__name__)

CRASH_SCAN_RANGE = "max"
SIMILARITY_RANGE = "10y"
BACKTEST_RANGE = "5y"

Fetcher = Callable[..., MarketData]


@dataclass(frozen=True)
class CrashScanParams:
    symbol: str
    range: Optional[str] = None
    source: str = "chart"
    mode: str = "score"
    threshold: Optional[float] = None
    cooling_days: Optional[int] = None
    single_rule: Optional[Mapping[str, Any]] = None
    weights: Optional[Mapping[str, Any]] = None
    indicator_params: Optional[Mapping[str, Any]] = None

    @classmethod
    def from_settings(cls, symbol: str, settings: Mapping[str, Any] | None, **overrides: Any) -> "CrashScanParams":
        """Build params from a settings document (see ``market_data.settings``)."""
        settings = settings or {}
        detection = dict(settings.get("detection") or {})
        base = cls(
            symbol=symbol,
            mode=detection.get("mode") or "score",
            threshold=detection.get("threshold"),
            cooling_days=detection.get("cooling_days"),
            single_rule=detection.get("single_rule"),
            weights=settings.get("weights") or None,
            indicator_params=settings.get("indicator_params") or None,
        )
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(base, **changes)


def _log_event(event: str, **fields: object) -> None:
    payload = {"event": event, **fields}
    try:
        log.info("scan_runner %s", json.dumps(payload, default=str))
    except TypeError:
        log.info("scan_runner %s", payload)


def _load_candles(
    params: CrashScanParams,
    default_range: str,
    candles: pd.DataFrame | Iterable[Mapping[str, Any]] | None,
    fetcher: Optional[Fetcher],
) -> tuple[pd.DataFrame, dict[str, Any]]:
    if candles is not None:
        frame = normalize_candles(candles)
        if not frame.empty:
            return frame, {"symbol": params.symbol}
    fetch = fetcher or fetch_candles
    range_ = params.range or default_range
    _log_event("fetch:start", symbol=params.symbol, range=range_, source=params.source)
    market = fetch(params.symbol, source=params.source, range=range_)
    _log_event("fetch:done", symbol=params.symbol, rows=int(len(market.candles)), meta=dict(market.meta))
    return market.candles, dict(market.meta)


def _detect(params: CrashScanParams, candles: pd.DataFrame) -> tuple[IndicatorResult, CrashDetectionResult]:
    indicators = compute_indicators(candles, symbol=params.symbol, params=params.indicator_params)
    detection = detect_crash_events(
        indicators.points,
        mode=params.mode,
        threshold=params.threshold,
        cooling_days=params.cooling_days,
        symbol=params.symbol,
        single_rule=params.single_rule,
        weights=params.weights,
    )
    return indicators, detection


def run_crash_scan(
    params: CrashScanParams,
    *,
    candles: pd.DataFrame | Iterable[Mapping[str, Any]] | None = None,
    fetcher: Optional[Fetcher] = None,
) -> dict[str, Any]:
    """Candles -> indicators -> scored points -> events, as a JSON-shaped payload."""
    frame, meta = _load_candles(params, CRASH_SCAN_RANGE, candles, fetcher)
    indicators, detection = _detect(params, frame)
    threshold = detection_threshold(params)
    _log_event(
        "crash_scan:done",
        symbol=params.symbol,
        points=int(len(indicators.points)),
        events=len(detection.events),
    )
    return {
        "symbol": params.symbol,
        "meta": meta,
        "mode": params.mode,
        "threshold": threshold,
        "cooling_days": detection_cooling_days(params),
        "count": len(detection.events),
        "events": [e.to_dict() for e in detection.events],
        "ranking": [e.to_dict() for e in detection.ranking],
        "points": scored_points_to_records(detection.scored_points),
        "params": indicators.params.to_dict(),
        "scan_params": _params_payload(params),
    }


def detection_threshold(params: CrashScanParams) -> float:
    return float(params.threshold) if params.threshold is not None else DEFAULT_SCORE_THRESHOLD


def detection_cooling_days(params: CrashScanParams) -> int:
    return int(params.cooling_days) if params.cooling_days is not None else DEFAULT_COOLING_DAYS


def _params_payload(params: CrashScanParams) -> dict[str, Any]:
    payload = asdict(params)
    for key in ("single_rule", "weights", "indicator_params"):
        if payload.get(key) is not None:
            payload[key] = {str(k): v for k, v in dict(payload[key]).items()}
    return payload


def run_similarity_scan(
    params: CrashScanParams,
    target_date: Any,
    *,
    top_n: int = DEFAULT_TOP_N,
    pre_days: int = DEFAULT_PRE_DAYS,
    post_days: int = DEFAULT_POST_DAYS,
    candles: pd.DataFrame | Iterable[Mapping[str, Any]] | None = None,
    events: Sequence[CrashEvent] | None = None,
    fetcher: Optional[Fetcher] = None,
) -> dict[str, Any]:
    """Rank the symbol's historical crash events against the one on ``target_date``.

    Events are detected from the candles unless ``events`` is given.
    """
    frame, meta = _load_candles(params, SIMILARITY_RANGE, candles, fetcher)
    if not events:
        _, detection = _detect(params, frame)
        events = detection.events
    result = find_similar_events(
        frame,
        list(events),
        target_date,
        top_n=top_n,
        pre_days=pre_days,
        post_days=post_days,
    )
    _log_event(
        "similarity_scan:done",
        symbol=params.symbol,
        target_date=result.target_date.strftime("%Y-%m-%d"),
        events=len(events),
        matches=len(result.matches),
    )
    payload = result.to_dict()
    return {"symbol": params.symbol, "meta": meta, "count": len(result.matches), **payload}


def run_compare_scan(
    params: CrashScanParams,
    dates: Sequence[Any] | None = None,
    *,
    pre_days: int = DEFAULT_PRE_DAYS,
    post_days: int = DEFAULT_POST_DAYS,
    limit: int = COMPARE_LIMIT,
    candles: pd.DataFrame | Iterable[Mapping[str, Any]] | None = None,
    fetcher: Optional[Fetcher] = None,
) -> dict[str, Any]:
    """Rebased candle windows for the chosen events (default: the worst ranked)."""
    frame, meta = _load_candles(params, SIMILARITY_RANGE, candles, fetcher)
    indicators, detection = _detect(params, frame)
    windows = compare_event_windows(
        frame,
        indicators,
        detection.ranking,
        dates,
        pre_days=pre_days,
        post_days=post_days,
        limit=limit,
    )
    _log_event("compare_scan:done", symbol=params.symbol, events=len(detection.ranking), windows=len(windows))
    return {
        "symbol": params.symbol,
        "meta": meta,
        "count": len(windows),
        "pre_days": pre_days,
        "post_days": post_days,
        "windows": [w.to_dict() for w in windows],
    }


def run_backtest_scan(
    params: CrashScanParams,
    template_id: str,
    *,
    backtest_params: Mapping[str, Any] | None = None,
    candles: pd.DataFrame | Iterable[Mapping[str, Any]] | None = None,
    fetcher: Optional[Fetcher] = None,
) -> dict[str, Any]:
    frame, meta = _load_candles(params, BACKTEST_RANGE, candles, fetcher)
    _, detection = _detect(params, frame)
    result = run_backtest(template_id, detection.scored_points, detection.events, backtest_params)
    _log_event(
        "backtest_scan:done",
        symbol=params.symbol,
        template_id=result.summary.template_id,
        events=len(detection.events),
        trades=result.summary.trades,
    )
    return {
        "symbol": params.symbol,
        "meta": meta,
        "template_id": result.summary.template_id,
        "event_count": len(detection.events),
        "summary": result.summary.to_dict(),
        "equity_curve": frame_to_records(result.equity_curve),
        "trades": frame_to_records(result.trades),
    }


def run_crash_scans(
    params_list: Sequence[CrashScanParams],
    *,
    max_workers: int = 4,
    fetcher: Optional[Fetcher] = None,
) -> dict[str, Any]:
    """Run independent crash scans concurrently, one per symbol.

    A symbol that fails for any reason is reported under
    ``errors`` and does not affect the others.
    """
    results: dict[str, dict[str, Any]] = {}
    errors: dict[str, str] = {}
    if not params_list:
        return {"results": results, "errors": errors}

    workers = max(1, min(int(max_workers), len(params_list)))
    _log_event("crash_scans:start", symbols=len(params_list), workers=workers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {pool.submit(run_crash_scan, p, fetcher=fetcher): p.symbol for p in params_list}
        for future in as_completed(futures):
            symbol = futures[future]
            try:
                results[symbol] = future.result()
            except (MarketDataError, ValueError) as exc:
                log.warning("run_crash_scans: %s failed: %s", symbol, exc)
                errors[symbol] = str(exc)
            except Exception as exc:
                log.exception("run_crash_scans: %s crashed", symbol)
                errors[symbol] = f"{type(exc).__name__}: {exc}"
    _log_event("crash_scans:done", ok=len(results), failed=len(errors))
    return {"results": results, "errors": errors}


__all__ = [
    "CrashScanParams",
    "run_backtest_scan",
    "run_compare_scan",
    "run_crash_scan",
    "run_crash_scans",
    "run_similarity_scan",
]
