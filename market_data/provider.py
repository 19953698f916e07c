# market_data/provider.py
"""Daily OHLCV candles from Yahoo (chart API or yfinance)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import numpy as np
import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .candles import frame_to_records, normalize_candles
from .schemas import CANDLE_COLUMNS, MarketMeta
from .symbols import build_yahoo_symbol_candidates

log = logging.getLogger(__name__)

CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"
DEFAULT_TIMEOUT = 15.0


class MarketDataError(RuntimeError):
    """Raised when no candle source could satisfy a request."""


@dataclass(frozen=True)
class MarketData:
    candles: pd.DataFrame
    meta: MarketMeta = field(default_factory=dict)  # type: ignore[assignment]

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": int(len(self.candles)),
            "meta": dict(self.meta),
            "candles": frame_to_records(self.candles),
        }


def http_timeout() -> float:
    raw = os.getenv("CRASHSCOPE_HTTP_TIMEOUT")
    if not raw:
        return DEFAULT_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        log.warning("Ignoring invalid CRASHSCOPE_HTTP_TIMEOUT=%r", raw)
        return DEFAULT_TIMEOUT
    return value if value > 0 else DEFAULT_TIMEOUT


def make_session() -> requests.Session:
    s = requests.Session()
    s.headers.update(
        {
            "User-Agent": (
                "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
            ),
            "Accept": "application/json,text/plain,*/*",
            "Accept-Language": "en-US,en;q=0.9",
        }
    )
    retry = Retry(
        total=5,
        connect=5,
        read=5,
        backoff_factor=0.6,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET", "HEAD"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


def _to_unix(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.timestamp())


def _unix_to_day(seconds: Any) -> str:
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc).strftime("%Y-%m-%d")


def _empty_candles() -> pd.DataFrame:
    return pd.DataFrame({col: pd.Series(dtype=float) for col in CANDLE_COLUMNS}).assign(
        date=pd.Series(dtype="datetime64[ns]")
    )


def _series(values: Any, length: int) -> np.ndarray:
    arr = pd.to_numeric(pd.Series(list(values or [])[:length], dtype=object), errors="coerce").to_numpy(dtype=float)
    if len(arr) < length:
        arr = np.concatenate([arr, np.full(length - len(arr), np.nan)])
    return arr


def parse_chart_result(result: dict[str, Any]) -> MarketData:
    """Turn one chart ``result`` entry into normalized candles plus meta.

    Bars with a missing or non-finite OHLC value are dropped; a missing
    volume becomes 0.
    """
    timestamps = list(result.get("timestamp") or [])
    quotes = (result.get("indicators") or {}).get("quote") or [{}]
    ohlcv = quotes[0] or {}
    n = len(timestamps)

    frame = pd.DataFrame(
        {
            "date": [_unix_to_day(t) for t in timestamps],
            "open": _series(ohlcv.get("open"), n),
            "high": _series(ohlcv.get("high"), n),
            "low": _series(ohlcv.get("low"), n),
            "close": _series(ohlcv.get("close"), n),
            "volume": _series(ohlcv.get("volume"), n),
        }
    )
    prices = frame[["open", "high", "low", "close"]].to_numpy(dtype=float)
    frame = frame.loc[np.isfinite(prices).all(axis=1)].copy()
    frame["volume"] = frame["volume"].where(np.isfinite(frame["volume"]), 0.0)

    raw_meta = result.get("meta") or {}
    meta: MarketMeta = {
        "symbol": raw_meta.get("symbol"),
        "currency": raw_meta.get("currency"),
        "exchange_name": raw_meta.get("exchangeName"),
        "timezone": raw_meta.get("timezone"),
    }
    candles = normalize_candles(frame) if not frame.empty else _empty_candles()
    return MarketData(candles, meta)


def _fetch_chart(
    session: requests.Session,
    symbol: str,
    range_: str,
    start: Any,
    end: Any,
    timeout: float,
) -> MarketData:
    params: dict[str, str] = {"interval": "1d", "includePrePost": "false"}
    period1, period2 = _to_unix(start), _to_unix(end)
    if period1 is not None and period2 is not None:
        params["period1"] = str(period1)
        params["period2"] = str(period2)
    else:
        params["range"] = range_ or "max"

    url = CHART_URL.format(symbol=quote(symbol, safe=""))
    try:
        resp = session.get(url, params=params, timeout=timeout)
    except requests.RequestException as exc:
        raise MarketDataError(f"Yahoo API request failed for {symbol}: {exc}") from exc
    if not 200 <= resp.status_code < 300:
        raise MarketDataError(f"Yahoo API request failed for {symbol}: HTTP {resp.status_code}")

    try:
        payload = resp.json()
    except ValueError as exc:
        raise MarketDataError(f"Yahoo API malformed response for {symbol}: {exc}") from exc

    chart = payload.get("chart") if isinstance(payload, dict) else None
    if not isinstance(chart, dict):
        raise MarketDataError(f"Yahoo API malformed response for {symbol}: missing chart")
    error = chart.get("error")
    if error:
        code = error.get("code", "UNKNOWN") if isinstance(error, dict) else "UNKNOWN"
        desc = error.get("description", "") if isinstance(error, dict) else str(error)
        raise MarketDataError(f"Yahoo API error for {symbol}: {code} {desc}".strip())
    results = chart.get("result") or []
    if not results or not isinstance(results[0], dict):
        raise MarketDataError(f"Yahoo API returned no chart result for {symbol}")
    return parse_chart_result(results[0])


def fetch_yahoo_candles(
    symbol: str,
    range: str = "max",
    start: Any = None,
    end: Any = None,
    *,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
) -> MarketData:
    """Fetch daily candles from the Yahoo v8 chart endpoint.

    Each symbol candidate (see ``build_yahoo_symbol_candidates``) is tried in
    order; the first one that yields a chart result wins. ``start``/``end``
    select an explicit window when both are given, otherwise ``range`` is used.
    """
    candidates = build_yahoo_symbol_candidates(symbol)
    if not candidates:
        raise ValueError("symbol is required")

    sess = session or make_session()
    timeout = timeout if timeout is not None else http_timeout()
    errors: list[str] = []
    for candidate in candidates:
        try:
            data = _fetch_chart(sess, candidate, range, start, end, timeout)
        except MarketDataError as exc:
            log.warning("fetch_yahoo_candles: %s", exc)
            errors.append(str(exc))
            continue
        log.info("fetch_yahoo_candles symbol=%s resolved=%s rows=%d", symbol, candidate, len(data.candles))
        return data
    raise MarketDataError("; ".join(errors) or f"No data for {symbol}")


def fetch_yfinance_candles(
    symbol: str,
    start: Any = None,
    end: Any = None,
    period: str = "max",
) -> MarketData:
    """Same contract as ``fetch_yahoo_candles`` using ``yfinance``."""
    import yfinance as yf  # optional dependency, imported lazily

    candidates = build_yahoo_symbol_candidates(symbol)
    if not candidates:
        raise ValueError("symbol is required")

    errors: list[str] = []
    for candidate in candidates:
        ticker = yf.Ticker(candidate)
        try:
            if start is not None or end is not None:
                df = ticker.history(start=start, end=end, interval="1d", auto_adjust=False)
            else:
                df = ticker.history(period=period or "max", interval="1d", auto_adjust=False)
        except Exception as exc:  # yfinance raises a mix of library and HTTP errors
            log.warning("fetch_yfinance_candles: %s failed: %s", candidate, exc)
            errors.append(f"{candidate}: {exc}")
            continue
        if df is None or df.empty:
            errors.append(f"{candidate}: no rows")
            continue

        if isinstance(df.columns, pd.MultiIndex):
            df = df.droplevel(1, axis=1)
        df = df.reset_index()
        frame = pd.DataFrame(
            {
                "date": pd.to_datetime(df.iloc[:, 0]),
                "open": pd.to_numeric(df.get("Open"), errors="coerce"),
                "high": pd.to_numeric(df.get("High"), errors="coerce"),
                "low": pd.to_numeric(df.get("Low"), errors="coerce"),
                "close": pd.to_numeric(df.get("Close"), errors="coerce"),
                "volume": pd.to_numeric(df.get("Volume"), errors="coerce"),
            }
        )
        prices = frame[["open", "high", "low", "close"]].to_numpy(dtype=float)
        frame = frame.loc[np.isfinite(prices).all(axis=1)].copy()
        frame["volume"] = frame["volume"].fillna(0.0)
        if frame.empty:
            errors.append(f"{candidate}: no complete bars")
            continue

        info = getattr(ticker, "history_metadata", None) or {}
        meta: MarketMeta = {
            "symbol": info.get("symbol", candidate),
            "currency": info.get("currency"),
            "exchange_name": info.get("exchangeName"),
            "timezone": info.get("exchangeTimezoneName") or info.get("timezone"),
        }
        log.info("fetch_yfinance_candles symbol=%s resolved=%s rows=%d", symbol, candidate, len(frame))
        return MarketData(normalize_candles(frame), meta)

    raise MarketDataError(f"yfinance returned no rows for {symbol}: " + "; ".join(errors))


def fetch_candles(
    symbol: str,
    source: str = "chart",
    range: str = "max",
    start: Any = None,
    end: Any = None,
    **kwargs: Any,
) -> MarketData:
    if source == "chart":
        return fetch_yahoo_candles(symbol, range=range, start=start, end=end, **kwargs)
    if source == "yfinance":
        return fetch_yfinance_candles(symbol, start=start, end=end, period=range)
    raise ValueError(f"Unknown market data source: {source!r}")


__all__ = [
    "MarketData",
    "MarketDataError",
    "fetch_candles",
    "fetch_yahoo_candles",
    "fetch_yfinance_candles",
    "http_timeout",
    "make_session",
    "parse_chart_result",
]
