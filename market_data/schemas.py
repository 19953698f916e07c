"""Lightweight type definitions for market data."""

from typing import Literal, Optional, TypedDict

CANDLE_COLUMNS = ["date", "open", "high", "low", "close", "volume"]
PRICE_COLUMNS = ["open", "high", "low", "close"]


class CandleRow(TypedDict):
    date: str  # YYYY-MM-DD
    open: float
    high: float
    low: float
    close: float
    volume: float


class MarketMeta(TypedDict, total=False):
    symbol: Optional[str]
    currency: Optional[str]
    exchange_name: Optional[str]
    timezone: Optional[str]


DataSource = Literal["chart", "yfinance"]
