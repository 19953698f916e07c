"""Market-data collaborators for the crash engine.

Candle normalization and validation, Yahoo symbol candidates, the Yahoo
chart / yfinance providers and the persisted settings store.
"""

from .candles import frame_to_records, normalize_candles, validate_candles
from .provider import (
    MarketData,
    MarketDataError,
    fetch_candles,
    fetch_yahoo_candles,
    fetch_yfinance_candles,
)
from .settings import load_settings, save_settings
from .symbols import build_yahoo_symbol_candidates, is_index_symbol

__all__ = [
    "MarketData",
    "MarketDataError",
    "build_yahoo_symbol_candidates",
    "fetch_candles",
    "fetch_yahoo_candles",
    "fetch_yfinance_candles",
    "frame_to_records",
    "is_index_symbol",
    "load_settings",
    "normalize_candles",
    "save_settings",
    "validate_candles",
]
