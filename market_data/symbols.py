"""Symbol normalization helpers shared across modules."""
from __future__ import annotations

import re

TOKYO_SUFFIX = ".T"

_FOUR_CHAR_CODE = re.compile(r"^[0-9A-Za-z]{4}$")


def is_index_symbol(symbol: str | None) -> bool:
    """Yahoo index tickers start with ``^`` (``^GSPC``, ``^N225``)."""
    if not symbol:
        return False
    return str(symbol).strip().startswith("^")


def build_yahoo_symbol_candidates(raw_symbol: str | None) -> list[str]:
    """Symbols to try against Yahoo, in order.

    A bare four-character code such as ``7203`` or ``130A`` is most likely a
    Tokyo listing, so ``CODE.T`` is tried after the code itself. Symbols that
    already carry an exchange suffix and index tickers are returned as-is.
    """
    if not raw_symbol:
        return []
    symbol = str(raw_symbol).replace("\u200b", "").replace("\xa0", "").strip()
    if not symbol:
        return []

    candidates = [symbol]
    if _FOUR_CHAR_CODE.match(symbol):
        tokyo = f"{symbol.upper()}{TOKYO_SUFFIX}"
        if not any(c.upper() == tokyo for c in candidates):
            candidates.append(tokyo)
    return candidates


__all__ = ["build_yahoo_symbol_candidates", "is_index_symbol"]
