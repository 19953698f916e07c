from __future__ import annotations

"""Shared setup for the command line scripts.

:func:`add_repo_root` puts the repository root on ``sys.path`` so the
scripts run from a plain checkout. :func:`add_scan_arguments` and
:func:`scan_params_from_args` give every script the same symbol, data and
detection options, layered over the persisted settings file.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any


def add_repo_root() -> None:
    """Insert the repository root into ``sys.path`` if it's missing."""
    root = Path(__file__).resolve().parents[1]
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def json_arg(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise argparse.ArgumentTypeError(f"invalid JSON: {exc}") from exc


def add_scan_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--symbol", required=True, help="Ticker, index (^N225) or 4-char Tokyo code")
    parser.add_argument("--range", dest="range_", help="Yahoo range such as 5y, 10y, max")
    parser.add_argument("--source", choices=("chart", "yfinance"), default="chart")
    parser.add_argument("--candles-csv", help="Read candles from a CSV instead of fetching")
    parser.add_argument("--mode", choices=("score", "single"))
    parser.add_argument("--threshold", type=float)
    parser.add_argument("--cooling-days", type=int)
    parser.add_argument("--rule", type=json_arg, help='Single rule JSON, e.g. {"feature": "drawdown_rate", "operator": "<=", "value": -0.15}')
    parser.add_argument("--settings", help="Settings JSON path (defaults to CRASHSCOPE_SETTINGS)")
    parser.add_argument("--json", action="store_true", help="Print the full JSON payload")
    parser.add_argument("--log-level", default="INFO")


def scan_params_from_args(args: argparse.Namespace):
    from crash_engine.scan_runner import CrashScanParams
    from market_data.settings import load_settings

    settings = load_settings(args.settings)
    return CrashScanParams.from_settings(
        args.symbol,
        settings,
        range=args.range_,
        source=args.source,
        mode=args.mode,
        threshold=args.threshold,
        cooling_days=args.cooling_days,
        single_rule=args.rule,
    ), settings


def read_candles_csv(path: str | None):
    if not path:
        return None
    import pandas as pd

    return pd.read_csv(path)


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))
