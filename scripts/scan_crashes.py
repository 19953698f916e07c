#!/usr/bin/env python3
"""Detect and rank crash events for one or more symbols."""
from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from typing import Sequence

import pandas as pd

from _bootstrap import add_repo_root

add_repo_root()

from _bootstrap import (  # noqa: E402
    add_scan_arguments,
    configure_logging,
    print_json,
    read_candles_csv,
    scan_params_from_args,
)
from crash_engine.scan_runner import run_crash_scan, run_crash_scans  # noqa: E402
from market_data.provider import MarketDataError  # noqa: E402
from utils.io import export_frame  # noqa: E402


def _print_ranking(payload: dict, limit: int) -> None:
    rows = payload.get("ranking", [])[:limit]
    print(f"{payload['symbol']}: {payload['count']} events (mode={payload['mode']})")
    if not rows:
        return
    table = pd.DataFrame(
        {
            "date": [r["date"] for r in rows],
            "severity": [round(r["severity"], 2) for r in rows],
            "crash_score": [None if r["crash_score"] is None else round(r["crash_score"], 2) for r in rows],
            "drawdown_rate": [r["metrics"].get("drawdown_rate") for r in rows],
        }
    )
    print(table.to_string(index=False))


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    add_scan_arguments(parser)
    parser.add_argument("--also", nargs="*", default=[], help="Extra symbols scanned concurrently")
    parser.add_argument("--workers", type=int, default=4)
    parser.add_argument("--top", type=int, default=10)
    parser.add_argument("--export", action="store_true", help="Write events CSV under the data dir")
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    params, _ = scan_params_from_args(args)
    candles = read_candles_csv(args.candles_csv)

    try:
        if args.also:
            batch = [params] + [replace(params, symbol=s) for s in args.also]
            report = run_crash_scans(batch, max_workers=args.workers)
            payloads = list(report["results"].values())
            for symbol, message in report["errors"].items():
                print(f"{symbol}: ERROR {message}", file=sys.stderr)
        else:
            payloads = [run_crash_scan(params, candles=candles)]
    except (MarketDataError, ValueError) as exc:
        print(f"scan failed: {exc}", file=sys.stderr)
        return 1

    for payload in payloads:
        if args.json:
            print_json({k: v for k, v in payload.items() if k != "points"})
        else:
            _print_ranking(payload, args.top)
        if args.export:
            events = pd.DataFrame(payload["events"])
            path = export_frame(events, payload["symbol"], "crash_events")
            print(f"wrote {path}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
