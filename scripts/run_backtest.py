#!/usr/bin/env python3
"""Backtest a crash strategy template on one symbol."""
from __future__ import annotations

import argparse
import sys
from typing import Sequence

import pandas as pd

from _bootstrap import add_repo_root

add_repo_root()

from _bootstrap import (  # noqa: E402
    add_scan_arguments,
    configure_logging,
    json_arg,
    print_json,
    read_candles_csv,
    scan_params_from_args,
)
from backtest.templates import TEMPLATES  # noqa: E402
from crash_engine.scan_runner import run_backtest_scan  # noqa: E402
from market_data.provider import MarketDataError  # noqa: E402
from utils.io import export_frame  # noqa: E402


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    add_scan_arguments(parser)
    parser.add_argument("--template", choices=sorted(TEMPLATES), required=True)
    parser.add_argument("--params", type=json_arg, help='Backtest overrides JSON, e.g. {"takeProfitPct": 6}')
    parser.add_argument("--apply-costs", action="store_true")
    parser.add_argument("--export", action="store_true", help="Write trades and equity CSVs under the data dir")
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    params, settings = scan_params_from_args(args)
    overrides = dict(settings.get("backtest") or {})
    overrides.update(args.params or {})
    if args.apply_costs:
        overrides["apply_costs"] = True

    try:
        payload = run_backtest_scan(
            params,
            args.template,
            backtest_params=overrides,
            candles=read_candles_csv(args.candles_csv),
        )
    except (MarketDataError, ValueError) as exc:
        print(f"backtest failed: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print_json(payload)
    else:
        summary = payload["summary"]
        print(f"{payload['symbol']} {payload['template_id']}: {payload['event_count']} events")
        for key, value in summary.items():
            if key == "template_id":
                continue
            print(f"  {key:<22} {value:.4f}" if isinstance(value, float) else f"  {key:<22} {value}")

    if args.export:
        base = f"{payload['symbol']}_{payload['template_id']}"
        for suffix, rows in (("trades", payload["trades"]), ("equity", payload["equity_curve"])):
            path = export_frame(pd.DataFrame(rows), base, suffix)
            print(f"wrote {path}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
