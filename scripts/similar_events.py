#!/usr/bin/env python3
"""List historical crash events most similar to the one on a target date."""
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
    print_json,
    read_candles_csv,
    scan_params_from_args,
)
from crash_engine.scan_runner import run_similarity_scan  # noqa: E402
from crash_engine.similarity import DEFAULT_POST_DAYS, DEFAULT_PRE_DAYS, DEFAULT_TOP_N  # noqa: E402
from market_data.provider import MarketDataError  # noqa: E402
from utils.io import export_frame  # noqa: E402


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    add_scan_arguments(parser)
    parser.add_argument("--target-date", required=True, help="YYYY-MM-DD of a detected event")
    parser.add_argument("--top-n", type=int, default=DEFAULT_TOP_N)
    parser.add_argument("--pre-days", type=int, default=DEFAULT_PRE_DAYS)
    parser.add_argument("--post-days", type=int, default=DEFAULT_POST_DAYS)
    parser.add_argument("--export", action="store_true", help="Write matches CSV under the data dir")
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    params, _ = scan_params_from_args(args)
    try:
        payload = run_similarity_scan(
            params,
            args.target_date,
            top_n=args.top_n,
            pre_days=args.pre_days,
            post_days=args.post_days,
            candles=read_candles_csv(args.candles_csv),
        )
    except (MarketDataError, ValueError) as exc:
        print(f"similarity failed: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print_json(payload)
    else:
        print(f"{payload['symbol']} {payload['target_date']}: {payload['count']} matches")
        for match in payload["matches"]:
            notes = "; ".join(r["note"] for r in match["reasons"])
            print(f"  {match['date']}  score={match['similarity_score']:.1f}  {notes}")

    if args.export and payload["matches"]:
        rows = pd.DataFrame(
            [{k: v for k, v in m.items() if k not in ("reasons", "metrics")} for m in payload["matches"]]
        )
        path = export_frame(rows, payload["symbol"], f"similar_{payload['target_date']}")
        print(f"wrote {path}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
