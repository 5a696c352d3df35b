#!/usr/bin/env python3
from __future__ import annotations

"""
Export all rows of the DuckDB price table to a CSV in the price log format.

Usage examples:
  python -m btc_price_feed.scripts.export_duckdb_prices_to_csv \
    --duckdb btc_prices.duckdb --out exports/btc_prices.csv --overwrite

Notes:
  - Outputs columns: Date, then one "<Source> Price" column per recorded source
  - Timestamps are stored UTC-naive, so the Date column is rendered in UTC
  - By default prevents overwriting unless --overwrite is passed
"""

import argparse
from pathlib import Path
import sys
from typing import List, Optional

import pandas as pd

from btc_price_feed.prices.aggregate import PATTERN_CLOCK12, TIME_PATTERNS, TIMESTAMP_COLUMN, format_timestamp
from btc_price_feed.prices.api import build_source, format_price
from btc_price_feed.prices.db import TIMESTAMP_FIELD, read_prices, table_fields


def to_log_frame(df: pd.DataFrame, pattern: str = PATTERN_CLOCK12) -> pd.DataFrame:
    """Render a price table (as returned by read_prices) with the CSV log's header and formatting."""
    source_ids = [c for c in df.columns if c != TIMESTAMP_FIELD]
    out = pd.DataFrame({TIMESTAMP_COLUMN: [format_timestamp(ts.to_pydatetime(), pattern) for ts in df[TIMESTAMP_FIELD]]})
    for sid in source_ids:
        out[build_source(sid).column] = [format_price(None if pd.isna(v) else v) for v in df[sid]]
    return out


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Export the DuckDB price table to CSV")
    parser.add_argument("--duckdb", type=Path, required=True, help="Path to DuckDB file")
    parser.add_argument("--out", type=Path, required=True, help="Output CSV path")
    parser.add_argument("--time-format", choices=TIME_PATTERNS, default=PATTERN_CLOCK12, help="Date column format")
    parser.add_argument("--overwrite", action="store_true", help="Allow overwriting existing output file")
    args = parser.parse_args(argv)

    out_path: Path = args.out
    if out_path.exists() and not args.overwrite:
        print(f"[ERROR] Output exists: {out_path}. Pass --overwrite to replace.", file=sys.stderr)
        return 2
    if not table_fields(args.duckdb):
        print(f"[ERROR] No price table in {args.duckdb}", file=sys.stderr)
        return 2

    df = to_log_frame(read_prices(args.duckdb), args.time_format)
    if df.empty:
        print("[WARN] No rows in price table; writing CSV with header only.")

    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=False, lineterminator="\n")
    if not df.empty:
        print(f"Wrote {len(df):,} rows to {out_path}")
        print(f"Range: {df[TIMESTAMP_COLUMN].iloc[0]} .. {df[TIMESTAMP_COLUMN].iloc[-1]}")
    else:
        print(f"Wrote empty CSV to {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
