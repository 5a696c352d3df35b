"""CLI scripts for working with recorded price logs.

Scripts:
- export_duckdb_prices_to_csv: Export the DuckDB price table to the CSV log format

Usage:
    python -m btc_price_feed.scripts.export_duckdb_prices_to_csv --help
"""

__all__ = [
    "export_duckdb_prices_to_csv",
]
