from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone
from decimal import ROUND_HALF_UP
from pathlib import Path
from typing import List, Sequence, Tuple

import duckdb  # type: ignore
import pandas as pd

from .aggregate import AggregatedRecord
from .api import TWO_PLACES, PriceSource
from .errors import SinkOpenError, SinkWriteError


TABLE_NAME = "btc_prices"
TIMESTAMP_FIELD = "recorded_at"


def fields_for(sources: Sequence[PriceSource]) -> Tuple[str, ...]:
    return (TIMESTAMP_FIELD,) + tuple(s.source_id for s in sources)


def _connect(db_path: Path):
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(db_path))


def table_fields(db_path: Path) -> List[str]:
    """Column names of the price table in declaration order; empty if it does not exist."""
    if not db_path.exists():
        return []
    con = _connect(db_path)
    try:
        rows = con.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_name = ? ORDER BY ordinal_position",
            [TABLE_NAME],
        ).fetchall()
        return [r[0] for r in rows]
    finally:
        con.close()


def read_prices(db_path: Path) -> pd.DataFrame:
    """All recorded rows in insertion order; prices stay Decimal (None where a source was missing)."""
    con = _connect(db_path)
    try:
        cur = con.execute(f"SELECT * FROM {TABLE_NAME} ORDER BY rowid")
        names = [d[0] for d in cur.description]
        return pd.DataFrame(cur.fetchall(), columns=names)
    finally:
        con.close()


@dataclass(frozen=True)
class DuckDBSink:
    """Append-only price table in a DuckDB file.

    Creating the table stands in for the CSV header: it happens at most once,
    and the set of price fields is fixed from then on. Timestamps are stored
    UTC-naive.
    """

    path: Path
    fields: Tuple[str, ...]

    @property
    def columns(self) -> Tuple[str, ...]:
        return self.fields

    def _ensure_table(self, con) -> None:
        cols = [f"{TIMESTAMP_FIELD} TIMESTAMP"] + [f"{name} DECIMAL(18, 2)" for name in self.fields[1:]]
        con.execute(f"CREATE TABLE IF NOT EXISTS {TABLE_NAME} ({', '.join(cols)});")

    def is_empty(self) -> bool:
        if not table_fields(self.path):
            return True
        con = _connect(self.path)
        try:
            return con.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}").fetchone()[0] == 0
        finally:
            con.close()

    def append(self, record: AggregatedRecord) -> List[object]:
        if len(record.prices) + 1 != len(self.fields):
            raise SinkWriteError(f"record has {len(record.prices)} prices but table has {len(self.fields) - 1}")
        ts = record.timestamp
        if ts.tzinfo is not None:
            ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
        values: List[object] = [ts] + [
            None if p is None else p.quantize(TWO_PLACES, rounding=ROUND_HALF_UP) for _, p in record.prices
        ]

        try:
            con = _connect(self.path)
        except (duckdb.Error, OSError) as e:
            raise SinkOpenError(f"cannot open {self.path}: {e}") from e
        try:
            self._ensure_table(con)
            placeholders = ", ".join("?" for _ in values)
            con.execute(
                f"INSERT INTO {TABLE_NAME} ({', '.join(self.fields)}) VALUES ({placeholders})",
                values,
            )
        except duckdb.Error as e:
            raise SinkWriteError(f"cannot insert into {self.path}: {e}") from e
        finally:
            con.close()
        return values
