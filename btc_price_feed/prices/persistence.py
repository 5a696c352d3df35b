from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple

import pandas as pd

from .aggregate import PATTERN_CLOCK12, TIMESTAMP_COLUMN, AggregatedRecord
from .api import PriceSource
from .errors import SinkOpenError, SinkWriteError


def columns_for(sources: Sequence[PriceSource]) -> Tuple[str, ...]:
    """Header for a log fed by `sources`: the timestamp column, then one price column per source."""
    return (TIMESTAMP_COLUMN,) + tuple(s.column for s in sources)


@dataclass(frozen=True)
class CsvSink:
    """Append-only CSV log.

    Every append opens the file, writes the header only if the opened file is
    empty, writes one row and closes the file again. Prior rows are never read,
    rewritten or locked.
    """

    path: Path
    columns: Tuple[str, ...]
    time_pattern: str = PATTERN_CLOCK12

    def is_empty(self) -> bool:
        try:
            return self.path.stat().st_size == 0
        except FileNotFoundError:
            return True

    def append(self, record: AggregatedRecord) -> List[str]:
        row = record.row(self.time_pattern)
        if len(row) != len(self.columns):
            raise SinkWriteError(f"row has {len(row)} fields but header has {len(self.columns)}: {row}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            f = open(self.path, "a", newline="", encoding="utf-8")
        except OSError as e:
            raise SinkOpenError(f"cannot open {self.path}: {e}") from e
        try:
            with f:
                write_header = os.fstat(f.fileno()).st_size == 0
                df = pd.DataFrame([row], columns=list(self.columns))
                df.to_csv(f, header=write_header, index=False, lineterminator="\n")
        except OSError as e:
            raise SinkWriteError(f"cannot write to {self.path}: {e}") from e
        return row


def read_log(path: Path) -> pd.DataFrame:
    """Read a price log back with every field as the exact string that was written."""
    return pd.read_csv(path, dtype=str, keep_default_na=False)


def read_log_header(path: Path) -> List[str]:
    """Column names from the first line of a non-empty log; empty if the first line is blank."""
    try:
        return list(pd.read_csv(path, nrows=0, dtype=str).columns)
    except pd.errors.EmptyDataError:
        return []
