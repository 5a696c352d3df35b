from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .db import table_fields
from .persistence import read_log_header


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: str


def validate_log_header(path: Path, columns: Sequence[str]) -> ValidationResult:
    """Check that an existing CSV log was started with the same columns.

    Only the first line is read. A missing or empty file is valid: the header
    will be written by the first append.
    """
    if not path.exists() or path.stat().st_size == 0:
        return ValidationResult(True, "new log")
    header = read_log_header(path)
    if header == list(columns):
        return ValidationResult(True, "header matches")
    return ValidationResult(False, f"header {header} does not match configured columns {list(columns)}")


def validate_table_fields(db_path: Path, fields: Sequence[str]) -> ValidationResult:
    existing = table_fields(db_path)
    if not existing:
        return ValidationResult(True, "new table")
    if existing == list(fields):
        return ValidationResult(True, "table matches")
    return ValidationResult(False, f"table columns {existing} do not match configured fields {list(fields)}")
