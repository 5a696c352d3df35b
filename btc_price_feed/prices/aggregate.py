from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp
import pandas as pd

from .api import PriceQuote, PriceSource, format_price
from .errors import CycleCancelled, CycleError, FetchError, TimestampParseError


POLICY_PARTIAL = "partial"
POLICY_STRICT = "strict"
POLICIES = (POLICY_PARTIAL, POLICY_STRICT)

MODE_WALLCLOCK = "wallclock"
MODE_SOURCE = "source"
TIMESTAMP_MODES = (MODE_WALLCLOCK, MODE_SOURCE)

PATTERN_CLOCK12 = "clock12"
PATTERN_MINUTE = "minute"
TIME_PATTERNS = (PATTERN_CLOCK12, PATTERN_MINUTE)

DEFAULT_PATTERN_BY_MODE = {MODE_WALLCLOCK: PATTERN_CLOCK12, MODE_SOURCE: PATTERN_MINUTE}

TIMESTAMP_COLUMN = "Date"

_RFC3339 = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{1,9})?(Z|[+-]\d{2}:\d{2})")


@dataclass(frozen=True)
class AggregatedRecord:
    timestamp: datetime
    prices: Tuple[Tuple[str, Optional[Decimal]], ...]
    failures: Tuple[FetchError, ...] = ()

    def row(self, pattern: str) -> List[str]:
        return [format_timestamp(self.timestamp, pattern)] + [format_price(p) for _, p in self.prices]


def format_timestamp(ts: datetime, pattern: str) -> str:
    """Render `ts` with one of the named patterns; independent of process locale.

    - clock12: YYYY-MM-DD h:m:s am|pm (12-hour clock, unpadded time fields)
    - minute:  YYYY-MM-DD HH:MM
    """
    if pattern == PATTERN_CLOCK12:
        hour = ts.hour % 12 or 12
        suffix = "am" if ts.hour < 12 else "pm"
        return f"{ts.year:04d}-{ts.month:02d}-{ts.day:02d} {hour}:{ts.minute}:{ts.second} {suffix}"
    if pattern == PATTERN_MINUTE:
        return f"{ts.year:04d}-{ts.month:02d}-{ts.day:02d} {ts.hour:02d}:{ts.minute:02d}"
    raise ValueError(f"unknown time format: {pattern!r} (expected one of {', '.join(TIME_PATTERNS)})")


def parse_observed_at(raw: Optional[str], tz: Optional[tzinfo] = None) -> datetime:
    """Parse an RFC 3339 wire timestamp (e.g. 2024-05-01T12:34:56.789Z).

    A full date, time and explicit offset are required; nothing is defaulted.
    Converted to `tz` when given, otherwise kept in UTC.
    """
    if not raw:
        raise TimestampParseError("source reported no observation timestamp")
    if not isinstance(raw, str) or not _RFC3339.fullmatch(raw):
        raise TimestampParseError(f"source timestamp {raw!r} is not an RFC 3339 instant")
    try:
        ts = pd.to_datetime(raw, format="ISO8601", utc=True)
    except (ValueError, TypeError) as e:
        raise TimestampParseError(f"failed to parse source timestamp {raw!r}: {e}") from e
    if pd.isna(ts):
        raise TimestampParseError(f"failed to parse source timestamp {raw!r}")
    out = ts.to_pydatetime()
    return out.astimezone(tz) if tz is not None else out


def wall_clock(tz: Optional[tzinfo] = None) -> datetime:
    if tz is None:
        return datetime.now(timezone.utc).astimezone()
    return datetime.now(tz)


async def run_cycle(
    sources: Sequence[PriceSource],
    session: aiohttp.ClientSession,
    cancel: Optional[asyncio.Event] = None,
    policy: str = POLICY_PARTIAL,
    timestamp_mode: str = MODE_WALLCLOCK,
    tz: Optional[tzinfo] = None,
    clock: Callable[[Optional[tzinfo]], datetime] = wall_clock,
) -> AggregatedRecord:
    """Fetch every source concurrently and merge the quotes into one record.

    All sources run to completion before any decision is made; one source failing
    never cancels another. With a single source its success is required; with
    several, `policy` decides between recording the successful subset (partial)
    and skipping the cycle on any failure (strict). Raises CycleError when no
    record is produced.
    """
    if not sources:
        raise CycleError("no price sources configured")

    results = await asyncio.gather(*(s.fetch(session, cancel) for s in sources), return_exceptions=True)

    quotes: Dict[str, PriceQuote] = {}
    failures: List[FetchError] = []
    for res in results:
        if isinstance(res, FetchError):
            failures.append(res)
        elif isinstance(res, BaseException):
            raise res
        else:
            quotes[res.source_id] = res

    if cancel is not None and cancel.is_set():
        raise CycleCancelled("shutdown requested; cycle abandoned", failures)
    if not quotes:
        raise CycleError("all price sources failed", failures)
    if failures and (len(sources) == 1 or policy == POLICY_STRICT):
        raise CycleError(f"{len(failures)} of {len(sources)} price sources failed", failures)

    if timestamp_mode == MODE_SOURCE:
        if len(sources) != 1:
            raise CycleError("source timestamps require exactly one price source", failures)
        ts = parse_observed_at(quotes[sources[0].source_id].observed_at, tz)
    else:
        ts = clock(tz)

    prices = tuple(
        (s.source_id, quotes[s.source_id].price_usd if s.source_id in quotes else None) for s in sources
    )
    return AggregatedRecord(ts, prices, tuple(failures))
