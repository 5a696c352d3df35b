from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from .aggregate import (
    DEFAULT_PATTERN_BY_MODE,
    MODE_SOURCE,
    MODE_WALLCLOCK,
    POLICIES,
    POLICY_PARTIAL,
    TIME_PATTERNS,
    TIMESTAMP_MODES,
    run_cycle,
)
from .api import DEFAULT_TIMEOUT, SOURCE_IDS, PriceSource, build_source, new_session
from .db import DuckDBSink, fields_for
from .errors import CycleCancelled, CycleError, FetchError, SinkError
from .persistence import CsvSink, columns_for
from .scheduler import DEFAULT_INTERVAL_SECONDS, Scheduler
from .validation import ValidationResult, validate_log_header, validate_table_fields


TOKEN_ENV = "COIN_MARKET_CAP_TOKEN"
DEFAULT_OUT = Path("btc_prices.csv")
DEFAULT_DUCKDB = Path("btc_prices.duckdb")
SINKS = ("csv", "duckdb")

Sink = Union[CsvSink, DuckDBSink]


@dataclass
class RunConfig:
    out_path: Path = DEFAULT_OUT
    sink: str = "csv"
    duckdb_path: Path = DEFAULT_DUCKDB
    sources: Tuple[str, ...] = SOURCE_IDS
    policy: str = POLICY_PARTIAL
    timestamp_mode: str = MODE_WALLCLOCK
    time_format: Optional[str] = None
    tz_name: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    token: Optional[str] = None
    once: bool = False
    dry_run: bool = False
    debug: bool = False

    @property
    def pattern(self) -> str:
        return self.time_format or DEFAULT_PATTERN_BY_MODE[self.timestamp_mode]

    @property
    def tz(self) -> Optional[ZoneInfo]:
        return ZoneInfo(self.tz_name) if self.tz_name else None


def validate_config(cfg: RunConfig) -> Optional[str]:
    """Return a reason string when the configuration cannot run, else None."""
    if not cfg.sources:
        return "no price sources configured"
    unknown = [s for s in cfg.sources if s not in SOURCE_IDS]
    if unknown:
        return f"unknown price source(s): {', '.join(unknown)} (expected {', '.join(SOURCE_IDS)})"
    if len(set(cfg.sources)) != len(cfg.sources):
        return "price sources must not repeat"
    if cfg.timestamp_mode == MODE_SOURCE and len(cfg.sources) != 1:
        return "--timestamp-mode source needs exactly one price source"
    if cfg.timestamp_mode == MODE_SOURCE and cfg.sources[0] != "coinmarketcap":
        return f"{cfg.sources[0]} does not report an observation time; use --timestamp-mode wallclock"
    if cfg.timeout <= 0:
        return "--timeout must be positive"
    if cfg.tz_name:
        try:
            ZoneInfo(cfg.tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            return f"unknown time zone: {cfg.tz_name}"
    return None


def build_sources(cfg: RunConfig) -> List[PriceSource]:
    return [build_source(s, cfg.token) for s in cfg.sources]


def build_sink(cfg: RunConfig, sources: Sequence[PriceSource]) -> Sink:
    if cfg.sink == "duckdb":
        return DuckDBSink(cfg.duckdb_path, fields_for(sources))
    return CsvSink(cfg.out_path, columns_for(sources), cfg.pattern)


def check_sink(cfg: RunConfig, sources: Sequence[PriceSource]) -> ValidationResult:
    if cfg.sink == "duckdb":
        return validate_table_fields(cfg.duckdb_path, fields_for(sources))
    return validate_log_header(cfg.out_path, columns_for(sources))


def _report_failures(failures: Sequence[FetchError]) -> None:
    for f in failures:
        print(f"[WARN] {f.source_id} failed during {f.phase}: {f.message}", file=sys.stderr)


async def record_cycle(cfg: RunConfig, sources: Sequence[PriceSource], sink: Sink, session, stop: asyncio.Event) -> int:
    """One fetch-aggregate-append pass. Returns 0 when a row was recorded."""
    if cfg.debug:
        print(f"[INFO] cycle start sources={','.join(s.source_id for s in sources)}")
    try:
        record = await run_cycle(sources, session, stop, cfg.policy, cfg.timestamp_mode, cfg.tz)
    except CycleCancelled:
        print("[INFO] cycle abandoned: shutdown requested")
        return 1
    except CycleError as e:
        _report_failures(e.failures)
        print(f"[WARN] cycle skipped: {e}")
        return 1
    _report_failures(record.failures)

    row = record.row(cfg.pattern)
    fields = " ".join(f"{c}={v}" for c, v in zip(columns_for(sources), row))
    if cfg.dry_run:
        print(f"[DRY-RUN] Would append: {fields}")
        return 0
    try:
        sink.append(record)
    except SinkError as e:
        print(f"[ERROR] append failed: {e}", file=sys.stderr)
        return 2
    out = cfg.duckdb_path if cfg.sink == "duckdb" else cfg.out_path
    print(f"recorded {fields} out={out}")
    return 0


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals) -> None:
        print(f"[INFO] received {sig.name}; stopping")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except (NotImplementedError, RuntimeError):
            print(f"[WARN] cannot install handler for {sig.name}; relying on default behaviour", file=sys.stderr)


async def serve(
    cfg: RunConfig,
    stop: Optional[asyncio.Event] = None,
    interval: float = DEFAULT_INTERVAL_SECONDS,
    install_signals: bool = True,
    session_factory: Callable[[float], Any] = new_session,
) -> int:
    stop = stop if stop is not None else asyncio.Event()
    sources = build_sources(cfg)

    v = check_sink(cfg, sources)
    if not v.ok:
        print(f"[ERROR] existing log does not fit configured sources: {v.reason}", file=sys.stderr)
        return 2
    sink = build_sink(cfg, sources)
    if cfg.debug:
        print(f"[INFO] log check: {v.reason}; empty={sink.is_empty()}")
    if install_signals:
        _install_signal_handlers(stop)

    async with session_factory(cfg.timeout) as session:
        if cfg.once:
            return await record_cycle(cfg, sources, sink, session, stop)

        scheduler = Scheduler(lambda: record_cycle(cfg, sources, sink, session, stop), stop, interval)
        print(
            f"[INFO] price feed started sources={','.join(cfg.sources)} policy={cfg.policy} "
            f"interval={interval:g}s sink={cfg.sink}"
        )
        started = await scheduler.run()
        print(f"[INFO] price feed stopped cycles={started}")
    return 0


def run_once(cfg: RunConfig) -> int:
    return asyncio.run(serve(replace(cfg, once=True)))


def _split_sources(value: str) -> Tuple[str, ...]:
    return tuple(s.strip().lower() for s in value.split(",") if s.strip())


def parse_args(argv: Optional[list[str]] = None) -> RunConfig:
    p = argparse.ArgumentParser(description="Sample the BTC price from CoinMarketCap and Binance every 5 minutes")
    p.add_argument("--out", type=Path, default=DEFAULT_OUT, help="CSV log to append to")
    p.add_argument("--sink", choices=SINKS, default="csv", help="Where rows are appended")
    p.add_argument("--duckdb", type=Path, default=DEFAULT_DUCKDB, help="DuckDB file used with --sink duckdb")
    p.add_argument(
        "--sources",
        type=_split_sources,
        default=SOURCE_IDS,
        help=f"Comma separated price sources, in column order (default: {','.join(SOURCE_IDS)})",
    )
    p.add_argument(
        "--policy",
        choices=POLICIES,
        default=POLICY_PARTIAL,
        help="partial: record whichever sources succeeded; strict: skip the cycle on any failure",
    )
    p.add_argument(
        "--timestamp-mode",
        choices=TIMESTAMP_MODES,
        default=MODE_WALLCLOCK,
        help="wallclock: local time at aggregation; source: the source's reported time (single source only)",
    )
    p.add_argument("--time-format", choices=TIME_PATTERNS, default=None, help="Timestamp column format")
    p.add_argument("--tz", default=None, help="IANA time zone for the timestamp column")
    p.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Per request timeout in seconds")
    p.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    p.add_argument("--dry-run", action="store_true", help="Print rows instead of writing them")
    p.add_argument("--debug", action="store_true", help="Verbose logging")
    args = p.parse_args(argv)

    return RunConfig(
        out_path=args.out,
        sink=args.sink,
        duckdb_path=args.duckdb,
        sources=args.sources,
        policy=args.policy,
        timestamp_mode=args.timestamp_mode,
        time_format=args.time_format,
        tz_name=args.tz,
        timeout=float(args.timeout),
        token=os.getenv(TOKEN_ENV) or None,
        once=bool(args.once),
        dry_run=bool(args.dry_run),
        debug=bool(args.debug),
    )


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    cfg = parse_args(argv)
    reason = validate_config(cfg)
    if reason:
        print(f"[ERROR] {reason}", file=sys.stderr)
        return 2
    if not cfg.token and "coinmarketcap" in cfg.sources:
        print(f"[WARN] {TOKEN_ENV} is not set; coinmarketcap fetches will fail authentication")
    try:
        return asyncio.run(serve(cfg))
    except Exception as e:  # surface clear error message
        print(f"[ERROR] {e}", file=sys.stderr)
        if cfg.debug:
            raise
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
