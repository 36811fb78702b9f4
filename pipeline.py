"""
pipeline.py – Entry point for the currency rates sync job.

Usage
-----
# Sync every rate Fixer.io publishes
    uv run python pipeline.py

# Only a few currencies, giving up after 60 seconds
    uv run python pipeline.py --symbols USD,GBP,JPY --timeout 60

Flow
----
    Fetch   →  latest EUR-based rates from Fixer.io
    Upsert  →  reconcile them into currency_rates (one row per code)
    Sync    →  force the embedded replica to converge with Turso
    Verify  →  read the table back and log it

Fetch and upsert failures abort the cycle. Sync and read-back failures
leave the local data in place and mark the run as degraded.

Exit codes: 0 success, 1 aborted, 2 degraded.
"""

import argparse
import dataclasses
import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

import polars as pl
from dotenv import load_dotenv

from config import API_TIMEOUT_SECONDS, BASE_CURRENCY, SYNC_INTERVAL_SECONDS, Settings, load_settings
from etl.errors import (
    CancelledError,
    CloseError,
    ConfigError,
    PipelineError,
    RateStoreError,
    RatesSyncError,
)
from etl.extract import FixerRateSource, RateSnapshot
from etl.store import RateStore, UpsertResult
from etl.transform import frame_to_rates, rates_to_frame, snapshot_to_frame

# ---------------------------------------------------------------------------
# Logging – structured, timestamped output to stdout
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("pipeline")


# ---------------------------------------------------------------------------
# Cycle state
# ---------------------------------------------------------------------------

class Deadline:
    """Wall-clock budget for one cycle. `None` means unbounded."""

    def __init__(self, timeout: Optional[float] = None):
        self.expires_at = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def cap(self, seconds: float) -> float:
        remaining = self.remaining()
        return seconds if remaining is None else min(seconds, remaining)

    def check(self, step: str) -> None:
        if self.expired:
            raise CancelledError(f"deadline passed before the {step} step")


@dataclass
class CycleReport:
    snapshot: Optional[RateSnapshot] = None
    upsert: Optional[UpsertResult] = None
    rates: Optional[dict[str, Decimal]] = None
    timings: dict[str, float] = field(default_factory=dict)
    # Non-fatal failures, keyed by step ("sync", "read").
    errors: dict[str, RatesSyncError] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.errors)


@contextmanager
def _timed(report: CycleReport, step: str):
    t0 = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - t0
        report.timings[step] = elapsed
        logger.info("%s step finished in %dms", step, elapsed * 1000)


def _abort(step: str, exc: RatesSyncError, deadline: Deadline) -> PipelineError:
    cause = exc
    if deadline.expired and not isinstance(exc, CancelledError):
        cause = CancelledError(f"deadline passed during the {step} step: {exc}")
        cause.__cause__ = exc
    logger.error("Cycle aborted at the %s step: %s", step, cause)
    return PipelineError(step, cause)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def run_cycle(
    source: FixerRateSource,
    store: RateStore,
    symbols: Optional[Iterable[str]] = None,
    timeout: Optional[float] = None,
) -> CycleReport:
    """
    Run fetch → upsert → sync → verify once.

    Raises
    ------
    PipelineError
        When fetch or upsert fails, or the deadline passes. The store is
        never written to when the fetch fails.
    """
    deadline = Deadline(timeout)
    report = CycleReport()
    symbols = sorted(set(symbols)) if symbols else None

    logger.info("=" * 60)
    logger.info("Currency rates sync starting | base=%s | symbols=%s",
                BASE_CURRENCY, ",".join(symbols) if symbols else "<all>")
    logger.info("=" * 60)

    t0 = time.perf_counter()

    # --- Fetch ---
    logger.info("[1/4] Fetching latest rates from Fixer.io...")
    try:
        with _timed(report, "fetch"):
            deadline.check("fetch")
            fetch_timeout = deadline.cap(API_TIMEOUT_SECONDS)
            if symbols:
                snapshot = source.fetch_subset(symbols, timeout=fetch_timeout)
            else:
                snapshot = source.fetch_all(timeout=fetch_timeout)
    except RatesSyncError as exc:
        raise _abort("fetch", exc, deadline) from exc
    report.snapshot = snapshot

    for code, rate in sorted(snapshot.rates.items()):
        logger.debug("1 %s -> %s = %s", snapshot.base, code, rate)

    # --- Upsert ---
    logger.info("[2/4] Upserting %d rates into %s...", len(snapshot.rates), store.table_name)
    try:
        with _timed(report, "upsert"):
            deadline.check("upsert")
            rates = frame_to_rates(snapshot_to_frame(snapshot))
            report.upsert = store.upsert_many(rates)
    except RatesSyncError as exc:
        raise _abort("upsert", exc, deadline) from exc

    # --- Sync ---
    logger.info("[3/4] Syncing replica...")
    try:
        with _timed(report, "sync"):
            deadline.check("sync")
            store.sync_replica(timeout=deadline.remaining())
    except CancelledError as exc:
        raise _abort("sync", exc, deadline) from exc
    except RateStoreError as exc:
        logger.error("Replica sync failed, local rates are not yet propagated: %s", exc)
        report.errors["sync"] = exc

    # --- Verify ---
    logger.info("[4/4] Reading back %s...", store.table_name)
    try:
        with _timed(report, "read"):
            deadline.check("read")
            report.rates = store.read_all()
    except CancelledError as exc:
        raise _abort("read", exc, deadline) from exc
    except RateStoreError as exc:
        logger.error("Read-back failed: %s", exc)
        report.errors["read"] = exc

    if report.rates is not None:
        with pl.Config(tbl_rows=-1):
            logger.info("--- DATABASE RECORDS (%d) ---\n%s", len(report.rates), rates_to_frame(report.rates))

    elapsed = time.perf_counter() - t0
    logger.info("=" * 60)
    logger.info(
        "Cycle %s in %.2fs | %d inserted | %d updated",
        "degraded" if report.degraded else "complete",
        elapsed,
        len(report.upsert.inserted),
        len(report.upsert.updated),
    )
    logger.info("=" * 60)
    return report


def open_store(settings: Settings, init_schema: bool = False) -> RateStore:
    """
    Pick the storage backend from the settings:
    a Turso primary URL means the libSQL embedded replica, otherwise the
    local DuckDB file.
    """
    if settings.uses_replica:
        from etl.load_libsql import LibsqlRateStore

        return LibsqlRateStore(
            settings.turso_url,
            settings.turso_auth_token,
            db_name=settings.turso_db_name,
            sync_interval=SYNC_INTERVAL_SECONDS,
            create_schema=init_schema,
        )

    from etl.load import DuckDBRateStore

    return DuckDBRateStore(settings.local_db_path)


def _close_after_failure(store: RateStore) -> None:
    try:
        store.close()
    except CloseError as exc:
        logger.error("Cleanup after the failed cycle also failed: %s", exc)


def execute(
    settings: Settings,
    symbols: Optional[Iterable[str]] = None,
    init_schema: bool = False,
) -> CycleReport:
    """Open the store, run one cycle, and always release the store."""
    source = FixerRateSource(settings.fixerio_base_url, settings.fixerio_key)

    try:
        store = open_store(settings, init_schema=init_schema)
    except RateStoreError as exc:
        logger.error("Could not open the rate store: %s", exc)
        raise PipelineError("open", exc) from exc

    try:
        report = run_cycle(source, store, symbols=symbols, timeout=settings.sync_timeout)
    except BaseException:
        _close_after_failure(store)
        raise

    try:
        store.close()
    except CloseError as exc:
        logger.error("Cleanup failed: %s", exc)
        raise PipelineError("close", exc) from exc

    return report


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Currency rates sync – fetches Fixer.io rates and upserts them into the rate store."
    )
    parser.add_argument(
        "--symbols",
        default="",
        help="Comma-separated currency codes to fetch (default: all)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up on the whole cycle after this many seconds (default: FX_SYNC_TIMEOUT_SECONDS or none)",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the currency_rates table on the primary if it does not exist",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    # A missing .env file is fine; real deployments set the environment.
    load_dotenv()

    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    if args.timeout is not None:
        settings = dataclasses.replace(settings, sync_timeout=args.timeout)

    symbols = [s.strip().upper() for s in args.symbols.split(",") if s.strip()]

    try:
        report = execute(settings, symbols=symbols or None, init_schema=args.init_schema)
    except PipelineError as exc:
        logger.error("Pipeline failed at the %s step: %s", exc.step, exc.cause)
        return 1

    if report.degraded:
        for step, error in report.errors.items():
            logger.warning("Degraded run: %s step failed: %s", step, error)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
