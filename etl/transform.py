"""
etl/transform.py – Transformation layer.

Turns a RateSnapshot into the clean code → rate mapping the Rate Store
consumes, and turns the store's read-back into a table for reporting.

Precision policy
----------------
Rates are quantised to RATE_DECIMAL_PLACES (5) decimal places with
banker's rounding, once before writing and again after reading, so a
value survives any number of write/read cycles unchanged:

    1.234567  →  Decimal("1.23457")
"""

import logging
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Mapping, Union

import polars as pl

from config import RATE_DECIMAL_PLACES
from etl.extract import RateSnapshot

logger = logging.getLogger(__name__)

# ISO-4217-like codes: three uppercase letters.
CODE_PATTERN = r"^[A-Z]{3}$"

_QUANTUM = Decimal(1).scaleb(-RATE_DECIMAL_PLACES)


def quantize_rate(value: Union[Decimal, float, int, str]) -> Decimal:
    """Apply the precision policy to one rate."""
    if isinstance(value, float):
        # str() gives the shortest repr, avoiding binary expansion noise.
        value = str(value)
    return Decimal(value).quantize(_QUANTUM, rounding=ROUND_HALF_EVEN)


def snapshot_to_frame(snapshot: RateSnapshot) -> pl.DataFrame:
    """
    Validate a snapshot's rates.

    Returns
    -------
    pl.DataFrame with columns:
        code  (String)  – three uppercase letters
        rate  (Float64) – finite, and still positive after quantize_rate()
    Rows that break either rule are logged and dropped.
    """
    df = pl.DataFrame(
        {"code": list(snapshot.rates.keys()), "rate": list(snapshot.rates.values())},
        schema={"code": pl.String, "rate": pl.Float64},
    )

    valid = (
        pl.col("code").str.contains(CODE_PATTERN)
        & pl.col("rate").is_finite()
        & (pl.col("rate") > 0)
    ).fill_null(False)

    rejected = df.filter(~valid)
    for code, rate in rejected.iter_rows():
        logger.warning("Invalid rate %r for code %r on %s — skipping", rate, code, snapshot.date)

    df = df.filter(valid)

    # A rate that quantises to zero cannot be stored as a positive value.
    storable = pl.Series([quantize_rate(rate) > 0 for rate in df["rate"]], dtype=pl.Boolean)
    vanishing = df.filter(~storable)
    for code, rate in vanishing.iter_rows():
        logger.warning(
            "Rate %r for code %r rounds to zero at %d decimal places — skipping",
            rate,
            code,
            RATE_DECIMAL_PLACES,
        )

    df = df.filter(storable).sort("code")

    logger.info(
        "Transformation done | %d rates kept | %d rejected | base=%s",
        len(df),
        len(rejected) + len(vanishing),
        snapshot.base,
    )
    return df


def frame_to_rates(df: pl.DataFrame) -> dict[str, Decimal]:
    """Quantised code → rate mapping, ready for RateStore.upsert_many()."""
    return {code: quantize_rate(rate) for code, rate in df.select("code", "rate").iter_rows()}


def rates_to_frame(rates: Mapping[str, Decimal]) -> pl.DataFrame:
    """Tabulate a RateStore.read_all() result, sorted by code."""
    return pl.DataFrame(
        {"code": list(rates.keys()), "rate": [quantize_rate(r) for r in rates.values()]},
        schema={"code": pl.String, "rate": pl.Decimal(scale=RATE_DECIMAL_PLACES)},
    ).sort("code")
