"""
etl/store.py – Rate Store contract.

Schema
------
    currency_rates
    ──────────────────────────────────────────────
    code              TEXT       NOT NULL UNIQUE
    to_euro_rate      NUMERIC    NOT NULL
    last_update_date  TIMESTAMP  NOT NULL DEFAULT CURRENT_TIMESTAMP

Backends subclass RateStore and provide the generic query/execute
operations, transaction control, replica sync and cleanup. The domain
operations (read_all, upsert_many) are written once here on top of them,
so every backend reconciles rates the same way.
"""

import abc
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Sequence

from config import TABLE_NAME
from etl.errors import QueryError, RateStoreError, WriteError
from etl.transform import CODE_PATTERN, quantize_rate

logger = logging.getLogger(__name__)

_CODE_RE = re.compile(CODE_PATTERN)


@dataclass(frozen=True)
class UpsertResult:
    inserted: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()

    @property
    def applied(self) -> tuple[str, ...]:
        return tuple(sorted(self.inserted + self.updated))


class RateStore(abc.ABC):
    """Durable code → rate table behind a local cache."""

    table_name: str = TABLE_NAME

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def query(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        """Run a read statement and return all rows. Raises QueryError."""

    @abc.abstractmethod
    def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        """Run a write statement. Raises WriteError."""

    @abc.abstractmethod
    def sync_replica(self, timeout: Optional[float] = None) -> None:
        """Converge the local cache with the authoritative copy. Raises SyncError."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release every resource, raising CloseError for the first failure."""

    @abc.abstractmethod
    def _begin(self) -> None: ...

    @abc.abstractmethod
    def _commit(self) -> None: ...

    @abc.abstractmethod
    def _rollback(self) -> None: ...

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Domain operations
    # ------------------------------------------------------------------

    def read_all(self) -> dict[str, Decimal]:
        """Every stored code and its rate, read through the local cache."""
        rows = self.query(f"SELECT code, to_euro_rate FROM {self.table_name}")

        rates: dict[str, Decimal] = {}
        for code, raw in rows:
            try:
                rates[code] = quantize_rate(raw)
            except (InvalidOperation, TypeError, ValueError) as exc:
                raise QueryError(
                    f"unreadable rate {raw!r} in {self.table_name} for code {code}",
                    table=self.table_name,
                    code=code,
                ) from exc
        return rates

    def upsert_many(self, rates: Mapping[str, Any]) -> UpsertResult:
        """
        Insert or update one record per code, inside a single transaction.

        Existing codes get their rate and last_update_date refreshed; unknown
        codes are inserted. Re-applying the same mapping changes nothing but
        the timestamps. On failure the transaction is rolled back, so the
        raised error reports no applied codes.
        """
        prepared = self._prepare(rates)
        inserted: list[str] = []
        updated: list[str] = []
        current: Optional[str] = None

        self._begin()
        try:
            for code, rate in prepared:
                current = code
                if self._exists(code):
                    self.execute(
                        f"UPDATE {self.table_name} "
                        "SET to_euro_rate = ?, last_update_date = CURRENT_TIMESTAMP "
                        "WHERE code = ?",
                        [str(rate), code],
                    )
                    updated.append(code)
                else:
                    self.execute(
                        f"INSERT INTO {self.table_name} (code, to_euro_rate) VALUES (?, ?)",
                        [code, str(rate)],
                    )
                    inserted.append(code)
            current = None
            self._commit()
        except RateStoreError as exc:
            self._safe_rollback()
            logger.error("Upsert into %s failed at code %s — rolled back", self.table_name, current)
            if exc.code is None:
                exc.code = current
            exc.applied = ()
            raise

        logger.info(
            "%s upserted | %d inserted | %d updated",
            self.table_name,
            len(inserted),
            len(updated),
        )
        return UpsertResult(inserted=tuple(inserted), updated=tuple(updated))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _prepare(self, rates: Mapping[str, Any]) -> list[tuple[str, Decimal]]:
        """Validate and quantise every entry before anything is written."""
        prepared = []
        for code in sorted(rates):
            if not isinstance(code, str) or not _CODE_RE.match(code):
                raise WriteError(f"invalid currency code {code!r}", table=self.table_name, code=str(code))
            try:
                rate = quantize_rate(rates[code])
            except (InvalidOperation, TypeError, ValueError) as exc:
                raise WriteError(
                    f"invalid rate {rates[code]!r} for code {code}", table=self.table_name, code=code
                ) from exc
            if not rate.is_finite() or rate <= 0:
                raise WriteError(
                    f"rate for code {code} must be positive, got {rate}", table=self.table_name, code=code
                )
            prepared.append((code, rate))
        return prepared

    def _exists(self, code: str) -> bool:
        rows = self.query(f"SELECT 1 FROM {self.table_name} WHERE code = ?", [code])
        return bool(rows)

    def _safe_rollback(self) -> None:
        try:
            self._rollback()
        except Exception:
            logger.exception("Rollback of %s failed", self.table_name)
