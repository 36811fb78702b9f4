"""
etl/load.py – Local load layer.

A pure-local Rate Store on a single DuckDB file. There is no remote copy:
"syncing" checkpoints the write-ahead log into the database file so the
file on disk is self-contained. Used for local runs (no TURSO_URL set)
and by the test suite.

Why DuckDB?
-----------
- Embedded, single-file, no server to run next to a batch job.
- Native DECIMAL type, so stored rates never drift through binary floats.
- Full transactional SQL, matching what the libSQL replica offers.
"""

import logging
from typing import Any, Optional, Sequence

import duckdb

from config import DB_PATH, RATE_DECIMAL_PLACES, TABLE_NAME
from etl.errors import CloseError, QueryError, SyncError, WriteError
from etl.store import RateStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

DDL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    code             VARCHAR(3)         NOT NULL UNIQUE,
    to_euro_rate     DECIMAL(18, {RATE_DECIMAL_PLACES}) NOT NULL,
    last_update_date TIMESTAMP          NOT NULL DEFAULT current_timestamp
);
"""


class DuckDBRateStore(RateStore):
    def __init__(self, path: str = DB_PATH):
        logger.info("Connecting to DuckDB at: %s", path)
        self.path = path
        try:
            self.conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(path)
        except duckdb.Error as exc:
            raise QueryError(f"error whilst opening database {path}: {exc}", table=TABLE_NAME) from exc
        try:
            self.conn.execute(DDL)
        except duckdb.Error as exc:
            self.conn.close()
            raise WriteError(f"error whilst creating table {TABLE_NAME}: {exc}", table=TABLE_NAME) from exc

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        try:
            return self.conn.execute(sql, list(params)).fetchall()
        except duckdb.Error as exc:
            raise QueryError(f"error whilst querying {self.table_name}: {exc}", table=self.table_name) from exc

    def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        try:
            self.conn.execute(sql, list(params))
        except duckdb.Error as exc:
            raise WriteError(f"error whilst writing to {self.table_name}: {exc}", table=self.table_name) from exc

    def sync_replica(self, timeout: Optional[float] = None) -> None:
        # Local-only: nothing remote to wait for, so the timeout is moot.
        try:
            self.conn.execute("CHECKPOINT")
        except duckdb.Error as exc:
            raise SyncError(f"error whilst checkpointing {self.path}: {exc}", table=self.table_name) from exc
        logger.info("DuckDB checkpoint complete: %s", self.path)

    def close(self) -> None:
        if self.conn is None:
            return
        conn, self.conn = self.conn, None
        try:
            conn.close()
        except duckdb.Error as exc:
            raise CloseError(f"error whilst closing database: {exc}", table=self.table_name) from exc

    def _begin(self) -> None:
        try:
            self.conn.begin()
        except duckdb.Error as exc:
            raise WriteError(f"error whilst starting transaction: {exc}", table=self.table_name) from exc

    def _commit(self) -> None:
        try:
            self.conn.commit()
        except duckdb.Error as exc:
            raise WriteError(f"error whilst committing to {self.table_name}: {exc}", table=self.table_name) from exc

    def _rollback(self) -> None:
        self.conn.rollback()
