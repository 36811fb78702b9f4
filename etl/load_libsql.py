"""
etl/load_libsql.py – Replicated load layer.

A Rate Store backed by a libSQL embedded replica: a local SQLite file kept
in a throw-away temporary directory that mirrors the authoritative Turso
database.

    local replica (libsql-XXXX/<db_name>.db)  ⇄  Turso primary (TURSO_URL)

Reads are served from the local file. The driver syncs in the background
every `sync_interval` seconds, and sync_replica() forces a sync at the end
of each run so the written rates are propagated before the job exits.
A failed sync leaves local writes in place.
"""

import logging
import os
import shutil
import tempfile
import threading
from typing import Any, Optional, Sequence

import libsql

from config import DEFAULT_TURSO_DB_NAME, SYNC_INTERVAL_SECONDS, TABLE_NAME
from etl.errors import CancelledError, CloseError, QueryError, SyncError, WriteError
from etl.store import RateStore

logger = logging.getLogger(__name__)

# How long close() waits for an abandoned sync before giving up on cleanup.
CLOSE_GRACE_SECONDS: float = 5.0

DDL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    code             TEXT      NOT NULL UNIQUE,
    to_euro_rate     NUMERIC   NOT NULL,
    last_update_date TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""


class LibsqlRateStore(RateStore):
    def __init__(
        self,
        primary_url: str,
        auth_token: str,
        db_name: str = DEFAULT_TURSO_DB_NAME,
        sync_interval: float = SYNC_INTERVAL_SECONDS,
        create_schema: bool = False,
        close_grace: float = CLOSE_GRACE_SECONDS,
    ):
        self.close_grace = close_grace
        self._pending_sync: Optional[threading.Thread] = None
        self.conn = None
        self.local_directory = tempfile.mkdtemp(prefix="libsql-")
        self.local_path = os.path.join(self.local_directory, f"{db_name}.db")

        logger.info("Opening embedded replica %s of %s", self.local_path, primary_url)
        try:
            # The forced sync may run on a worker thread (see sync_replica).
            self.conn = libsql.connect(
                self.local_path,
                sync_url=primary_url,
                auth_token=auth_token,
                sync_interval=sync_interval,
                check_same_thread=False,
            )
        except Exception as exc:
            shutil.rmtree(self.local_directory, ignore_errors=True)
            raise QueryError(f"error whilst connecting to database: {exc}", table=TABLE_NAME) from exc

        if create_schema:
            try:
                self.execute(DDL)
                self._commit()
            except WriteError:
                self.close()
                raise

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        try:
            return self.conn.execute(sql, tuple(params)).fetchall()
        except Exception as exc:
            raise QueryError(f"error whilst querying {self.table_name}: {exc}", table=self.table_name) from exc

    def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        try:
            self.conn.execute(sql, tuple(params))
        except Exception as exc:
            raise WriteError(f"error whilst writing to {self.table_name}: {exc}", table=self.table_name) from exc

    def sync_replica(self, timeout: Optional[float] = None) -> None:
        """
        Push pending local writes and pull the primary's state.

        The driver's sync call has no timeout of its own; with `timeout` set
        it runs on a daemon thread and the wait is abandoned after `timeout`
        seconds with CancelledError. An abandoned sync never keeps the
        process alive, and close() will not pull the files from under it.
        """
        if timeout is None:
            self._sync(self.conn)
            return

        if self._pending_sync is not None and self._pending_sync.is_alive():
            raise CancelledError("an earlier replica sync is still in flight")

        failures: list[SyncError] = []
        conn = self.conn

        def _run() -> None:
            try:
                self._sync(conn)
            except SyncError as exc:
                failures.append(exc)

        thread = threading.Thread(target=_run, name="libsql-sync", daemon=True)
        thread.start()
        thread.join(timeout)

        if thread.is_alive():
            self._pending_sync = thread
            logger.error("Replica sync did not finish within %.1fs — abandoning the wait", timeout)
            raise CancelledError(f"replica sync did not finish within {timeout:.1f}s")
        if failures:
            raise failures[0]

    def close(self) -> None:
        """
        Close the connection, then delete the replica files. Every step runs.

        If an abandoned sync is still using the connection after
        `close_grace` seconds, nothing is released and CloseError is raised;
        calling close() again once the sync has ended finishes the cleanup.
        """
        pending = self._pending_sync
        if pending is not None:
            pending.join(self.close_grace)
            if pending.is_alive():
                logger.error("Replica sync still in flight — leaving %s in place", self.local_directory)
                raise CloseError(
                    f"replica sync still in flight after {self.close_grace:.1f}s; "
                    f"{self.local_directory} left in place",
                    table=self.table_name,
                )
            self._pending_sync = None

        first_error: Optional[CloseError] = None

        if self.conn is not None:
            conn, self.conn = self.conn, None
            try:
                conn.close()
            except Exception as exc:
                logger.error("Error whilst closing database: %s", exc)
                first_error = CloseError(f"error whilst closing database: {exc}", table=self.table_name)
                first_error.__cause__ = exc

        try:
            if os.path.exists(self.local_directory):
                shutil.rmtree(self.local_directory)
        except OSError as exc:
            logger.error("Error whilst deleting temporary files: %s", exc)
            if first_error is None:
                first_error = CloseError(f"error whilst deleting temporary files: {exc}", table=self.table_name)
                first_error.__cause__ = exc

        if first_error is not None:
            raise first_error

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _sync(self, conn) -> None:
        try:
            conn.sync()
        except Exception as exc:
            raise SyncError(f"error whilst syncing embedded replica: {exc}", table=self.table_name) from exc

    def _begin(self) -> None:
        # The driver opens a transaction implicitly on the first write.
        pass

    def _commit(self) -> None:
        try:
            self.conn.commit()
        except Exception as exc:
            raise WriteError(f"error whilst committing to {self.table_name}: {exc}", table=self.table_name) from exc

    def _rollback(self) -> None:
        self.conn.rollback()
