"""
Shared pytest fixtures for the currency rates sync test suite.
"""

import sqlite3
from datetime import datetime, timezone

import pytest

from etl.extract import RateSnapshot
from etl.load import DuckDBRateStore


# Same structure as a Fixer.io `latest` response.
@pytest.fixture
def fixer_payload():
    return {
        "success": True,
        "timestamp": 1760688000,
        "base": "EUR",
        "date": "2026-10-17",
        "rates": {"USD": 1.1, "GBP": 0.85, "JPY": 162.345678, "EUR": 1},
    }


@pytest.fixture
def snapshot():
    return RateSnapshot(
        base="EUR",
        timestamp=datetime(2026, 10, 17, 8, 0, tzinfo=timezone.utc),
        date="2026-10-17",
        rates={"USD": 1.1, "GBP": 0.85},
    )


@pytest.fixture
def store(tmp_path):
    db = DuckDBRateStore(str(tmp_path / "test.duckdb"))
    yield db
    db.close()


class FakeReplicaConnection:
    """Stands in for a libsql embedded-replica connection, on plain SQLite."""

    def __init__(self, path, **kwargs):
        self.path = path
        self.kwargs = kwargs
        self.db = sqlite3.connect(path, check_same_thread=False)
        self.sync_calls = 0
        self.sync_error = None
        self.sync_hook = None
        self.close_error = None
        self.closed = False

    def execute(self, sql, params=()):
        return self.db.execute(sql, params)

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    def sync(self):
        self.sync_calls += 1
        if self.sync_hook is not None:
            self.sync_hook()
        if self.sync_error is not None:
            raise self.sync_error

    def close(self):
        self.db.close()
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


@pytest.fixture
def fake_libsql(monkeypatch):
    """Patch libsql.connect; returns the list of connections it created."""
    created = []

    def _connect(path, **kwargs):
        conn = FakeReplicaConnection(path, **kwargs)
        created.append(conn)
        return conn

    monkeypatch.setattr("etl.load_libsql.libsql.connect", _connect)
    return created
