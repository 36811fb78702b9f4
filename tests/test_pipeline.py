"""
Tests for pipeline.py — a mocked Rate Source in front of a temporary DuckDB store.
"""

from decimal import Decimal
from unittest.mock import MagicMock, Mock, patch

import pytest

import pipeline
from config import Settings
from etl.errors import (
    CancelledError,
    PipelineError,
    QueryError,
    SyncError,
    TransportError,
    WriteError,
)
from etl.extract import RateSnapshot
from etl.load import DuckDBRateStore
from etl.store import RateStore
from pipeline import CycleReport, Deadline, execute, main, run_cycle


def _source(snapshot):
    source = Mock()
    source.fetch_all.return_value = snapshot
    source.fetch_subset.return_value = snapshot
    return source


def test_full_cycle(snapshot, store):
    report = run_cycle(_source(snapshot), store)

    assert not report.degraded
    assert report.snapshot is snapshot
    assert report.upsert.inserted == ("GBP", "USD")
    assert report.rates == {"USD": Decimal("1.10000"), "GBP": Decimal("0.85000")}
    assert set(report.timings) == {"fetch", "upsert", "sync", "read"}


def test_second_cycle_updates_only_fetched_codes(snapshot, store):
    run_cycle(_source(snapshot), store)
    update = RateSnapshot(base="EUR", timestamp=snapshot.timestamp, date=snapshot.date, rates={"USD": 1.2})

    report = run_cycle(_source(update), store)

    assert report.upsert.updated == ("USD",)
    assert report.rates == {"USD": Decimal("1.20000"), "GBP": Decimal("0.85000")}


def test_symbols_use_fetch_subset(snapshot, store):
    source = _source(snapshot)
    run_cycle(source, store, symbols=["USD", "GBP", "USD"])

    source.fetch_all.assert_not_called()
    args, kwargs = source.fetch_subset.call_args
    assert args[0] == ["GBP", "USD"]
    assert kwargs["timeout"] > 0


def test_fetch_failure_leaves_store_untouched():
    source = Mock()
    source.fetch_all.side_effect = TransportError("connection refused")
    store = MagicMock(spec=RateStore)

    with pytest.raises(PipelineError) as excinfo:
        run_cycle(source, store)

    assert excinfo.value.step == "fetch"
    assert isinstance(excinfo.value.cause, TransportError)
    store.upsert_many.assert_not_called()
    store.sync_replica.assert_not_called()
    store.read_all.assert_not_called()


def test_upsert_failure_aborts_before_sync(snapshot):
    store = MagicMock(spec=RateStore)
    store.table_name = "currency_rates"
    store.upsert_many.side_effect = WriteError("constraint failed", table="currency_rates", code="USD")

    with pytest.raises(PipelineError) as excinfo:
        run_cycle(_source(snapshot), store)

    assert excinfo.value.step == "upsert"
    store.sync_replica.assert_not_called()
    store.read_all.assert_not_called()


def test_sync_failure_is_degraded_and_local_data_readable(snapshot, store, monkeypatch):
    monkeypatch.setattr(store, "sync_replica", Mock(side_effect=SyncError("primary unreachable")))

    report = run_cycle(_source(snapshot), store)

    assert report.degraded
    assert isinstance(report.errors["sync"], SyncError)
    assert report.rates == {"USD": Decimal("1.10000"), "GBP": Decimal("0.85000")}


def test_read_failure_is_degraded(snapshot, store, monkeypatch):
    monkeypatch.setattr(store, "read_all", Mock(side_effect=QueryError("no such table")))

    report = run_cycle(_source(snapshot), store)

    assert report.degraded
    assert set(report.errors) == {"read"}
    assert report.rates is None


def test_expired_deadline_cancels_before_fetch(snapshot):
    source = _source(snapshot)
    store = MagicMock(spec=RateStore)

    with pytest.raises(PipelineError) as excinfo:
        run_cycle(source, store, timeout=0)

    assert excinfo.value.step == "fetch"
    assert isinstance(excinfo.value.cause, CancelledError)
    source.fetch_all.assert_not_called()


def test_cancelled_sync_is_fatal(snapshot, store, monkeypatch):
    monkeypatch.setattr(store, "sync_replica", Mock(side_effect=CancelledError("sync timed out")))
    monkeypatch.setattr(store, "read_all", Mock())

    with pytest.raises(PipelineError) as excinfo:
        run_cycle(_source(snapshot), store, timeout=30)

    assert excinfo.value.step == "sync"
    store.read_all.assert_not_called()


def test_deadline_caps_timeouts():
    assert Deadline(None).remaining() is None
    assert Deadline(None).cap(30) == 30
    assert Deadline(5).cap(30) <= 5
    assert Deadline(0).expired
    with pytest.raises(CancelledError):
        Deadline(0).check("sync")


def test_execute_closes_store(snapshot, tmp_path):
    settings = Settings(fixerio_key="key", local_db_path=str(tmp_path / "run.duckdb"))

    with patch("pipeline.FixerRateSource", return_value=_source(snapshot)):
        report = execute(settings)

    assert report.rates == {"USD": Decimal("1.10000"), "GBP": Decimal("0.85000")}
    # The file is free again once execute() returns.
    with DuckDBRateStore(settings.local_db_path) as reopened:
        assert reopened.read_all() == report.rates


def test_execute_closes_store_on_abort(tmp_path):
    settings = Settings(fixerio_key="key", local_db_path=str(tmp_path / "run.duckdb"))
    source = Mock()
    source.fetch_all.side_effect = TransportError("connection refused")
    store = MagicMock(spec=RateStore)

    with patch("pipeline.FixerRateSource", return_value=source), \
            patch("pipeline.open_store", return_value=store):
        with pytest.raises(PipelineError):
            execute(settings)

    store.close.assert_called_once()


@pytest.fixture
def cli_env(monkeypatch):
    monkeypatch.setattr(pipeline, "load_dotenv", lambda: None)
    monkeypatch.setenv("FIXERIO_KEY", "key")
    for name in ("TURSO_URL", "TURSO_AUTH_TOKEN", "FX_SYNC_TIMEOUT_SECONDS"):
        monkeypatch.delenv(name, raising=False)


def test_main_success(cli_env):
    with patch("pipeline.execute", return_value=CycleReport()) as run:
        assert main(["--symbols", "usd, gbp", "--timeout", "45"]) == 0

    settings = run.call_args.args[0]
    assert settings.sync_timeout == 45
    assert run.call_args.kwargs["symbols"] == ["USD", "GBP"]


def test_main_degraded(cli_env):
    report = CycleReport(errors={"sync": SyncError("primary unreachable")})
    with patch("pipeline.execute", return_value=report):
        assert main([]) == 2


def test_main_aborted(cli_env):
    error = PipelineError("fetch", TransportError("connection refused"))
    with patch("pipeline.execute", side_effect=error):
        assert main([]) == 1


def test_main_missing_config(cli_env, monkeypatch):
    monkeypatch.delenv("FIXERIO_KEY")
    with patch("pipeline.execute") as run:
        assert main([]) == 1
    run.assert_not_called()


def test_rate_rounding_to_zero_does_not_abort_cycle(snapshot, store):
    with_dust = RateSnapshot(
        base="EUR",
        timestamp=snapshot.timestamp,
        date=snapshot.date,
        rates={"USD": 1.1, "GBP": 0.85, "BTC": 0.000004},
    )

    report = run_cycle(_source(with_dust), store)

    assert not report.degraded
    assert report.upsert.inserted == ("GBP", "USD")
    assert store.read_all() == {"USD": Decimal("1.10000"), "GBP": Decimal("0.85000")}


def test_execute_reports_unopenable_store(tmp_path):
    settings = Settings(fixerio_key="key", local_db_path=str(tmp_path / "missing" / "run.duckdb"))

    with pytest.raises(PipelineError) as excinfo:
        execute(settings)

    assert excinfo.value.step == "open"
    assert isinstance(excinfo.value.cause, QueryError)
