from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

from devicelog.models import LogLevel, LogRecord, format_timestamp
from devicelog.store import BATCH_LIMIT, SqliteRecordStore


def _record(idx: int, *, timestamp: str | None = None) -> LogRecord:
    return LogRecord.create(LogLevel.WARN, "store-test", f"message {idx}", timestamp=timestamp)


def _fast_store(path: Path, **kwargs) -> SqliteRecordStore:
    return SqliteRecordStore(str(path), journal_mode="memory", synchronous="off", **kwargs)


def _seed(store: SqliteRecordStore, n: int) -> None:
    ts = format_timestamp(datetime.now(timezone.utc))
    rows = [("WARN", "bulk", f"message {idx}", ts) for idx in range(n)]
    with store._session() as conn:  # noqa: SLF001 - bulk seed keeps the large-window test fast
        conn.executemany(
            "INSERT INTO device_logs(log_level_name, tag, message, timestamp) VALUES(?,?,?,?)",
            rows,
        )


def test_store_applies_sqlite_pragmas(tmp_path: Path) -> None:
    store = SqliteRecordStore(
        str(tmp_path / "logs.sqlite"),
        journal_mode="wal",
        synchronous="normal",
        temp_store="memory",
    )

    with store._session() as conn:  # noqa: SLF001 - test verifies configured pragmas
        (journal_mode,) = conn.execute("PRAGMA journal_mode").fetchone()
        (synchronous,) = conn.execute("PRAGMA synchronous").fetchone()
        (temp_store,) = conn.execute("PRAGMA temp_store").fetchone()

    assert str(journal_mode).lower() == "wal"
    assert int(synchronous) == 1
    assert int(temp_store) == 2


def test_invalid_pragma_falls_back_to_default(tmp_path: Path) -> None:
    store = SqliteRecordStore(str(tmp_path / "logs.sqlite"), journal_mode="bogus")
    assert store.journal_mode == "WAL"


def test_insert_read_back_roundtrip(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    record = LogRecord.create(LogLevel.ERROR, "net", "socket closed", timestamp="2026-10-17T08:30:00.123Z")
    assert record.id is None

    new_id = store.insert(record)

    batch = store.read_batch(1)
    assert batch is not None and len(batch) == 1
    stored = batch[0]
    assert stored.id == new_id
    assert stored.id is not None and stored.id > 0
    assert (stored.level_name, stored.tag, stored.message, stored.timestamp) == (
        "ERROR",
        "net",
        "socket closed",
        "2026-10-17T08:30:00.123Z",
    )


def test_empty_message_is_never_persisted(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    store.insert(_record(1))

    assert store.insert(LogRecord.create(LogLevel.ERROR, "tag", "")) is None
    assert store.count() == 1


def test_count_and_batch_count_track_inserts(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    assert store.count() == 0
    assert store.batch_count() == 0

    for idx in range(7):
        store.insert(_record(idx))

    assert store.count() == 7
    assert store.batch_count() == 1


def test_batches_window_in_insertion_order(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    _seed(store, 12_000)

    assert store.count() == 12_000
    assert store.batch_count() == 3

    first = store.read_batch(1)
    second = store.read_batch(2)
    third = store.read_batch(3)
    fourth = store.read_batch(4)

    assert first is not None and second is not None and third is not None
    assert len(first) == BATCH_LIMIT
    assert len(second) == BATCH_LIMIT
    assert len(third) == 2000
    assert fourth == []

    ids = [r.id for r in first + second + third]
    assert ids == sorted(ids)
    assert len(set(ids)) == 12_000
    assert first[0].message == "message 0"
    assert second[0].message == f"message {BATCH_LIMIT}"
    assert third[-1].message == "message 11999"


def test_single_window_ignores_requested_batch_number(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    for idx in range(3):
        store.insert(_record(idx))

    for batch_number in (0, -4, 1, 2, 9):
        batch = store.read_batch(batch_number)
        assert batch is not None
        assert [r.message for r in batch] == ["message 0", "message 1", "message 2"]


def test_empty_store_reads_empty_list(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    assert store.read_batch(1) == []
    assert store.read_batch(5) == []


def test_delete_many_removes_exactly_existing_ids(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    ids = [store.insert(_record(idx)) for idx in range(5)]

    deleted = store.delete_many({ids[0], ids[2], 9999})

    assert deleted == 2
    assert store.count() == 3
    remaining = store.read_batch(1)
    assert remaining is not None
    assert [r.id for r in remaining] == [ids[1], ids[3], ids[4]]


def test_delete_many_with_empty_set_is_noop(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    store.insert(_record(1))

    assert store.delete_many(set()) == 0
    assert store.count() == 1


def test_delete_many_handles_more_ids_than_bound_parameters(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    _seed(store, 2500)
    batch = store.read_batch(1)
    assert batch is not None

    assert store.delete_many(r.id for r in batch if r.id is not None) == 2500
    assert store.count() == 0


def test_ids_are_not_reused_after_delete(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    first = store.insert(_record(1))
    second = store.insert(_record(2))
    assert first is not None and second is not None

    store.delete_one(second)
    third = store.insert(_record(3))

    assert third is not None and third > second


def test_delete_all_empties_store(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    for idx in range(4):
        store.insert(_record(idx))

    assert store.delete_all() == 4
    assert store.count() == 0


def test_purge_older_than_keeps_records_at_cutoff(tmp_path: Path) -> None:
    now = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)
    store = _fast_store(tmp_path / "logs.sqlite", now_fn=lambda: now)
    cutoff = now - timedelta(days=7)

    store.insert(_record(1, timestamp=format_timestamp(cutoff - timedelta(milliseconds=1))))
    store.insert(_record(2, timestamp=format_timestamp(cutoff)))
    store.insert(_record(3, timestamp=format_timestamp(cutoff + timedelta(milliseconds=1))))
    store.insert(_record(4, timestamp=format_timestamp(now)))

    deleted = store.purge_older_than(timedelta(days=7))

    assert deleted == 1
    remaining = store.read_batch(1)
    assert remaining is not None
    assert [r.message for r in remaining] == ["message 2", "message 3", "message 4"]


def test_purge_accepts_seconds_and_skips_unparseable_stamps(tmp_path: Path) -> None:
    now = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)
    store = _fast_store(tmp_path / "logs.sqlite", now_fn=lambda: now)

    store.insert(_record(1, timestamp=format_timestamp(now - timedelta(hours=2))))
    store.insert(_record(2, timestamp="17 Oct 11:00:00:000 AM"))

    assert store.purge_older_than(3600) == 1
    assert store.count() == 1


def test_purge_with_out_of_range_window_keeps_everything(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    store.insert(_record(1, timestamp="2000-01-01T00:00:00.000Z"))

    assert store.purge_older_than(10**12) == 0
    assert store.purge_older_than(timedelta(days=999_999)) == 0
    assert store.count() == 1


def test_closed_store_reports_failure_not_empty(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    store.insert(_record(1))
    store.close()

    assert store.read_batch(1) is None
    assert store.read_batch_result(1).ok is False
    assert store.count() == 0
    assert store.insert(_record(2)) is None
    assert store.delete_all() == 0


def test_schema_version_change_recreates_table(tmp_path: Path) -> None:
    path = tmp_path / "logs.sqlite"
    store = _fast_store(path)
    store.insert(_record(1))

    with sqlite3.connect(str(path)) as conn:
        conn.execute("PRAGMA user_version=99")
        conn.commit()

    reopened = _fast_store(path)
    assert reopened.count() == 0
    assert reopened.insert(_record(2)) is not None


def test_store_recovers_from_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "logs.sqlite"
    path.write_bytes(b"not-a-sqlite-db")

    store = SqliteRecordStore(str(path), recover_corruption=True)
    backups = list(tmp_path.glob("logs.sqlite.corrupt-*"))
    assert backups
    assert path.exists()

    store.insert(_record(1))
    assert store.count() == 1


def test_metrics_report_depth(tmp_path: Path) -> None:
    store = _fast_store(tmp_path / "logs.sqlite")
    store.insert(_record(1))

    metrics = store.metrics()
    assert metrics["log_queue_depth"] == 1
    assert metrics["log_db_bytes"] > 0
