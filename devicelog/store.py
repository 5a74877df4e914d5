from __future__ import annotations

import logging
import math
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generic, Iterable, Iterator, List, Optional, TypeVar

from .models import LogRecord, format_timestamp


logger = logging.getLogger("devicelog.store")

BATCH_LIMIT = 5000
SCHEMA_VERSION = 1
TABLE_NAME = "device_logs"

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER is 999 on older builds.
_DELETE_CHUNK = 900

# Only well-formed stamps take part in age comparisons.
_TIMESTAMP_GLOB = "[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9]T*"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  log_level_name TEXT,
  tag TEXT,
  message TEXT NOT NULL CHECK (message <> ''),
  timestamp TEXT
);
"""

_T = TypeVar("_T")

NowFn = Callable[[], datetime]

_CORRUPTION_MARKERS = (
    "database disk image is malformed",
    "malformed database schema",
    "file is not a database",
    "not a database",
    "database corrupt",
)

_ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
_ALLOWED_SYNCHRONOUS = {"OFF", "NORMAL", "FULL", "EXTRA"}
_ALLOWED_TEMP_STORE = {"DEFAULT", "FILE", "MEMORY"}


class StorageError(RuntimeError):
    """Raised internally when the record table cannot be read or written."""


@dataclass(frozen=True)
class StoreResult(Generic[_T]):
    """Outcome of one store operation.

    Lets callers tell "the query failed" apart from "the query returned nothing"
    before the public methods collapse failures to safe defaults.
    """

    value: Optional[_T] = None
    error: Optional[StorageError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def or_default(self, fallback: _T) -> _T:
        if self.error is not None:
            return fallback
        return self.value  # type: ignore[return-value]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqliteRecordStore:
    """Durable, id-ordered storage for log records.

    Each operation opens its own connection, so reads on the caller's thread
    and writes on the buffer's worker thread never share a handle.
    """

    def __init__(
        self,
        path: str,
        *,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
        temp_store: str = "MEMORY",
        recover_corruption: bool = True,
        now_fn: NowFn | None = None,
    ) -> None:
        self.path = Path(path)
        self.journal_mode = self._normalize_pragma(
            "journal_mode",
            journal_mode,
            allowed=_ALLOWED_JOURNAL_MODES,
            default="WAL",
        )
        self.synchronous = self._normalize_pragma(
            "synchronous",
            synchronous,
            allowed=_ALLOWED_SYNCHRONOUS,
            default="NORMAL",
        )
        self.temp_store = self._normalize_pragma(
            "temp_store",
            temp_store,
            allowed=_ALLOWED_TEMP_STORE,
            default="MEMORY",
        )
        self.recover_corruption = bool(recover_corruption)
        self._now_fn = now_fn or _utcnow
        self._closed = False
        self._write_lock = threading.Lock()

        self.create_table()

    @staticmethod
    def _normalize_pragma(name: str, value: str, *, allowed: set[str], default: str) -> str:
        candidate = (value or "").strip().upper()
        if candidate in allowed:
            return candidate
        logger.warning(
            "invalid_sqlite_pragma",
            extra={"fields": {"pragma": name, "value": value, "using": default}},
        )
        return default

    # -----------------------------
    # Connection handling
    # -----------------------------

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        try:
            self._apply_pragmas(conn)
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        conn.execute(f"PRAGMA synchronous={self.synchronous}")
        conn.execute(f"PRAGMA temp_store={self.temp_store}")

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = self._conn()
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _create_schema(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._session() as conn:
            (version,) = conn.execute("PRAGMA user_version").fetchone()
            exists = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                (TABLE_NAME,),
            ).fetchone()
            if exists and int(version) != SCHEMA_VERSION:
                # Logs are not migrated across schema versions.
                conn.execute(f"DROP TABLE IF EXISTS {TABLE_NAME}")
                logger.info(
                    "record_table_recreated",
                    extra={"fields": {"from_version": int(version), "to_version": SCHEMA_VERSION}},
                )
            conn.execute(SCHEMA_SQL)
            conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")

    def create_table(self) -> None:
        """Create the record table if it is missing. Never raises."""

        if self._closed:
            logger.warning("create_table_skipped", extra={"fields": {"reason": "store closed"}})
            return
        try:
            self._create_schema()
        except sqlite3.DatabaseError as exc:
            if self._is_corruption_error(exc) and self._recover_from_corruption():
                return
            logger.error(
                "create_table_failed",
                extra={"fields": {"path": str(self.path), "error": repr(exc)}},
            )
        except OSError as exc:
            logger.error(
                "create_table_failed",
                extra={"fields": {"path": str(self.path), "error": repr(exc)}},
            )

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    # -----------------------------
    # Corruption recovery
    # -----------------------------

    @staticmethod
    def _is_corruption_error(exc: BaseException) -> bool:
        text = str(exc).strip().lower()
        return any(marker in text for marker in _CORRUPTION_MARKERS)

    def _corrupt_backup_path(self, source: Path, *, stamp: str) -> Path:
        base = source.with_name(f"{source.name}.corrupt-{stamp}")
        if not base.exists():
            return base
        idx = 1
        while True:
            candidate = source.with_name(f"{source.name}.corrupt-{stamp}-{idx}")
            if not candidate.exists():
                return candidate
            idx += 1

    def _recover_from_corruption(self) -> bool:
        if not self.recover_corruption:
            return False

        stamp = _utcnow().strftime("%Y%m%dT%H%M%SZ")
        moved: list[Path] = []
        candidates = [
            self.path,
            self.path.with_name(f"{self.path.name}-wal"),
            self.path.with_name(f"{self.path.name}-shm"),
        ]

        for source in candidates:
            if not source.exists():
                continue
            target = self._corrupt_backup_path(source, stamp=stamp)
            try:
                source.replace(target)
            except OSError as exc:
                logger.error(
                    "corrupt_file_move_failed",
                    extra={"fields": {"path": str(source), "error": repr(exc)}},
                )
                return False
            moved.append(target)

        if moved:
            logger.warning(
                "sqlite_corruption_detected",
                extra={"fields": {"moved": [str(p) for p in moved]}},
            )

        try:
            self._create_schema()
        except sqlite3.Error as exc:
            logger.error("reinitialize_after_corruption_failed", extra={"fields": {"error": repr(exc)}})
            return False
        return True

    # -----------------------------
    # Operation runner
    # -----------------------------

    def _execute(self, op: str, fn: Callable[[sqlite3.Connection], _T]) -> StoreResult[_T]:
        if self._closed:
            return self._failed(op, StorageError("store is closed"))

        try:
            with self._session() as conn:
                return StoreResult(value=fn(conn))
        except sqlite3.DatabaseError as exc:
            if self._is_corruption_error(exc) and self._recover_from_corruption():
                try:
                    with self._session() as conn:
                        return StoreResult(value=fn(conn))
                except sqlite3.Error as retry_exc:
                    return self._failed(op, retry_exc)
            return self._failed(op, exc)
        except sqlite3.Error as exc:
            return self._failed(op, exc)

    @staticmethod
    def _failed(op: str, exc: BaseException) -> StoreResult:
        logger.error("store_operation_failed", extra={"fields": {"op": op, "error": repr(exc)}})
        return StoreResult(error=StorageError(f"{op}: {exc}"))

    def _write(self, op: str, fn: Callable[[sqlite3.Connection], _T]) -> StoreResult[_T]:
        with self._write_lock:
            return self._execute(op, fn)

    # -----------------------------
    # Public API
    # -----------------------------

    def count_result(self) -> StoreResult[int]:
        def _op(conn: sqlite3.Connection) -> int:
            (n,) = conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}").fetchone()
            return int(n)

        return self._execute("count", _op)

    def count(self) -> int:
        return int(self.count_result().or_default(0))

    def batch_count(self) -> int:
        return int(math.ceil(self.count() / BATCH_LIMIT))

    def insert(self, record: LogRecord) -> Optional[int]:
        """Persist ``record`` and return its store-assigned id.

        Records with an empty message are ignored. Returns None when nothing
        was written.
        """

        if not record.message:
            return None

        def _op(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                f"INSERT INTO {TABLE_NAME}(log_level_name, tag, message, timestamp) VALUES(?,?,?,?)",
                (record.level_name, record.tag, record.message, record.timestamp),
            )
            return int(cur.lastrowid)

        return self._write("insert", _op).or_default(None)

    def delete_many(self, ids: Iterable[int]) -> int:
        unique = sorted({int(i) for i in ids if i is not None and int(i) > 0})
        if not unique:
            return 0

        def _op(conn: sqlite3.Connection) -> int:
            deleted = 0
            for start in range(0, len(unique), _DELETE_CHUNK):
                chunk = unique[start : start + _DELETE_CHUNK]
                placeholders = ",".join("?" for _ in chunk)
                cur = conn.execute(f"DELETE FROM {TABLE_NAME} WHERE id IN ({placeholders})", chunk)
                deleted += int(cur.rowcount)
            return deleted

        return int(self._write("delete_many", _op).or_default(0))

    def delete_one(self, record_id: int) -> int:
        def _op(conn: sqlite3.Connection) -> int:
            cur = conn.execute(f"DELETE FROM {TABLE_NAME} WHERE id = ?", (int(record_id),))
            return int(cur.rowcount)

        return int(self._write("delete_one", _op).or_default(0))

    def delete_all(self) -> int:
        def _op(conn: sqlite3.Connection) -> int:
            cur = conn.execute(f"DELETE FROM {TABLE_NAME}")
            return int(cur.rowcount)

        return int(self._write("delete_all", _op).or_default(0))

    def read_batch_result(self, batch_number: int) -> StoreResult[List[LogRecord]]:
        def _op(conn: sqlite3.Connection) -> List[LogRecord]:
            (total,) = conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}").fetchone()
            batches = int(math.ceil(int(total) / BATCH_LIMIT))

            index = int(batch_number) - 1
            if batches <= 1 or index < 0:
                index = 0

            rows = conn.execute(
                f"SELECT id, log_level_name, tag, message, timestamp FROM {TABLE_NAME} "
                "ORDER BY id ASC LIMIT ? OFFSET ?",
                (BATCH_LIMIT, index * BATCH_LIMIT),
            ).fetchall()

            out: List[LogRecord] = []
            for record_id, level_name, tag, message, timestamp in rows:
                if not message:
                    continue
                record = LogRecord(
                    level_name=level_name or "",
                    tag=tag or "",
                    message=message,
                    timestamp=timestamp or "",
                )
                out.append(record.with_id(record_id))
            return out

        return self._execute("read_batch", _op)

    def read_batch(self, batch_number: int = 1) -> Optional[List[LogRecord]]:
        """Return one window of up to BATCH_LIMIT records in insertion order.

        When the store holds at most one batch the window is always the first
        one, whatever ``batch_number`` says. Returns an empty list when no rows
        match and None only when the store could not be read.
        """

        return self.read_batch_result(batch_number).or_default(None)

    def purge_older_than(self, cutoff: timedelta | float) -> int:
        """Delete records stamped strictly before ``now - cutoff``."""

        try:
            if not isinstance(cutoff, timedelta):
                cutoff = timedelta(seconds=float(cutoff))
            boundary = format_timestamp(self._now_fn() - cutoff)
        except OverflowError:
            # Window reaches past datetime.min: nothing can be old enough.
            logger.warning("purge_window_out_of_range", extra={"fields": {"cutoff": str(cutoff)}})
            return 0

        def _op(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                f"DELETE FROM {TABLE_NAME} WHERE timestamp < ? AND timestamp GLOB ?",
                (boundary, _TIMESTAMP_GLOB),
            )
            return int(cur.rowcount)

        deleted = int(self._write("purge_older_than", _op).or_default(0))
        if deleted:
            logger.info("expired_logs_purged", extra={"fields": {"deleted": deleted, "cutoff": boundary}})
        return deleted

    def db_bytes(self) -> int:
        total = 0
        for candidate in (self.path, self.path.with_name(f"{self.path.name}-wal")):
            try:
                if candidate.exists():
                    total += int(candidate.stat().st_size)
            except OSError:
                continue
        return total

    def metrics(self) -> dict[str, int]:
        return {
            "log_db_bytes": self.db_bytes(),
            "log_queue_depth": self.count(),
        }
