from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import timedelta
from typing import Iterable, List, Optional

from .models import LogRecord
from .store import SqliteRecordStore


logger = logging.getLogger("devicelog.buffer")


class LogBuffer:
    """Buffer-level access to the record store.

    Writes go through a single worker thread so they apply in call order
    without blocking the caller. Reads run synchronously on the calling thread
    and may not see writes that are still queued.
    """

    def __init__(self, store: SqliteRecordStore) -> None:
        self.store = store
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="devicelog-writer")
        self._lock = threading.Lock()
        self._last_write: Optional[Future] = None
        self._closed = False

    def _persist(self, record: LogRecord) -> Optional[int]:
        try:
            return self.store.insert(record)
        except MemoryError:
            logger.error("log_dropped", extra={"fields": {"reason": "out of memory", "tag": record.tag}})
            return None
        except Exception:
            logger.exception("log_dropped", extra={"fields": {"tag": record.tag}})
            return None

    def add(self, record: LogRecord) -> Optional[Future]:
        """Queue ``record`` for persistence and return immediately."""

        with self._lock:
            if self._closed:
                logger.warning("log_dropped", extra={"fields": {"reason": "buffer shut down", "tag": record.tag}})
                return None
            future = self._executor.submit(self._persist, record)
            self._last_write = future
            return future

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until every write queued so far has been applied."""

        with self._lock:
            last = self._last_write
        if last is None:
            return True
        try:
            last.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def get_batch(self, batch_number: int = 1) -> Optional[List[LogRecord]]:
        return self.store.read_batch(batch_number)

    def clear(self, records: Iterable[LogRecord]) -> int:
        ids = {r.id for r in records if r is not None and r.id is not None and r.id > 0}
        return self.store.delete_many(ids)

    def delete_one(self, record: LogRecord) -> int:
        if record.id is None:
            return 0
        return self.store.delete_one(record.id)

    def clear_all(self) -> int:
        return self.store.delete_all()

    def count(self) -> int:
        return self.store.count()

    def batch_count(self) -> int:
        return self.store.batch_count()

    def purge_expired(self, expiry: timedelta | float) -> int:
        return self.store.purge_older_than(expiry)

    @property
    def closed(self) -> bool:
        return self._closed

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=wait)
