from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

import requests

from .config import ConfigurationError, PreferenceStore, Preferences, Settings, load_settings
from .delivery import DeliveryCallback, DeliveryCoordinator, DeliveryCycle
from .formatting import LogFormat, default_export_file_name, write_lines_to_file
from .log_buffer import LogBuffer
from .models import LogLevel, LogRecord
from .store import SqliteRecordStore


logger = logging.getLogger("devicelog")

ASSERT_TAG = "ASSERT"


class DeviceLogger:
    """Process-level entry point: logging verbs, reads and delivery.

    Buffer-dependent calls made before ``initialize`` (or after a failed one)
    trigger a best-effort initialization and return a safe default for that
    call.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        log_format: LogFormat | None = None,
        session: requests.Session | None = None,
        preferences: PreferenceStore | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.log_level = self.settings.log_level
        self.url = self.settings.url
        self.expiry_s = self.settings.expiry_s
        self.log_format = log_format
        self._session = session
        self._prefs = preferences or PreferenceStore(Path(self.settings.prefs_path))
        self._lock = threading.RLock()
        self._buffer: Optional[LogBuffer] = None
        self._coordinator: Optional[DeliveryCoordinator] = None
        self._shut_down = False

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        log_format: LogFormat | None = None,
        session: requests.Session | None = None,
        push: bool = True,
    ) -> DeviceLogger:
        instance = cls(settings, log_format=log_format, session=session)
        instance.initialize(push=push)
        return instance

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def initialize(
        self,
        *,
        expiry_s: int | None = None,
        log_format: LogFormat | None = None,
        push: bool = True,
    ) -> None:
        """Open the buffer once; later calls only reconfigure.

        Purges expired records on first open and, when an endpoint URL is
        known, starts a delivery cycle.
        """

        with self._lock:
            if self._shut_down:
                logger.warning("initialize_after_shutdown_ignored")
                return

            prefs = self._prefs.load()
            if log_format is not None:
                self.log_format = log_format
            elif self.log_format is None:
                self.log_format = prefs.log_format or LogFormat()
            if expiry_s is not None:
                self.expiry_s = int(expiry_s)
            if not self.url:
                self.url = prefs.url

            if self._buffer is None:
                if prefs.log_level is not None:
                    self.log_level = prefs.log_level
                store = SqliteRecordStore(
                    self.settings.db_path,
                    journal_mode=self.settings.sqlite_journal_mode,
                    synchronous=self.settings.sqlite_synchronous,
                    temp_store=self.settings.sqlite_temp_store,
                    recover_corruption=self.settings.recover_corruption,
                )
                self._buffer = LogBuffer(store)
                self._coordinator = DeliveryCoordinator(
                    self._buffer,
                    session=self._session,
                    max_workers=self.settings.delivery_workers,
                    request_timeout_s=self.settings.request_timeout_s,
                    headers=self.settings.request_headers(),
                    log_format=self.log_format,
                )
                self._buffer.purge_expired(self.expiry_s)
                logger.info(
                    "device_logger_initialized",
                    extra={
                        "fields": {
                            "db_path": self.settings.db_path,
                            "level": self.log_level.name,
                            "url": self.url or "",
                            "pending": self._buffer.count(),
                        }
                    },
                )
            elif self._coordinator is not None:
                self._coordinator.log_format = self.log_format

            self._save_preferences()

        if push and self.url:
            self.push_logs()

    def _save_preferences(self) -> None:
        self._prefs.save(Preferences(url=self.url, log_level=self.log_level, log_format=self.log_format))

    def _ready(self) -> bool:
        if self._buffer is not None and not self._buffer.closed:
            return True
        if not self._shut_down:
            try:
                self.initialize(push=False)
            except Exception:
                logger.exception("lazy_initialize_failed")
        return False

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for queued writes to reach the store."""

        if self._buffer is None:
            return True
        return self._buffer.drain(timeout)

    def shutdown(self) -> None:
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
            coordinator, buffer = self._coordinator, self._buffer
        if coordinator is not None:
            coordinator.shutdown()
        if buffer is not None:
            buffer.shutdown(wait=True)
            buffer.store.close()

    # -----------------------------
    # Configuration
    # -----------------------------

    def set_url(self, url: str | None) -> None:
        if not url or not url.strip():
            raise ConfigurationError("API URL cannot be null or empty")
        with self._lock:
            self.url = url.strip()
            self._save_preferences()

    def get_url(self) -> str | None:
        return self.url

    def set_log_level(self, level: LogLevel | int | str) -> None:
        with self._lock:
            self.log_level = LogLevel.parse(level)
            self._save_preferences()

    def set_log_format(self, log_format: LogFormat) -> None:
        with self._lock:
            self.log_format = log_format
            if self._coordinator is not None:
                self._coordinator.log_format = log_format
            self._save_preferences()

    # -----------------------------
    # Logging verbs
    # -----------------------------

    def _emit(
        self,
        level: LogLevel,
        tag: str,
        message: str,
        exc: BaseException | None = None,
    ) -> None:
        logging.getLogger(tag or "devicelog").log(
            level.logging_level,
            message,
            exc_info=(type(exc), exc, exc.__traceback__) if exc is not None else None,
        )
        if level < self.log_level:
            return
        self._persist(LogRecord.create(level, tag, message))

    def _persist(self, record: LogRecord) -> None:
        if not record.message:
            return
        if not self._ready():
            return
        buffer = self._buffer
        if buffer is None:
            return
        try:
            buffer.add(record)
        except (RuntimeError, MemoryError) as exc:
            logger.error("log_enqueue_failed", extra={"fields": {"tag": record.tag, "error": repr(exc)}})

    def v(self, tag: str, message: str, exc: BaseException | None = None) -> None:
        self._emit(LogLevel.VERBOSE, tag, message, exc)

    def d(self, tag: str, message: str, exc: BaseException | None = None) -> None:
        self._emit(LogLevel.DEBUG, tag, message, exc)

    def i(self, tag: str, message: str, exc: BaseException | None = None) -> None:
        self._emit(LogLevel.INFO, tag, message, exc)

    def w(self, tag: str, message: str, exc: BaseException | None = None) -> None:
        self._emit(LogLevel.WARN, tag, message, exc)

    def e(self, tag: str, message: str, exc: BaseException | None = None) -> None:
        self._emit(LogLevel.ERROR, tag, message, exc)

    def exception(self, tag: str, message: str | BaseException | None, exc: BaseException | None = None) -> None:
        if isinstance(message, BaseException):
            exc = message
            message = str(message)
        if message is None:
            return
        caller = sys._getframe(1).f_code.co_name
        text = f"EXCEPTION: {caller}, {message}"
        self._emit(LogLevel.ERROR, tag, text, exc)

    def a(self, message: str) -> None:
        self._emit(LogLevel.ASSERT, ASSERT_TAG, message)

    # -----------------------------
    # Reads
    # -----------------------------

    def get_device_logs(self, delete_logs: bool = True, batch_no: int = 1) -> List[LogRecord]:
        if not self._ready() or self._buffer is None:
            return []
        logs = self._buffer.get_batch(batch_no)
        if logs is None:
            return []
        if delete_logs:
            self._buffer.clear(logs)
        return logs

    def _format_lines(self, logs: List[LogRecord]) -> List[str]:
        log_format = self.log_format or LogFormat()
        return [log_format.format_log_message(r.level_name, r.tag, r.message, r.timestamp) for r in logs]

    def get_device_logs_as_strings(self, delete_logs: bool = True, batch_no: int = 1) -> List[str]:
        if not self._ready():
            return []
        if not self.has_pending_device_logs():
            return []
        return self._format_lines(self.get_device_logs(delete_logs, batch_no))

    def get_device_logs_in_file(self, file_name: str | None = None, delete_logs: bool = True) -> Optional[Path]:
        """Write every pending record to a text file, one formatted line each.

        Returns the file path, or None when nothing was written.
        """

        if not self._ready() or self._buffer is None:
            return None

        name = file_name or default_export_file_name()
        directory = Path(self.settings.export_dir)
        path: Optional[Path] = None

        batches = self._buffer.batch_count()
        for index in range(1, batches + 1):
            # Deleting shrinks the store, so the next window is always batch 1.
            logs = self._buffer.get_batch(1 if delete_logs else index)
            if not logs:
                continue
            written = write_lines_to_file(directory, name, self._format_lines(logs))
            if written is None:
                break
            path = written
            if delete_logs:
                self._buffer.clear(logs)

        if path is not None:
            logger.info("log_file_created", extra={"fields": {"path": str(path.resolve())}})
        return path

    def has_pending_device_logs(self) -> bool:
        if not self._ready() or self._buffer is None:
            return False
        return self._buffer.count() > 0

    def get_device_logs_count(self) -> int:
        if not self._ready() or self._buffer is None:
            return 0
        return self._buffer.count()

    def get_device_log_batch_count(self) -> int:
        if not self._ready() or self._buffer is None:
            return 0
        return self._buffer.batch_count()

    # -----------------------------
    # Delivery and deletion
    # -----------------------------

    def push_logs(self, callback: Optional[DeliveryCallback] = None) -> Optional[DeliveryCycle]:
        if not self._ready() or self._coordinator is None:
            return None
        if not self.url:
            logger.error("delivery_url_missing", extra={"fields": {"hint": "call set_url() first"}})
            return None
        return self._coordinator.deliver(self.url, callback)

    def purge_expired(self, expiry_s: int | None = None) -> int:
        if not self._ready() or self._buffer is None:
            return 0
        return self._buffer.purge_expired(self.expiry_s if expiry_s is None else expiry_s)

    def delete_logs(self) -> None:
        if not self._ready() or self._buffer is None:
            return
        self._buffer.clear_all()


_default: Optional[DeviceLogger] = None
_default_lock = threading.Lock()


def initialize(
    settings: Settings | None = None,
    *,
    log_format: LogFormat | None = None,
    expiry_s: int | None = None,
    push: bool = True,
) -> DeviceLogger:
    """Create the process-wide logger, or reconfigure the existing one."""

    global _default
    with _default_lock:
        if _default is None:
            _default = DeviceLogger(settings, log_format=log_format)
            instance = _default
            reuse = False
        else:
            instance = _default
            reuse = True
    if reuse and settings is not None:
        instance.log_level = settings.log_level
        if settings.url:
            instance.url = settings.url
    instance.initialize(expiry_s=expiry_s, log_format=log_format, push=push)
    return instance


def get_logger() -> Optional[DeviceLogger]:
    return _default


def shutdown() -> None:
    global _default
    with _default_lock:
        instance, _default = _default, None
    if instance is not None:
        instance.shutdown()
