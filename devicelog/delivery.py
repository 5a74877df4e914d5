from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import requests

from .formatting import LogFormat
from .log_buffer import LogBuffer
from .models import LogRecord


logger = logging.getLogger("devicelog.delivery")

DEFAULT_REQUEST_TIMEOUT_S = 10.0
DEFAULT_MAX_WORKERS = 8


class DeliveryError(RuntimeError):
    """One log record that the endpoint did not acknowledge.

    Never raised to callers of ``deliver``; collected in the cycle's failure list.
    """

    def __init__(
        self,
        message: str,
        *,
        record: LogRecord | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.record = record
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class DeliveryResponse:
    record: LogRecord
    status_code: int
    body: str = ""


@dataclass(frozen=True)
class DeliveryOutcome:
    successes: List[DeliveryResponse] = field(default_factory=list)
    failures: List[DeliveryError] = field(default_factory=list)


DeliveryCallback = Callable[[List[DeliveryResponse], List[DeliveryError]], None]
DeliveryResult = Union[DeliveryResponse, DeliveryError]


def build_payload(record: LogRecord, log_format: LogFormat | None = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = dict(record.as_fields())
    if log_format is not None:
        payload.update(log_format.device_metadata())
    return payload


def post_log(
    session: requests.Session,
    url: str,
    payload: Dict[str, Any],
    *,
    headers: Mapping[str, str] | None = None,
    timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
) -> requests.Response:
    return session.post(url, json=payload, headers=dict(headers or {}), timeout=timeout_s)


class DeliveryCycle:
    """Tracks one fan-out until every dispatched record has resolved."""

    def __init__(self, *, generation: int, size: int, callback: Optional[DeliveryCallback] = None) -> None:
        self.generation = generation
        self.size = size
        self._callback = callback
        self._lock = threading.Lock()
        self._remaining = size
        self._successes: List[DeliveryResponse] = []
        self._failures: List[DeliveryError] = []
        self._done = threading.Event()
        self._superseded = False
        self.outcome: Optional[DeliveryOutcome] = None

    @property
    def superseded(self) -> bool:
        return self._superseded

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def _record(self, result: DeliveryResult) -> bool:
        """Add one resolution. Returns True for the resolution that completes the cycle."""

        with self._lock:
            if self._superseded or self.outcome is not None:
                return False
            if isinstance(result, DeliveryResponse):
                self._successes.append(result)
            else:
                self._failures.append(result)
            self._remaining -= 1
            if self._remaining > 0:
                return False
            self.outcome = DeliveryOutcome(successes=list(self._successes), failures=list(self._failures))
            return True

    def _finish(self) -> None:
        outcome = self.outcome
        try:
            if self._callback is not None and outcome is not None:
                self._callback(outcome.successes, outcome.failures)
        except Exception:
            logger.exception("delivery_callback_failed", extra={"fields": {"generation": self.generation}})
        finally:
            self._done.set()

    def _complete_empty(self) -> None:
        with self._lock:
            self.outcome = DeliveryOutcome()
        self._finish()

    def _supersede(self) -> None:
        with self._lock:
            if self.outcome is not None:
                return
            self._superseded = True
        self._done.set()

    def wait(self, timeout: float | None = None) -> Optional[DeliveryOutcome]:
        """Block until the cycle completes. Returns None if it was superseded or timed out."""

        self._done.wait(timeout)
        return self.outcome


class DeliveryCoordinator:
    """Uploads one batch per cycle, one request per record.

    Starting a cycle supersedes the previous one: its queued requests are
    cancelled and any response that still arrives is ignored.
    """

    def __init__(
        self,
        buffer: LogBuffer,
        *,
        session: requests.Session | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        headers: Mapping[str, str] | None = None,
        log_format: LogFormat | None = None,
    ) -> None:
        self.buffer = buffer
        self._owns_session = session is None
        self.session = session if session is not None else requests.Session()
        self.request_timeout_s = float(request_timeout_s)
        self.headers = dict(headers or {})
        self.log_format = log_format
        self._pool = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="devicelog-delivery")
        self._lock = threading.RLock()
        self._generation = 0
        self._inflight: List[Future] = []
        self._current: Optional[DeliveryCycle] = None
        self._closed = False

    @property
    def generation(self) -> int:
        return self._generation

    def _invalidate_locked(self) -> None:
        self._generation += 1
        if self._current is not None:
            self._current._supersede()
            self._current = None
        for future in self._inflight:
            future.cancel()
        self._inflight = []

    def deliver(self, url: str | None, callback: Optional[DeliveryCallback] = None) -> Optional[DeliveryCycle]:
        """Start a delivery cycle for batch 1.

        Returns None without side effects when the coordinator or buffer is
        shut down, the URL is empty, or the batch could not be read.
        """

        if not url:
            logger.error("delivery_url_missing")
            return None
        if self._closed or self.buffer.closed:
            return None

        with self._lock:
            self._invalidate_locked()
            generation = self._generation

            batch = self.buffer.get_batch(1)
            if batch is None:
                logger.warning("delivery_batch_unavailable", extra={"fields": {"generation": generation}})
                return None

            cycle = DeliveryCycle(generation=generation, size=len(batch), callback=callback)
            self._current = cycle
            if not batch:
                self._current = None
                cycle._complete_empty()
                return cycle

            logger.info(
                "delivery_cycle_started",
                extra={"fields": {"generation": generation, "records": len(batch)}},
            )
            for record in batch:
                future = self._pool.submit(self._send, url, record)
                self._inflight.append(future)
                future.add_done_callback(partial(self._resolve, cycle, record))
            return cycle

    def _send(self, url: str, record: LogRecord) -> DeliveryResult:
        payload = build_payload(record, self.log_format)
        try:
            resp = post_log(
                self.session,
                url,
                payload,
                headers=self.headers,
                timeout_s=self.request_timeout_s,
            )
        except requests.RequestException as exc:
            return DeliveryError(f"request failed: {exc}", record=record)

        if 200 <= resp.status_code < 300:
            return DeliveryResponse(record=record, status_code=resp.status_code, body=(resp.text or "")[:1000])
        return DeliveryError(
            f"delivery failed ({resp.status_code})",
            record=record,
            status_code=resp.status_code,
            body=(resp.text or "")[:1000],
        )

    def _resolve(self, cycle: DeliveryCycle, record: LogRecord, future: Future) -> None:
        if future.cancelled():
            return
        try:
            result = future.result()
        except Exception as exc:
            result = DeliveryError(f"request failed: {exc}", record=record)

        with self._lock:
            if cycle.generation != self._generation:
                logger.debug("stale_delivery_ignored", extra={"fields": {"generation": cycle.generation}})
                return
            if isinstance(result, DeliveryResponse):
                self.buffer.delete_one(result.record)
            else:
                logger.warning(
                    "log_delivery_failed",
                    extra={
                        "fields": {
                            "record_id": result.record.id if result.record else None,
                            "status_code": result.status_code,
                            "error": result.message,
                        }
                    },
                )
            finished = cycle._record(result)
            if finished:
                self._inflight = []
                self._current = None

        outcome = cycle.outcome
        if finished and outcome is not None:
            logger.info(
                "delivery_cycle_complete",
                extra={
                    "fields": {
                        "generation": cycle.generation,
                        "delivered": len(outcome.successes),
                        "failed": len(outcome.failures),
                    }
                },
            )
            cycle._finish()

    def cancel(self) -> None:
        """Supersede the in-flight cycle without starting a new one."""

        with self._lock:
            self._invalidate_locked()

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._invalidate_locked()
        self._pool.shutdown(wait=wait, cancel_futures=True)
        if self._owns_session:
            self.session.close()
