from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

from narrator.describe.base import Describer
from narrator.describe.errors import ErrorKind, classify_error, is_retryable
from narrator.schemas.capture_v1 import CaptureRecord
from narrator.store.records import CLAIMABLE_STATUSES, AsyncRecordStore, RecordBusy, RecordNotFound, RecordStore

log = logging.getLogger("description_queue")


@dataclass
class QueueEntry:
    record_id: str
    enqueued_at: float
    next_attempt_at: float
    attempt: int = 0


@dataclass(frozen=True)
class DescriptionOutcome:
    record_id: str
    status: Literal["described", "failed"]
    attempts: int
    description: str | None = None
    error: ErrorKind | None = None
    reason: str | None = None
    used_fallback: bool = False
    # Terminal record as written by the queue; None when the record no longer exists.
    record: CaptureRecord | None = None


OutcomeListener = Callable[[DescriptionOutcome], None]
ErrorHook = Callable[[BaseException, str], None]
SleepFn = Callable[[float], Awaitable[None]]


def _truncate(s: str, n: int = 300) -> str:
    s = s or ""
    return s if len(s) <= n else s[:n] + "…"


class DescriptionQueue:
    """FIFO worker that feeds capture records to the description service.

    - at most ``max_concurrent`` describe calls in flight
    - consecutive call starts spaced by at least ``rate_limit_delay_ms``
    - retryable failures go to the back of the queue until ``retry_limit`` attempts are used
    - ``stop()``/``clear()`` never abort an in-flight call; it still writes its terminal result

    Only terminal outcomes leave the queue: through the future returned by ``enqueue`` and
    through listeners registered with ``subscribe``.
    """

    def __init__(
        self,
        describer: Describer,
        store: RecordStore,
        *,
        prompt: str,
        max_concurrent: int = 1,
        retry_limit: int = 3,
        rate_limit_delay_ms: int = 1000,
        quota_escalate_after: int | None = None,
        fallback: Describer | None = None,
        on_error: ErrorHook | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if retry_limit < 1:
            raise ValueError("retry_limit must be >= 1")
        if rate_limit_delay_ms < 0:
            raise ValueError("rate_limit_delay_ms must be >= 0")

        self._describer = describer
        self._records = AsyncRecordStore(store)
        self._prompt = prompt
        self._max_concurrent = max_concurrent
        self._retry_limit = retry_limit
        self._delay_s = rate_limit_delay_ms / 1000.0
        self._quota_escalate_after = quota_escalate_after
        self._fallback = fallback
        self._on_error = on_error
        self._clock = clock
        self._sleep = sleep

        self._pending: deque[QueueEntry] = deque()
        self._in_flight: dict[str, asyncio.Task] = {}
        self._futures: dict[str, asyncio.Future[DescriptionOutcome]] = {}
        self._listeners: list[OutcomeListener] = []

        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._dispatcher: asyncio.Task | None = None
        self._stopped = False
        self._last_start_at: float | None = None
        self._consecutive_quota = 0

        self.processed_count = 0
        self.error_count = 0

    # -- public surface ---------------------------------------------------

    @property
    def is_processing(self) -> bool:
        return bool(self._pending or self._in_flight)

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def pending_ids(self) -> list[str]:
        return [e.record_id for e in self._pending]

    @property
    def in_flight_ids(self) -> list[str]:
        return list(self._in_flight)

    def __len__(self) -> int:
        return len(self._pending) + len(self._in_flight)

    def subscribe(self, listener: OutcomeListener) -> None:
        self._listeners.append(listener)

    async def enqueue(self, record: CaptureRecord) -> asyncio.Future[DescriptionOutcome]:
        """Queue a record for description and return a future for its terminal outcome.

        Idempotent while the id is queued or processing here. The record is claimed in the
        store first; ``RecordBusy`` is raised when another queue (in this or another process)
        already owns it.
        """

        existing = self._futures.get(record.id)
        if existing is not None:
            log.debug("Record %s already queued; enqueue ignored", record.id)
            return existing

        future: asyncio.Future[DescriptionOutcome] = asyncio.get_running_loop().create_future()
        self._futures[record.id] = future
        try:
            claimed = await self._records.claim(
                record.id,
                from_statuses=CLAIMABLE_STATUSES,
                status="queued",
                attempt=0,
                description=None,
                last_error=None,
                used_fallback=False,
            )
        except BaseException:
            self._release(record.id, future)
            raise
        if claimed is None:
            self._release(record.id, future)
            log.info("Record %s is owned by another worker; enqueue refused", record.id)
            raise RecordBusy(record.id)

        now = self._clock()
        self._pending.append(QueueEntry(record_id=record.id, enqueued_at=now, next_attempt_at=now))
        log.info("Queued record %s (%s waiting)", record.id, len(self._pending))

        self._ensure_dispatcher()
        self._wakeup.set()
        self._update_idle()
        return future

    def start(self) -> None:
        self._stopped = False
        self._ensure_dispatcher()
        self._wakeup.set()
        self._update_idle()

    def stop(self) -> None:
        """Stop dequeuing. In-flight calls complete and write their results."""

        self._stopped = True
        dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is not None and not dispatcher.done():
            dispatcher.cancel()
        log.info("Queue stopped (%s waiting, %s in flight)", len(self._pending), len(self._in_flight))
        self._update_idle()

    async def clear(self) -> int:
        """Drop waiting entries; their records go back to pending. In-flight calls are untouched."""

        cleared = list(self._pending)
        self._pending.clear()
        for entry in cleared:
            future = self._futures.pop(entry.record_id, None)
            if future is not None and not future.done():
                future.cancel()
        self._update_idle()

        for entry in cleared:
            try:
                await self._records.update(entry.record_id, status="pending")
            except RecordNotFound:
                log.warning("Cleared record %s no longer exists", entry.record_id)
        if cleared:
            log.info("Queue cleared: %s entries dropped", len(cleared))
        return len(cleared)

    async def drain(self) -> None:
        """Wait until nothing is in flight and nothing is waiting (or the queue is stopped)."""

        await self._idle.wait()

    # -- dispatcher -------------------------------------------------------

    def _release(self, record_id: str, future: asyncio.Future) -> None:
        if self._futures.get(record_id) is future:
            del self._futures[record_id]
        if not future.done():
            future.cancel()

    def _ensure_dispatcher(self) -> None:
        if self._stopped:
            return
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch(), name="description-queue")

    def _update_idle(self) -> None:
        if self._in_flight or (self._pending and not self._stopped):
            self._idle.clear()
        else:
            self._idle.set()

    def _next_start_at(self, entry: QueueEntry) -> float:
        if self._last_start_at is None:
            return entry.next_attempt_at
        return max(entry.next_attempt_at, self._last_start_at + self._delay_s)

    async def _dispatch(self) -> None:
        while not self._stopped:
            if not self._pending or len(self._in_flight) >= self._max_concurrent:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            wait_s = self._next_start_at(self._pending[0]) - self._clock()
            if wait_s > 0:
                await self._sleep(wait_s)
                continue

            self._start(self._pending.popleft())

    def _start(self, entry: QueueEntry) -> None:
        entry.attempt += 1
        self._last_start_at = self._clock()
        self._in_flight[entry.record_id] = asyncio.get_running_loop().create_task(
            self._run(entry), name=f"describe-{entry.record_id}"
        )
        self._update_idle()

    async def _run(self, entry: QueueEntry) -> None:
        rid = entry.record_id
        try:
            try:
                record = await self._records.update(rid, status="processing", attempt=entry.attempt)
            except RecordNotFound:
                log.error("Record %s vanished before processing", rid)
                self._resolve(
                    DescriptionOutcome(
                        record_id=rid, status="failed", attempts=entry.attempt, error="validation", reason="record_missing"
                    )
                )
                return

            log.info("Describing record %s (attempt %s/%s)", rid, entry.attempt, self._retry_limit)
            try:
                description = await self._describer.describe(record.image_ref, self._prompt)
            except Exception as exc:
                await self._on_failure(entry, record.image_ref, exc)
            else:
                await self._on_success(entry, description)
        except Exception as e:
            log.exception("Could not record outcome for %s", rid)
            await self._fail_internal(entry, e)
        finally:
            self._in_flight.pop(rid, None)
            self._wakeup.set()
            self._update_idle()

    async def _fail_internal(self, entry: QueueEntry, exc: Exception) -> None:
        record = None
        try:
            record = await self._records.update(entry.record_id, status="failed", last_error="transient")
        except Exception:
            log.exception("Could not mark record %s failed; it stays processing", entry.record_id)
        self._resolve(
            DescriptionOutcome(
                record_id=entry.record_id,
                status="failed",
                attempts=entry.attempt,
                error="transient",
                reason=f"internal:{type(exc).__name__}",
                record=record,
            )
        )

    async def _on_success(self, entry: QueueEntry, description: str, *, used_fallback: bool = False) -> None:
        self._consecutive_quota = 0
        record = await self._records.update(
            entry.record_id,
            status="described",
            description=description,
            last_error=None,
            used_fallback=used_fallback,
        )
        self.processed_count += 1
        log.info("Record %s described after %s attempt(s)", entry.record_id, entry.attempt)
        self._resolve(
            DescriptionOutcome(
                record_id=entry.record_id,
                status="described",
                attempts=entry.attempt,
                description=description,
                used_fallback=used_fallback,
                record=record,
            )
        )

    async def _on_failure(self, entry: QueueEntry, image_ref: str, exc: Exception) -> None:
        rid = entry.record_id
        kind = classify_error(exc)
        self.error_count += 1
        self._consecutive_quota = self._consecutive_quota + 1 if kind == "quota_exceeded" else 0
        log.warning("Describe failed for %s (attempt %s/%s, %s): %s", rid, entry.attempt, self._retry_limit, kind, exc)

        if self._on_error is not None:
            try:
                self._on_error(exc, rid)
            except Exception:
                log.exception("on_error hook failed")

        if is_retryable(kind) and self._fallback is not None and entry.attempt == 1:
            try:
                description = await self._fallback.describe(image_ref, self._prompt)
            except Exception as fb_exc:
                log.warning("Fallback describer failed for %s: %s", rid, fb_exc)
            else:
                log.info("Record %s described by fallback %s", rid, self._fallback.kind)
                await self._on_success(entry, description, used_fallback=True)
                return

        escalated = (
            kind == "quota_exceeded"
            and self._quota_escalate_after is not None
            and self._consecutive_quota >= self._quota_escalate_after
        )
        if is_retryable(kind) and entry.attempt < self._retry_limit and not escalated and not self._stopped:
            entry.next_attempt_at = self._clock() + self._delay_s
            await self._records.update(rid, status="queued", last_error=kind)
            self._pending.append(entry)
            return

        if escalated:
            log.error("Quota exceeded %s times in a row; failing record %s", self._consecutive_quota, rid)
        record = await self._records.update(rid, status="failed", last_error=kind)
        self._resolve(
            DescriptionOutcome(
                record_id=rid,
                status="failed",
                attempts=entry.attempt,
                error=kind,
                reason=_truncate(str(exc)),
                record=record,
            )
        )

    def _resolve(self, outcome: DescriptionOutcome) -> None:
        future = self._futures.pop(outcome.record_id, None)
        if future is not None and not future.done():
            future.set_result(outcome)
        for listener in list(self._listeners):
            try:
                listener(outcome)
            except Exception:
                log.exception("Outcome listener failed for %s", outcome.record_id)
