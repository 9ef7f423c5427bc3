from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Collection, Protocol, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from narrator.models.tables import CaptureRecordRow
from narrator.schemas.capture_v1 import CaptureRecord
from narrator.util.time import now_utc

T = TypeVar("T")

# A record in one of these states is not owned by any queue and may be claimed.
CLAIMABLE_STATUSES: frozenset[str] = frozenset({"pending", "described", "failed"})


class RecordNotFound(KeyError):
    pass


class RecordBusy(Exception):
    """The record is queued or processing somewhere else (possibly another process)."""


class RecordStore(Protocol):
    """Capture records keyed by id. ``update`` and ``claim`` must be atomic per id.

    ``blocking_io`` tells async callers to run the methods in a worker thread.
    """

    blocking_io: bool

    def add(self, record: CaptureRecord) -> CaptureRecord: ...

    def get(self, record_id: str) -> CaptureRecord | None: ...

    def update(self, record_id: str, **changes: Any) -> CaptureRecord: ...

    def claim(self, record_id: str, *, from_statuses: Collection[str], **changes: Any) -> CaptureRecord | None: ...

    def list(self, *, limit: int = 200) -> list[CaptureRecord]: ...


class MemoryRecordStore:
    blocking_io = False

    def __init__(self) -> None:
        self._records: dict[str, CaptureRecord] = {}
        self._order: list[str] = []
        self._lock = threading.Lock()

    def add(self, record: CaptureRecord) -> CaptureRecord:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Duplicate capture record id: {record.id}")
            self._records[record.id] = record
            self._order.append(record.id)
        return record

    def get(self, record_id: str) -> CaptureRecord | None:
        with self._lock:
            return self._records.get(record_id)

    def update(self, record_id: str, **changes: Any) -> CaptureRecord:
        with self._lock:
            return self._apply(record_id, changes)

    def claim(self, record_id: str, *, from_statuses: Collection[str], **changes: Any) -> CaptureRecord | None:
        """Apply ``changes`` only if the record's status is in ``from_statuses``."""

        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise RecordNotFound(record_id)
            if current.status not in from_statuses:
                return None
            return self._apply(record_id, changes)

    def _apply(self, record_id: str, changes: dict[str, Any]) -> CaptureRecord:
        current = self._records.get(record_id)
        if current is None:
            raise RecordNotFound(record_id)
        # Re-validate so the status/description rule holds on every write.
        updated = CaptureRecord.model_validate({**current.model_dump(), **changes})
        self._records[record_id] = updated
        return updated

    def list(self, *, limit: int = 200) -> list[CaptureRecord]:
        with self._lock:
            ids = list(reversed(self._order))[:limit]
            return [self._records[i] for i in ids]


def _to_record(row: CaptureRecordRow) -> CaptureRecord:
    return CaptureRecord(
        id=row.id,
        image_ref=row.image_ref,
        captured_at=row.captured_at,
        source=row.source,
        status=row.status,
        description=row.description,
        attempt=row.attempt,
        last_error=row.last_error,
        used_fallback=row.used_fallback,
    )


class SqlRecordStore:
    """Capture history persisted through SQLAlchemy; one short session per call.

    Shared by the API process and Celery workers. Status transitions go through
    ``SELECT ... FOR UPDATE`` so two processes never own the same record.
    """

    blocking_io = True

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def add(self, record: CaptureRecord) -> CaptureRecord:
        with self._session_factory() as db:
            db.add(
                CaptureRecordRow(
                    id=record.id,
                    image_ref=record.image_ref,
                    source=record.source,
                    status=record.status,
                    description=record.description,
                    attempt=record.attempt,
                    last_error=record.last_error,
                    used_fallback=record.used_fallback,
                    captured_at=record.captured_at,
                    updated_at=now_utc(),
                )
            )
            db.commit()
        return record

    def get(self, record_id: str) -> CaptureRecord | None:
        with self._session_factory() as db:
            row = db.query(CaptureRecordRow).filter(CaptureRecordRow.id == record_id).one_or_none()
            return _to_record(row) if row else None

    def update(self, record_id: str, **changes: Any) -> CaptureRecord:
        return self._locked_update(record_id, None, changes)

    def claim(self, record_id: str, *, from_statuses: Collection[str], **changes: Any) -> CaptureRecord | None:
        return self._locked_update(record_id, frozenset(from_statuses), changes)

    def _locked_update(
        self, record_id: str, from_statuses: frozenset[str] | None, changes: dict[str, Any]
    ) -> CaptureRecord | None:
        with self._session_factory() as db:
            row = (
                db.query(CaptureRecordRow)
                .filter(CaptureRecordRow.id == record_id)
                .with_for_update()
                .one_or_none()
            )
            if row is None:
                raise RecordNotFound(record_id)
            if from_statuses is not None and row.status not in from_statuses:
                db.rollback()
                return None

            updated = CaptureRecord.model_validate({**_to_record(row).model_dump(), **changes})
            row.status = updated.status
            row.description = updated.description
            row.attempt = updated.attempt
            row.last_error = updated.last_error
            row.used_fallback = updated.used_fallback
            row.updated_at = now_utc()
            db.commit()
            return updated

    def list(self, *, limit: int = 200) -> list[CaptureRecord]:
        with self._session_factory() as db:
            rows = (
                db.query(CaptureRecordRow)
                .order_by(CaptureRecordRow.captured_at.desc())
                .limit(limit)
                .all()
            )
            return [_to_record(r) for r in rows]


class AsyncRecordStore:
    """Awaitable view of a ``RecordStore`` for the pipeline's event loop.

    Stores doing blocking I/O (SQL) run in a worker thread so database latency never stalls
    the scheduler timer or the queue dispatcher.
    """

    def __init__(self, store: RecordStore) -> None:
        self.sync = store
        self._offload = bool(getattr(store, "blocking_io", False))

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if self._offload:
            return await asyncio.to_thread(fn, *args, **kwargs)
        return fn(*args, **kwargs)

    async def add(self, record: CaptureRecord) -> CaptureRecord:
        return await self._call(self.sync.add, record)

    async def get(self, record_id: str) -> CaptureRecord | None:
        return await self._call(self.sync.get, record_id)

    async def update(self, record_id: str, **changes: Any) -> CaptureRecord:
        return await self._call(self.sync.update, record_id, **changes)

    async def claim(self, record_id: str, *, from_statuses: Collection[str], **changes: Any) -> CaptureRecord | None:
        return await self._call(self.sync.claim, record_id, from_statuses=from_statuses, **changes)

    async def list(self, *, limit: int = 200) -> list[CaptureRecord]:
        return await self._call(self.sync.list, limit=limit)
