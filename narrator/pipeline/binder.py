from __future__ import annotations

import logging
from typing import Callable

from narrator.pipeline.queue import DescriptionOutcome, DescriptionQueue
from narrator.schemas.capture_v1 import CaptureRecord
from narrator.store.records import RecordStore

log = logging.getLogger("result_binder")

ResultSink = Callable[[CaptureRecord, DescriptionOutcome], None]


class ResultBinder:
    """Delivers terminal outcomes to their originating record and keeps the "most recent" view.

    Records are matched strictly by id. Two captures taken in the same tick can share a
    ``captured_at`` value, so timestamps are never compared.

    Outcomes from the queue carry the record they wrote. ``store`` is only read for outcomes
    that arrive without one.
    """

    def __init__(self, store: RecordStore | None = None) -> None:
        self._store = store
        self._sinks: list[ResultSink] = []
        self._last_capture_id: str | None = None
        self._most_recent: CaptureRecord | None = None

    @property
    def last_capture_id(self) -> str | None:
        return self._last_capture_id

    @property
    def most_recent(self) -> CaptureRecord | None:
        return self._most_recent

    def attach(self, queue: DescriptionQueue) -> None:
        queue.subscribe(self.bind)

    def add_sink(self, sink: ResultSink) -> None:
        """Register a display/voice collaborator for terminal results."""
        self._sinks.append(sink)

    def track(self, record: CaptureRecord) -> None:
        self._last_capture_id = record.id
        self._most_recent = record

    def bind(self, outcome: DescriptionOutcome) -> CaptureRecord | None:
        record = outcome.record
        if record is None and self._store is not None:
            record = self._store.get(outcome.record_id)
        if record is None:
            log.warning("Outcome for unknown record %s dropped", outcome.record_id)
            return None

        if record.id == self._last_capture_id:
            self._most_recent = record

        for sink in list(self._sinks):
            try:
                sink(record, outcome)
            except Exception:
                log.exception("Result sink failed for %s", record.id)
        return record
