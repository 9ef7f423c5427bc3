from __future__ import annotations

import asyncio
import threading

import pytest

from narrator.describe.errors import AuthenticationError, QuotaExceededError, TransientServiceError, ValidationError
from narrator.describe.stub import StubDescriber
from narrator.pipeline.queue import DescriptionQueue
from narrator.schemas.capture_v1 import CaptureRecord
from narrator.store.records import MemoryRecordStore, RecordBusy
from tests.utils_pipeline import FakeClock, ScriptedDescriber, flaky, settle


def _queue(describer, store, clock: FakeClock, **kw) -> DescriptionQueue:
    kw.setdefault("retry_limit", 3)
    kw.setdefault("rate_limit_delay_ms", 1000)
    return DescriptionQueue(describer, store, prompt="Describe.", clock=clock, sleep=clock.sleep, **kw)


def _add(store: MemoryRecordStore, ref: str) -> CaptureRecord:
    return store.add(CaptureRecord(image_ref=ref))


async def _drain(queue: DescriptionQueue) -> None:
    await asyncio.wait_for(queue.drain(), timeout=5)


@pytest.mark.asyncio
async def test_retry_goes_to_back_and_respects_spacing():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock, {"B": flaky(2)})
    queue = _queue(describer, store, clock)

    a, b, c = _add(store, "A"), _add(store, "B"), _add(store, "C")
    futures = [await queue.enqueue(r) for r in (a, b, c)]
    outcomes = await asyncio.wait_for(asyncio.gather(*futures), timeout=5)

    assert describer.called_refs == ["A", "B", "C", "B", "B"]
    starts = [t for _, t in describer.calls]
    assert starts == [0.0, 1.0, 2.0, 3.0, 4.0]
    assert describer.max_active == 1

    assert [o.status for o in outcomes] == ["described", "described", "described"]
    assert outcomes[1].attempts == 3
    assert store.get(b.id).attempt == 3
    assert store.get(b.id).description == "described B"
    assert queue.processed_count == 3
    assert queue.error_count == 2
    assert queue.is_processing is False


@pytest.mark.asyncio
async def test_retry_budget_is_exhausted_then_failed():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock, {"A": flaky(10)})
    queue = _queue(describer, store, clock)

    rec = _add(store, "A")
    outcome = await asyncio.wait_for(await queue.enqueue(rec), timeout=5)

    assert outcome.status == "failed"
    assert outcome.error == "transient"
    assert outcome.attempts == 3
    assert len(describer.calls) == 3

    stored = store.get(rec.id)
    assert stored.status == "failed"
    assert stored.attempt == 3
    assert stored.last_error == "transient"
    assert stored.description is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc, kind",
    [
        (AuthenticationError("bad key"), "authentication"),
        (ValidationError("empty prompt"), "validation"),
    ],
)
async def test_non_retryable_errors_fail_on_first_attempt(exc, kind):
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock, {"A": [exc]})
    queue = _queue(describer, store, clock)

    rec = _add(store, "A")
    outcome = await asyncio.wait_for(await queue.enqueue(rec), timeout=5)

    assert outcome.status == "failed"
    assert outcome.error == kind
    assert outcome.attempts == 1
    assert len(describer.calls) == 1
    assert store.get(rec.id).last_error == kind


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock)
    gates = [describer.hold(ref) for ref in ("A", "B", "C")]
    queue = _queue(describer, store, clock, max_concurrent=2, rate_limit_delay_ms=0)

    for ref in ("A", "B", "C"):
        await queue.enqueue(_add(store, ref))
    await settle()

    assert describer.called_refs == ["A", "B"]
    assert len(queue.in_flight_ids) == 2
    assert len(queue.pending_ids) == 1

    for gate in gates:
        gate.set()
    await _drain(queue)

    assert describer.called_refs == ["A", "B", "C"]
    assert describer.max_active == 2


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_while_queued():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock)
    queue = _queue(describer, store, clock)

    rec = _add(store, "A")
    first = await queue.enqueue(rec)
    second = await queue.enqueue(rec)
    assert first is second
    assert len(queue) == 1

    await asyncio.wait_for(first, timeout=5)
    assert describer.called_refs == ["A"]


@pytest.mark.asyncio
async def test_stop_lets_in_flight_call_finish():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock)
    gate = describer.hold("A")
    queue = _queue(describer, store, clock)

    a, b = _add(store, "A"), _add(store, "B")
    fut_a = await queue.enqueue(a)
    fut_b = await queue.enqueue(b)
    await settle()
    assert queue.in_flight_ids == [a.id]

    queue.stop()
    gate.set()
    outcome = await asyncio.wait_for(fut_a, timeout=5)
    await _drain(queue)

    assert outcome.status == "described"
    assert store.get(a.id).status == "described"
    assert store.get(b.id).status == "queued"
    assert not fut_b.done()
    assert describer.called_refs == ["A"]

    queue.start()
    await asyncio.wait_for(fut_b, timeout=5)
    assert store.get(b.id).status == "described"


@pytest.mark.asyncio
async def test_retryable_failure_after_stop_is_terminal():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock, {"A": flaky(1)})
    gate = describer.hold("A")
    queue = _queue(describer, store, clock)

    rec = _add(store, "A")
    fut = await queue.enqueue(rec)
    await settle()
    queue.stop()
    gate.set()

    outcome = await asyncio.wait_for(fut, timeout=5)
    assert outcome.status == "failed"
    assert outcome.attempts == 1
    assert queue.pending_ids == []


@pytest.mark.asyncio
async def test_clear_drops_waiting_entries_only():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock)
    gate = describer.hold("A")
    queue = _queue(describer, store, clock)

    a, b, c = _add(store, "A"), _add(store, "B"), _add(store, "C")
    fut_a = await queue.enqueue(a)
    fut_b = await queue.enqueue(b)
    await queue.enqueue(c)
    await settle()

    assert await queue.clear() == 2
    assert fut_b.cancelled()
    assert store.get(b.id).status == "pending"
    assert store.get(c.id).status == "pending"

    gate.set()
    outcome = await asyncio.wait_for(fut_a, timeout=5)
    await _drain(queue)

    assert outcome.status == "described"
    assert describer.called_refs == ["A"]
    assert queue.is_processing is False


@pytest.mark.asyncio
async def test_quota_errors_escalate_after_consecutive_failures():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock, {"A": [QuotaExceededError("insufficient_quota")] * 5})
    queue = _queue(describer, store, clock, retry_limit=5, quota_escalate_after=2)

    rec = _add(store, "A")
    outcome = await asyncio.wait_for(await queue.enqueue(rec), timeout=5)

    assert outcome.status == "failed"
    assert outcome.error == "quota_exceeded"
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_fallback_describes_after_first_retryable_failure():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock, {"A": [TransientServiceError("503")]})
    queue = _queue(describer, store, clock, fallback=StubDescriber())

    rec = _add(store, "A")
    outcome = await asyncio.wait_for(await queue.enqueue(rec), timeout=5)

    assert outcome.status == "described"
    assert outcome.used_fallback is True
    assert outcome.attempts == 1
    assert store.get(rec.id).used_fallback is True
    assert "dry run" in store.get(rec.id).description
    assert queue.error_count == 1
    assert len(describer.calls) == 1


@pytest.mark.asyncio
async def test_error_hook_and_listeners_see_results():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock, {"A": [AuthenticationError("nope")]})
    seen_errors: list[tuple[str, str]] = []
    queue = _queue(describer, store, clock, on_error=lambda exc, rid: seen_errors.append((rid, str(exc))))

    outcomes = []

    def broken_listener(outcome):
        raise RuntimeError("listener bug")

    queue.subscribe(broken_listener)
    queue.subscribe(outcomes.append)

    a, b = _add(store, "A"), _add(store, "B")
    await queue.enqueue(a)
    await queue.enqueue(b)
    await _drain(queue)

    assert seen_errors == [(a.id, "nope")]
    assert [(o.record_id, o.status) for o in outcomes] == [(a.id, "failed"), (b.id, "described")]


@pytest.mark.asyncio
async def test_every_record_reaches_a_terminal_state():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(
        clock,
        {
            "r1": flaky(1),
            "r2": [AuthenticationError("x")],
            "r3": flaky(5),
            "r4": [QuotaExceededError("rate limit")],
        },
    )
    queue = _queue(describer, store, clock, retry_limit=2)

    records = [_add(store, f"r{i}") for i in range(6)]
    for r in records:
        await queue.enqueue(r)
    await _drain(queue)

    for r in records:
        stored = store.get(r.id)
        assert stored.is_terminal
        assert 1 <= stored.attempt <= 2
    assert store.get(records[1].id).status == "described"
    assert store.get(records[2].id).status == "failed"
    assert store.get(records[3].id).status == "failed"

    starts = [t for _, t in describer.calls]
    assert all(later - earlier >= 1.0 for earlier, later in zip(starts, starts[1:]))


@pytest.mark.asyncio
async def test_enqueue_refuses_record_processing_elsewhere():
    clock = FakeClock()
    store = MemoryRecordStore()
    describer = ScriptedDescriber(clock)
    queue = _queue(describer, store, clock)

    rec = _add(store, "A")
    store.update(rec.id, status="processing", attempt=1)

    with pytest.raises(RecordBusy):
        await queue.enqueue(rec)
    await settle()

    assert len(queue) == 0
    assert describer.calls == []
    assert store.get(rec.id).status == "processing"

    # Once the other worker gives it up, it can be queued here.
    store.update(rec.id, status="failed", last_error="transient")
    outcome = await asyncio.wait_for(await queue.enqueue(rec), timeout=5)
    assert outcome.status == "described"


@pytest.mark.asyncio
async def test_two_queues_sharing_a_store_never_describe_the_same_record():
    clock = FakeClock()
    store = MemoryRecordStore()
    first_describer = ScriptedDescriber(clock)
    second_describer = ScriptedDescriber(clock)
    gate = first_describer.hold("A")
    first = _queue(first_describer, store, clock)
    second = _queue(second_describer, store, clock)

    rec = _add(store, "A")
    fut = await first.enqueue(rec)
    await settle()
    assert store.get(rec.id).status == "processing"

    with pytest.raises(RecordBusy):
        await second.enqueue(rec)

    gate.set()
    outcome = await asyncio.wait_for(fut, timeout=5)
    assert outcome.status == "described"
    assert first_describer.called_refs == ["A"]
    assert second_describer.calls == []


@pytest.mark.asyncio
async def test_outcome_carries_the_written_record():
    clock = FakeClock()
    store = MemoryRecordStore()
    queue = _queue(ScriptedDescriber(clock), store, clock)

    rec = _add(store, "A")
    outcome = await asyncio.wait_for(await queue.enqueue(rec), timeout=5)

    assert outcome.record == store.get(rec.id)
    assert outcome.record.status == "described"


class ThreadRecordingStore(MemoryRecordStore):
    """Memory store that claims to block, so callers must move it off the event loop."""

    blocking_io = True

    def __init__(self) -> None:
        super().__init__()
        self.threads: set[int] = set()

    def update(self, record_id, **changes):
        self.threads.add(threading.get_ident())
        return super().update(record_id, **changes)

    def claim(self, record_id, *, from_statuses, **changes):
        self.threads.add(threading.get_ident())
        return super().claim(record_id, from_statuses=from_statuses, **changes)


@pytest.mark.asyncio
async def test_blocking_store_calls_run_off_the_event_loop():
    clock = FakeClock()
    store = ThreadRecordingStore()
    queue = _queue(ScriptedDescriber(clock, {"B": flaky(1)}), store, clock, rate_limit_delay_ms=0)

    a, b = _add(store, "A"), _add(store, "B")
    futures = [await queue.enqueue(r) for r in (a, b)]
    outcomes = await asyncio.wait_for(asyncio.gather(*futures), timeout=5)

    assert [o.status for o in outcomes] == ["described", "described"]
    assert store.threads
    assert threading.get_ident() not in store.threads


def test_rejects_bad_limits():
    store = MemoryRecordStore()
    with pytest.raises(ValueError):
        DescriptionQueue(StubDescriber(), store, prompt="p", max_concurrent=0)
    with pytest.raises(ValueError):
        DescriptionQueue(StubDescriber(), store, prompt="p", retry_limit=0)
