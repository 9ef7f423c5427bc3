from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from narrator.core.config import Settings
from narrator.describe.base import Describer
from narrator.describe.registry import get_describer
from narrator.describe.stub import StubDescriber
from narrator.pipeline.binder import ResultBinder
from narrator.pipeline.offline import Connectivity, OfflineBuffer
from narrator.pipeline.queue import DescriptionOutcome, DescriptionQueue
from narrator.pipeline.scheduler import CaptureScheduler
from narrator.schemas.capture_v1 import CaptureRecord, CaptureSource, OfflineDescribeRequest, OfflineEntry, PipelineConfig
from narrator.store.kv import KeyValueStore, LocalKeyValueStore, RedisKeyValueStore
from narrator.store.records import AsyncRecordStore, RecordBusy, RecordStore

log = logging.getLogger("capture_pipeline")


class LatestFrameSource:
    """Holds the object-store key of the most recently pushed camera frame."""

    def __init__(self) -> None:
        self._image_ref: str | None = None
        self.frames_received = 0

    def push(self, image_ref: str) -> None:
        self._image_ref = image_ref
        self.frames_received += 1

    def ready(self) -> bool:
        return self._image_ref is not None

    def latest(self) -> str | None:
        return self._image_ref


def build_kv_store(s: Settings) -> KeyValueStore:
    if s.OFFLINE_STORAGE_BACKEND == "local":
        return LocalKeyValueStore(s.OFFLINE_STORAGE_DIR)
    return RedisKeyValueStore.from_url(s.REDIS_URL, prefix=s.OFFLINE_KEY_PREFIX, lock_timeout_s=s.OFFLINE_LOCK_TIMEOUT_S)


class CapturePipeline:
    """One capture-to-description pipeline: scheduler, queue, binder and offline buffer.

    Instances are independent; nothing here is module-global.
    """

    def __init__(
        self,
        *,
        config: PipelineConfig,
        describer: Describer,
        store: RecordStore,
        storage: KeyValueStore,
        frames: LatestFrameSource | None = None,
        connectivity: Connectivity | None = None,
        fallback: Describer | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.records = AsyncRecordStore(store)
        self.frames = frames or LatestFrameSource()
        self.connectivity = connectivity or Connectivity()

        self.queue = DescriptionQueue(
            describer,
            store,
            prompt=config.prompt,
            max_concurrent=config.max_concurrent,
            retry_limit=config.retry_limit,
            rate_limit_delay_ms=config.rate_limit_delay_ms,
            quota_escalate_after=config.quota_escalate_after,
            fallback=fallback,
            clock=clock,
            sleep=sleep,
        )
        self.binder = ResultBinder()
        self.binder.attach(self.queue)
        self.offline = OfflineBuffer(storage, is_online=self.connectivity)
        self.scheduler = CaptureScheduler(
            self.produce_capture,
            interval_seconds=config.capture_interval_seconds,
            target_count=config.capture_count,
            enabled=config.enabled,
            ready=self.frames.ready,
            clock=clock,
            sleep=sleep,
        )
        self._replay_task: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls,
        s: Settings,
        *,
        store: RecordStore,
        storage: KeyValueStore | None = None,
        describer: Describer | None = None,
    ) -> "CapturePipeline":
        config = PipelineConfig.from_settings(s)
        return cls(
            config=config,
            describer=describer or get_describer(s.DESCRIBER_KIND, settings=s),
            store=store,
            storage=storage or build_kv_store(s),
            connectivity=Connectivity(online=s.START_ONLINE),
            fallback=StubDescriber() if config.fallback_enabled else None,
        )

    async def produce_capture(self, source: CaptureSource = "scheduled") -> CaptureRecord | None:
        """Turn the latest frame into a stored record and submit it. None when no frame exists."""

        image_ref = self.frames.latest()
        if image_ref is None:
            return None

        record = await self.records.add(CaptureRecord(image_ref=image_ref, source=source))
        self.binder.track(record)
        await self.submit(record)
        return record

    async def submit(self, record: CaptureRecord) -> asyncio.Future[DescriptionOutcome] | OfflineEntry:
        """Enqueue the record, or buffer it while offline. Raises ``RecordBusy`` if another worker owns it."""

        if not self.connectivity.online:
            request = OfflineDescribeRequest(record_id=record.id, image_ref=record.image_ref)
            return await asyncio.to_thread(self.offline.queue_request, request)
        return await self.queue.enqueue(record)

    def set_online(self, online: bool) -> bool:
        """Update the connectivity signal. Returns True when this restores connectivity."""

        restored = online and not self.connectivity.online
        self.connectivity.online = online
        log.info("Connectivity: %s", "online" if online else "offline")
        return restored

    def schedule_replay(self) -> asyncio.Task:
        """Start a background replay pass unless one is already running."""

        if self._replay_task is None or self._replay_task.done():
            self._replay_task = asyncio.get_running_loop().create_task(self.replay_offline(), name="offline-replay")
        return self._replay_task

    async def replay_offline(self) -> int:
        if self.queue.stopped:
            log.warning("Description queue stopped; offline replay skipped")
            return 0
        return await self.offline.process_queue(self._replay_entry)

    async def _replay_entry(self, entry: OfflineEntry) -> bool:
        req = entry.payload
        record = await self.records.get(req.record_id) if req.record_id else None
        if record is None:
            fields = {"image_ref": req.image_ref, "source": "offline_replay"}
            if req.record_id:
                fields["id"] = req.record_id
            record = await self.records.add(CaptureRecord(**fields))
        if record.status == "described":
            return True

        try:
            future = await self.queue.enqueue(record)
        except RecordBusy:
            # Someone else is describing it; keep the entry and look again next pass.
            log.info("Record %s busy elsewhere; offline entry %s kept", record.id, entry.id)
            return False
        await asyncio.wait({future})
        if future.cancelled():
            return False

        outcome = future.result()
        # Validation failures can never succeed; keeping them would replay forever.
        return outcome.status == "described" or outcome.error == "validation"

    def close(self) -> None:
        self.scheduler.stop()
        self.queue.stop()
        if self._replay_task is not None and not self._replay_task.done():
            self._replay_task.cancel()
