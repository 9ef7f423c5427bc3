from __future__ import annotations

import asyncio
import logging

from narrator.core.celery_app import celery
from narrator.core.config import settings
from narrator.core.db import SessionLocal
from narrator.pipeline.service import CapturePipeline
from narrator.store.records import SqlRecordStore

log = logging.getLogger("offline_tasks")


async def _replay(pipeline: CapturePipeline) -> dict:
    before = await asyncio.to_thread(len, pipeline.offline)
    try:
        removed = await pipeline.replay_offline()
    finally:
        pipeline.close()
    return {
        "ok": True,
        "before": before,
        "removed": removed,
        "remaining": await asyncio.to_thread(len, pipeline.offline),
        "described": pipeline.queue.processed_count,
        "errors": pipeline.queue.error_count,
    }


@celery.task(name="narrator.tasks.offline_tasks.replay_offline_requests")
def replay_offline_requests(*, online: bool = True) -> dict:
    """Replay the durable offline buffer through a dedicated pipeline.

    The worker builds its own pipeline instance (SQL record store + configured describer),
    so it does not touch the API process's queue. ``online`` is the connectivity signal
    supplied by whoever triggers the task.
    """

    pipeline = CapturePipeline.from_settings(settings, store=SqlRecordStore(SessionLocal))
    pipeline.set_online(online)
    out = asyncio.run(_replay(pipeline))
    log.info("Offline replay: %s", out)
    return out
