from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from fastapi import FastAPI
from redis import Redis
from sqlalchemy import text

from narrator.api.routers.captures import router as captures_router
from narrator.api.routers.frames import router as frames_router
from narrator.api.routers.offline import router as offline_router
from narrator.api.routers.queue import router as queue_router
from narrator.api.routers.scheduler import router as scheduler_router
from narrator.core.config import settings
from narrator.core.db import SessionLocal
from narrator.core.logging import configure_logging
from narrator.pipeline.queue import DescriptionOutcome
from narrator.pipeline.service import CapturePipeline
from narrator.schemas.capture_v1 import CaptureRecord
from narrator.store.object_store import frame_store
from narrator.store.records import SqlRecordStore

configure_logging(settings.LOG_LEVEL)
log = logging.getLogger("app")

app = FastAPI(title=settings.APP_NAME)


async def _wait_until_ready(check: Callable[[], None], *, what: str, attempts: int = 30, max_sleep_s: float = 2.0) -> bool:
    """Retry a blocking readiness call off the event loop; never raises."""

    delay = 1.0
    for attempt in range(1, attempts + 1):
        try:
            await asyncio.to_thread(check)
            log.info("Startup: %s ready", what)
            return True
        except Exception as e:
            level = logging.ERROR if attempt == attempts else logging.WARNING
            log.log(level, "Startup: %s not ready (attempt %s/%s): %s", what, attempt, attempts, e)
            if attempt < attempts:
                await asyncio.sleep(delay)
                delay = min(max_sleep_s, delay * 2)
    return False


def _database_ok() -> bool:
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def _redis_ok() -> bool:
    try:
        client = Redis.from_url(settings.REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
        return bool(client.ping())
    except Exception:
        return False


def _announce_result(record: CaptureRecord, outcome: DescriptionOutcome) -> None:
    # Display/voice collaborators subscribe here; the service itself only logs.
    if outcome.status == "described":
        log.info("Capture %s: %s", record.id, (record.description or "")[:120])
    else:
        log.warning("Capture %s failed (%s): %s", record.id, outcome.error, outcome.reason)


@app.on_event("startup")
async def _startup() -> None:
    pipeline = CapturePipeline.from_settings(settings, store=SqlRecordStore(SessionLocal))
    pipeline.binder.add_sink(_announce_result)
    app.state.pipeline = pipeline

    # Frames fall back to local disk, so a missing bucket is logged and startup continues.
    if not settings.ENSURE_EXTERNAL_DEPS_ON_STARTUP:
        log.info("Startup: ENSURE_EXTERNAL_DEPS_ON_STARTUP=false; skipping minio ensure")
        return

    await _wait_until_ready(frame_store().ensure_bucket, what="minio")


@app.on_event("shutdown")
async def _shutdown() -> None:
    pipeline: CapturePipeline | None = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        pipeline.close()


@app.get("/health")
def health() -> dict[str, Any]:
    deps = {
        "database": _database_ok(),
        "redis": _redis_ok(),
        "minio": frame_store().ready(),
    }
    return {"ok": all(deps.values()), "deps": deps, "app": settings.APP_NAME}


app.include_router(frames_router, prefix="/frames", tags=["frames"])
app.include_router(captures_router, prefix="/captures", tags=["captures"])
app.include_router(scheduler_router, prefix="/scheduler", tags=["scheduler"])
app.include_router(queue_router, prefix="/queue", tags=["queue"])
app.include_router(offline_router, prefix="/offline", tags=["offline"])
