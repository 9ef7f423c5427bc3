from __future__ import annotations

from fastapi import APIRouter, Depends

from narrator.api.deps import get_pipeline
from narrator.pipeline.service import CapturePipeline

router = APIRouter()


def _stats(pipeline: CapturePipeline) -> dict:
    q = pipeline.queue
    return {
        "is_processing": q.is_processing,
        "stopped": q.stopped,
        "processed_count": q.processed_count,
        "error_count": q.error_count,
        "pending": q.pending_ids,
        "in_flight": q.in_flight_ids,
    }


@router.get("")
async def queue_stats(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    return _stats(pipeline)


@router.post("/start")
async def start_queue(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    pipeline.queue.start()
    return _stats(pipeline)


@router.post("/stop")
async def stop_queue(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    pipeline.queue.stop()
    return _stats(pipeline)


@router.post("/clear")
async def clear_queue(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    cleared = await pipeline.queue.clear()
    return {**_stats(pipeline), "cleared": cleared}
