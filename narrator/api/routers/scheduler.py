from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from narrator.api.deps import get_pipeline
from narrator.pipeline.service import CapturePipeline

router = APIRouter()


@router.get("")
async def scheduler_state(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    state = pipeline.scheduler.state
    return {
        **state.model_dump(),
        "skipped_ticks": pipeline.scheduler.skipped_ticks,
        "failed_ticks": pipeline.scheduler.failed_ticks,
    }


@router.post("/start")
async def start_scheduler(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    if not pipeline.scheduler.start():
        raise HTTPException(status_code=409, detail={"code": "SCHEDULER_DISABLED"})
    return pipeline.scheduler.state.model_dump()


@router.post("/stop")
async def stop_scheduler(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    pipeline.scheduler.stop()
    return pipeline.scheduler.state.model_dump()
