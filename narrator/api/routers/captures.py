from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException

from narrator.api.deps import get_pipeline
from narrator.pipeline.service import CapturePipeline
from narrator.store.records import RecordBusy

router = APIRouter()


@router.get("")
def list_captures(limit: int = 200, pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    records = pipeline.store.list(limit=max(1, min(limit, 500)))
    return {"items": [r.model_dump(mode="json") for r in records]}


@router.get("/latest")
async def latest_capture(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    record = pipeline.binder.most_recent
    return {"item": record.model_dump(mode="json") if record else None}


@router.get("/{record_id}")
def get_capture(record_id: str, pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    record = pipeline.store.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Capture not found")
    return record.model_dump(mode="json")


@router.post("")
async def capture_now(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    """Manual capture from the latest frame, through the same path as scheduled ticks."""

    record = await pipeline.produce_capture(source="manual")
    if record is None:
        raise HTTPException(status_code=409, detail={"code": "SOURCE_NOT_READY", "hint": "POST /frames first"})
    return {"id": record.id, "buffered_offline": not pipeline.connectivity.online}


@router.post("/{record_id}/describe")
async def describe_capture(record_id: str, pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    record = await asyncio.to_thread(pipeline.store.get, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Capture not found")

    try:
        await pipeline.submit(record)
    except RecordBusy:
        raise HTTPException(status_code=409, detail={"code": "RECORD_BUSY", "status": record.status})
    return {"id": record_id, "buffered_offline": not pipeline.connectivity.online}
