from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request

from narrator.api.deps import get_pipeline
from narrator.pipeline.service import CapturePipeline
from narrator.store.object_store import frame_store

router = APIRouter()


@router.post("")
async def push_frame(request: Request, pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    """Store the latest camera frame; scheduled and manual captures read from it."""

    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="Empty frame")

    content_type = (request.headers.get("content-type") or "image/jpeg").split(";")[0].strip()
    image_ref = await asyncio.to_thread(frame_store().put_frame, data, content_type=content_type)
    pipeline.frames.push(image_ref)
    return {"image_ref": image_ref, "frames_received": pipeline.frames.frames_received}
