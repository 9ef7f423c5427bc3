from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from narrator.api.deps import get_pipeline
from narrator.pipeline.service import CapturePipeline

router = APIRouter()


class ConnectivityIn(BaseModel):
    online: bool


@router.get("")
def list_offline(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    return {
        "online": pipeline.connectivity.online,
        "items": [e.model_dump(mode="json") for e in pipeline.offline.entries()],
    }


@router.post("/connectivity")
async def set_connectivity(body: ConnectivityIn, pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    restored = pipeline.set_online(body.online)
    if restored:
        pipeline.schedule_replay()
    return {"online": body.online, "replay_started": restored}


@router.post("/replay")
async def replay_offline(pipeline: CapturePipeline = Depends(get_pipeline)) -> dict:
    removed = await pipeline.replay_offline()
    remaining = await asyncio.to_thread(len, pipeline.offline)
    return {"removed": removed, "remaining": remaining}
