from __future__ import annotations

from fastapi import HTTPException, Request

from narrator.pipeline.service import CapturePipeline


def get_pipeline(request: Request) -> CapturePipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not started")
    return pipeline
