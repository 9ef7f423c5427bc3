from __future__ import annotations

from narrator.core.config import Settings
from narrator.describe.base import Describer
from narrator.describe.http_vision import HttpVisionDescriber
from narrator.describe.stub import StubDescriber
from narrator.store.object_store import FrameObjectStore


def get_describer(kind: str, *, settings: Settings) -> Describer:
    if kind == "stub":
        return StubDescriber()
    if kind == "http_vision":
        return HttpVisionDescriber(
            api_base=settings.VISION_API_BASE,
            api_key=settings.VISION_API_KEY,
            model=settings.VISION_MODEL,
            load_image=FrameObjectStore.from_settings(settings).get,
            max_tokens=settings.VISION_MAX_TOKENS,
            timeout_s=settings.VISION_TIMEOUT_S,
        )
    raise ValueError(f"No describer for kind={kind}")
