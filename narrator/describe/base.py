from __future__ import annotations

from typing import Protocol


class Describer(Protocol):
    """External description service.

    Implementations raise subclasses of ``DescriptionServiceError`` (or anything
    ``classify_error`` understands) on failure.
    """

    kind: str

    async def describe(self, image_ref: str, prompt: str) -> str: ...
