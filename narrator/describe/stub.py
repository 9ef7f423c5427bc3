from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StubDescriber:
    """Dry-run describer used when no vision provider is configured."""

    kind: str = "stub"

    async def describe(self, image_ref: str, prompt: str) -> str:
        return f"Image {image_ref}; description service not configured (dry run)."
