from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from typing import Callable

import httpx

from narrator.describe.errors import (
    AuthenticationError,
    QuotaExceededError,
    TransientServiceError,
    ValidationError,
    kind_for_status,
)

ImageLoader = Callable[[str], bytes | None]

_ERRORS_BY_KIND = {
    "transient": TransientServiceError,
    "quota_exceeded": QuotaExceededError,
    "authentication": AuthenticationError,
    "validation": ValidationError,
}


def _truncate(s: str, n: int = 200) -> str:
    s = s or ""
    return s if len(s) <= n else s[:n] + "…"


def _sniff_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


@dataclass
class HttpVisionDescriber:
    """Describe images through an OpenAI-compatible chat-completions endpoint.

    Image bytes are read from the object store by ``image_ref`` and sent inline as a data URL.
    HTTP failures are mapped onto the description error taxonomy.
    """

    api_base: str
    api_key: str | None
    model: str
    load_image: ImageLoader
    max_tokens: int = 300
    timeout_s: float = 30.0
    transport: httpx.AsyncBaseTransport | None = None
    kind: str = field(default="http_vision", init=False)

    async def describe(self, image_ref: str, prompt: str) -> str:
        if not prompt or not prompt.strip():
            raise ValidationError("empty prompt")
        if not self.api_key:
            raise AuthenticationError("missing VISION_API_KEY")

        data = await asyncio.to_thread(self.load_image, image_ref)
        if not data:
            raise ValidationError(f"image not found: {image_ref}")

        data_url = f"data:{_sniff_mime(data)};base64,{base64.b64encode(data).decode('ascii')}"
        body = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                }
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "User-Agent": "narrator",
        }
        url = f"{self.api_base.rstrip('/')}/chat/completions"

        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                resp = await client.post(url, headers=headers, json=body)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientServiceError(f"exception:{type(e).__name__}:{e}") from e

        if resp.status_code >= 400:
            error_cls = _ERRORS_BY_KIND[kind_for_status(resp.status_code)]
            raise error_cls(f"vision_http_{resp.status_code}:{_truncate(resp.text)}")

        try:
            j = resp.json()
            content = j["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TransientServiceError(f"unexpected response: {_truncate(resp.text)}") from e

        if isinstance(content, list):
            content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
        text = (content or "").strip()
        if not text:
            raise TransientServiceError("empty description")
        return text
