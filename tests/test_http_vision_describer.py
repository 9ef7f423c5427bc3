from __future__ import annotations

import base64
import json

import httpx
import pytest

from narrator.describe.errors import AuthenticationError, QuotaExceededError, TransientServiceError, ValidationError
from narrator.describe.http_vision import HttpVisionDescriber

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def _describer(handler, *, api_key: str | None = "sk-test", images: dict[str, bytes] | None = None) -> HttpVisionDescriber:
    store = {"frames/1.png": PNG} if images is None else images
    return HttpVisionDescriber(
        api_base="https://vision.example/v1/",
        api_key=api_key,
        model="vision-mini",
        load_image=store.get,
        transport=httpx.MockTransport(handler),
    )


def _reply(content) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


@pytest.mark.asyncio
async def test_sends_inline_image_and_returns_text():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["authorization"]
        captured["body"] = json.loads(request.content)
        return _reply("  A desk with a laptop and a mug.  ")

    text = await _describer(handler).describe("frames/1.png", "Describe this.")

    assert text == "A desk with a laptop and a mug."
    assert captured["url"] == "https://vision.example/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"

    body = captured["body"]
    assert body["model"] == "vision-mini"
    parts = body["messages"][0]["content"]
    assert parts[0] == {"type": "text", "text": "Describe this."}
    url = parts[1]["image_url"]["url"]
    assert url.startswith("data:image/png;base64,")
    assert base64.b64decode(url.split(",", 1)[1]) == PNG


@pytest.mark.asyncio
async def test_list_content_is_joined():
    handler = lambda request: _reply([{"type": "text", "text": "Two "}, {"type": "text", "text": "cats."}])
    assert await _describer(handler).describe("frames/1.png", "p") == "Two cats."


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error_cls",
    [
        (429, QuotaExceededError),
        (401, AuthenticationError),
        (400, ValidationError),
        (502, TransientServiceError),
    ],
)
async def test_http_errors_map_to_taxonomy(status, error_cls):
    handler = lambda request: httpx.Response(status, json={"error": {"message": "nope"}})
    with pytest.raises(error_cls) as info:
        await _describer(handler).describe("frames/1.png", "p")
    assert f"vision_http_{status}" in str(info.value)


@pytest.mark.asyncio
async def test_network_failure_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientServiceError):
        await _describer(handler).describe("frames/1.png", "p")


@pytest.mark.asyncio
async def test_empty_or_malformed_reply_is_transient():
    with pytest.raises(TransientServiceError):
        await _describer(lambda request: _reply("   ")).describe("frames/1.png", "p")
    with pytest.raises(TransientServiceError):
        await _describer(lambda request: httpx.Response(200, json={"choices": []})).describe("frames/1.png", "p")


@pytest.mark.asyncio
async def test_local_checks_fail_before_any_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return _reply("x")

    with pytest.raises(ValidationError):
        await _describer(handler).describe("frames/1.png", "   ")
    with pytest.raises(AuthenticationError):
        await _describer(handler, api_key=None).describe("frames/1.png", "p")
    with pytest.raises(ValidationError):
        await _describer(handler, images={}).describe("frames/missing.png", "p")
    assert calls == []
