import asyncio
import dataclasses
import json

import httpx
import pytest

from services import inference
from services.errors import UpstreamError


def _messages():
    return [{"role": "user", "content": [inference.text_block("hi")]}]


def test_reply_text_shapes():
    assert inference.reply_text({"choices": [{"message": {"content": "hello"}}]}) == "hello"
    assert inference.reply_text(
        {"choices": [{"message": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}}]}
    ) == "a\nb"
    assert inference.reply_text({"choices": []}) is None
    assert inference.reply_text({"error": "nope"}) is None
    assert inference.reply_text("text") is None


@pytest.mark.asyncio
async def test_chat_completion_sends_bearer_and_model(settings, monkeypatch):
    seen = {}

    async def fake_post(_client, *, url, headers, payload, timeout):
        seen.update(url=url, headers=headers, payload=payload, timeout=timeout)
        from conftest import chat_reply
        return chat_reply("ok")

    monkeypatch.setattr(inference, "_post_chat_completion", fake_post)
    async with httpx.AsyncClient() as client:
        text = await inference.chat_completion(client, settings, _messages(), timeout=5, max_tokens=500)

    assert text == "ok"
    assert seen["url"] == settings.api_url
    assert seen["headers"]["Authorization"] == "Bearer test-key"
    assert seen["payload"]["model"] == settings.model
    assert seen["payload"]["max_tokens"] == 500
    assert "temperature" not in seen["payload"]
    assert seen["timeout"] == 5


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "item,retryable",
    [
        ("http_500", True),
        ("http_401", False),
        ("http_403", False),
        ("empty", True),
        ("bad_envelope", True),
        ("bad_json", True),
        ("timeout", True),
        ("transport", True),
    ],
)
async def test_chat_completion_failures(settings, fake_upstream, item, retryable):
    from conftest import DummyChatResponse, chat_reply

    responses = {
        "http_500": fake_upstream.http_error(500, "oops"),
        "http_401": fake_upstream.http_error(401, "bad key"),
        "http_403": fake_upstream.http_error(403, "forbidden"),
        "empty": chat_reply("   "),
        "bad_envelope": DummyChatResponse(data={"result": "?"}),
        "bad_json": DummyChatResponse(data=json.JSONDecodeError("x", "doc", 0)),
        "timeout": asyncio.TimeoutError(),
        "transport": httpx.ConnectError("refused"),
    }
    fake_upstream.generation = [responses[item]]

    async with httpx.AsyncClient() as client:
        with pytest.raises(UpstreamError) as exc_info:
            await inference.chat_completion(client, settings, _messages(), timeout=5)

    assert exc_info.value.retryable is retryable
    assert exc_info.value.message.startswith("AI service error:")


@pytest.mark.asyncio
async def test_slow_upstream_hits_wall_clock_timeout(settings, monkeypatch):
    async def slow_post(_client, *, url, headers, payload, timeout):
        await asyncio.sleep(5)

    monkeypatch.setattr(inference, "_post_chat_completion", slow_post)
    async with httpx.AsyncClient() as client:
        with pytest.raises(UpstreamError) as exc_info:
            await inference.chat_completion(client, settings, _messages(), timeout=0.05)
    assert "timed out" in exc_info.value.message


@pytest.mark.asyncio
async def test_missing_key_is_not_retryable(settings):
    async with httpx.AsyncClient() as client:
        with pytest.raises(UpstreamError) as exc_info:
            await inference.chat_completion(client, dataclasses.replace(settings, api_key=""), _messages(), timeout=5)
    assert exc_info.value.retryable is False
