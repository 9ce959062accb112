"""Tests for the text-completion clients."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List

import httpx
import pytest

from docsession import completion as completion_module
from docsession.completion import GeminiCompletion, LiteLLMCompletion, build_completion_client
from docsession.config import PROVIDER_OPENAI, Settings
from docsession.errors import ExternalCollaboratorError


def _gemini(handler: Any, api_key: str = "secret") -> GeminiCompletion:
    return GeminiCompletion(
        api_key=api_key,
        base_url="https://gemini.test/v1beta/",
        model="gemini-1.5-flash",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_gemini_returns_first_candidate_text() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "The total is $42."}]}}]})

    answer = await _gemini(handler).complete("What is the total?")

    assert answer == "The total is $42."
    (request,) = seen
    assert request.url.path == "/v1beta/models/gemini-1.5-flash:generateContent"
    assert request.url.params["key"] == "secret"
    assert b"What is the total?" in request.content


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [{}, {"candidates": []}, {"candidates": [{"content": {"parts": []}}]}, {"candidates": [{"content": {"parts": [{"text": ""}]}}]}],
)
async def test_gemini_without_text_is_empty(body: Dict[str, Any]) -> None:
    assert await _gemini(lambda request: httpx.Response(200, json=body)).complete("q") is None


@pytest.mark.asyncio
async def test_gemini_http_error_raises() -> None:
    client = _gemini(lambda request: httpx.Response(500, json={"error": "boom"}))
    with pytest.raises(ExternalCollaboratorError):
        await client.complete("q")


@pytest.mark.asyncio
async def test_gemini_connection_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ExternalCollaboratorError):
        await _gemini(handler).complete("q")


@pytest.mark.asyncio
async def test_gemini_non_json_body_raises() -> None:
    client = _gemini(lambda request: httpx.Response(200, content=b"<html>"))
    with pytest.raises(ExternalCollaboratorError):
        await client.complete("q")


@pytest.mark.asyncio
async def test_missing_api_key_raises() -> None:
    with pytest.raises(ExternalCollaboratorError):
        await _gemini(lambda request: httpx.Response(200), api_key="").complete("q")
    with pytest.raises(ExternalCollaboratorError):
        await LiteLLMCompletion(api_key=None, base_url="https://x", model="openai/gpt").complete("q")


@pytest.mark.asyncio
async def test_litellm_returns_message_content(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[Dict[str, Any]] = []

    async def fake_acompletion(**kwargs: Any) -> Any:
        calls.append(kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Answer"))])

    monkeypatch.setattr(completion_module.litellm, "acompletion", fake_acompletion)
    client = LiteLLMCompletion(api_key="k", base_url="https://gateway", model="openai/gpt-4.1", timeout=3.0)

    assert await client.complete("prompt") == "Answer"
    assert calls[0]["messages"] == [{"role": "user", "content": "prompt"}]
    assert calls[0]["timeout"] == 3.0


@pytest.mark.asyncio
async def test_litellm_empty_choices(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_acompletion(**_kwargs: Any) -> Any:
        return SimpleNamespace(choices=[])

    monkeypatch.setattr(completion_module.litellm, "acompletion", fake_acompletion)
    client = LiteLLMCompletion(api_key="k", base_url="https://gateway", model="openai/gpt-4.1")
    assert await client.complete("prompt") is None


@pytest.mark.asyncio
async def test_litellm_failure_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_acompletion(**_kwargs: Any) -> Any:
        raise RuntimeError("rate limited")

    monkeypatch.setattr(completion_module.litellm, "acompletion", fake_acompletion)
    client = LiteLLMCompletion(api_key="k", base_url="https://gateway", model="openai/gpt-4.1")
    with pytest.raises(ExternalCollaboratorError):
        await client.complete("prompt")


def test_build_completion_client_by_provider() -> None:
    assert isinstance(build_completion_client(Settings()), GeminiCompletion)
    assert isinstance(build_completion_client(Settings(ai_provider=PROVIDER_OPENAI)), LiteLLMCompletion)


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [["unexpected"], "text", {"candidates": "nope"}, {"candidates": [{"content": {"parts": "x"}}]}])
async def test_gemini_malformed_payload_raises(body: Any) -> None:
    with pytest.raises(ExternalCollaboratorError):
        await _gemini(lambda request: httpx.Response(200, json=body)).complete("q")
