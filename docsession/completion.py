from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx
import litellm

from .config import PROVIDER_OPENAI, Settings
from .errors import ExternalCollaboratorError

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(self, prompt: str) -> Optional[str]:
        """Return the answer, ``None``/empty for no answer, or raise
        ``ExternalCollaboratorError`` when the provider cannot be reached."""
        ...


class LiteLLMCompletion:
    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str,
        model: str,
        timeout: float = 30.0,
        temperature: float = 0.4,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.timeout = timeout
        self.temperature = temperature

    async def complete(self, prompt: str) -> Optional[str]:
        if not self.api_key:
            raise ExternalCollaboratorError("API key is missing")
        try:
            response = await litellm.acompletion(
                api_key=self.api_key,
                base_url=self.base_url,
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature,
                n=1,
                timeout=self.timeout,
            )
        except Exception as exc:  # litellm raises provider-specific exception types
            logger.warning("LiteLLM completion request failed: %s", exc)
            raise ExternalCollaboratorError(str(exc)) from exc
        for choice in getattr(response, "choices", None) or []:
            message = getattr(choice, "message", None)
            content = getattr(message, "content", None)
            if content:
                return content
        return None


class GeminiCompletion:
    """Calls the Gemini ``generateContent`` REST endpoint directly."""

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str,
        model: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.transport = transport

    async def complete(self, prompt: str) -> Optional[str]:
        if not self.api_key:
            raise ExternalCollaboratorError("API key is missing")
        url = f"{self.base_url}/models/{self.model}:generateContent"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    url,
                    params={"key": self.api_key},
                    json={"contents": [{"parts": [{"text": prompt}]}]},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Gemini request failed: %s", exc)
            raise ExternalCollaboratorError(str(exc)) from exc
        except ValueError as exc:
            logger.warning("Gemini returned a non-JSON body: %s", exc)
            raise ExternalCollaboratorError("Invalid response from Gemini") from exc
        return _gemini_text(data)


def _gemini_text(data: Any) -> Optional[str]:
    try:
        candidates = data.get("candidates") or []
        if not candidates:
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if not parts:
            return None
        text = parts[0].get("text")
    except (AttributeError, TypeError, KeyError, IndexError) as exc:
        logger.warning("Gemini returned an unexpected payload: %r", data)
        raise ExternalCollaboratorError("Unexpected response from Gemini") from exc
    if not isinstance(text, str):
        return None
    return text or None


def build_completion_client(settings: Settings) -> CompletionClient:
    if settings.ai_provider == PROVIDER_OPENAI:
        return LiteLLMCompletion(
            api_key=settings.openai_api_key,
            base_url=settings.openai_api_base_url,
            model=settings.openai_model,
            timeout=settings.ai_request_timeout,
        )
    return GeminiCompletion(
        api_key=settings.gemini_api_key,
        base_url=settings.gemini_api_base_url,
        model=settings.gemini_model,
        timeout=settings.ai_request_timeout,
    )
