"""OpenAI chat completion adapter."""

from __future__ import annotations

import asyncio
from typing import Any

import openai
import structlog
from openai import AsyncOpenAI

from flowgenius.config.settings import settings
from flowgenius.errors import ErrorCode, coded
from flowgenius.integrations.services import ChatResult

log = structlog.get_logger(__name__)


def classify_openai_error(exc: Exception) -> str:
    """Translate an OpenAI SDK exception into a coded error string."""
    if isinstance(exc, openai.APITimeoutError):
        return coded(ErrorCode.TIMEOUT, str(exc))
    if isinstance(exc, openai.APIConnectionError):
        return coded(ErrorCode.NETWORK_ERROR, str(exc))
    if isinstance(exc, openai.RateLimitError):
        if getattr(exc, "code", None) == "insufficient_quota":
            return coded(ErrorCode.QUOTA_EXCEEDED, str(exc))
        return coded(ErrorCode.RATE_LIMIT, str(exc))
    if isinstance(exc, openai.AuthenticationError | openai.PermissionDeniedError):
        return coded(ErrorCode.UNAUTHORIZED, str(exc))
    if isinstance(exc, openai.BadRequestError | openai.NotFoundError):
        return coded(ErrorCode.INVALID_REQUEST, str(exc))
    if isinstance(exc, openai.APIStatusError) and exc.status_code >= 500:
        return coded(ErrorCode.SERVER_ERROR, str(exc))
    return coded(ErrorCode.INVALID_REQUEST, str(exc))


def build_client() -> AsyncOpenAI | None:
    """AsyncOpenAI with SDK retries off; the resilience layer owns retrying."""
    if settings.openai_api_key is None:
        return None
    return AsyncOpenAI(
        api_key=settings.openai_api_key.get_secret_value(),
        max_retries=0,
        timeout=settings.openai_timeout_seconds,
    )


class OpenAIChatService:
    def __init__(
        self,
        client: Any | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client = client if client is not None else build_client()
        self._model = model or settings.openai_model
        self._timeout = timeout or settings.openai_timeout_seconds

    async def call(
        self,
        system_prompt: str,
        user_message: str,
        history: list[dict[str, str]] | None = None,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        model: str | None = None,
    ) -> ChatResult:
        """Run one chat completion, bounded by the configured timeout.

        Args:
            system_prompt: Instructions for the model.
            user_message: The request body for this call.
            history: Prior ``{"role", "content"}`` turns placed between the two.
            temperature: Sampling temperature.
            max_tokens: Completion token cap.
            model: Overrides the configured model for this call.

        Returns:
            ChatResult with content on success or a coded error string.
        """
        if self._client is None:
            return ChatResult(success=False, error=coded(ErrorCode.UNAUTHORIZED, "OPENAI_API_KEY is not set"))

        messages: list[dict[str, str]] = [{"role": "system", "content": system_prompt}]
        messages.extend(history or [])
        messages.append({"role": "user", "content": user_message})
        chosen = model or self._model

        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=chosen,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            log.warning("chat_timeout", model=chosen, timeout=self._timeout)
            return ChatResult(
                success=False, error=coded(ErrorCode.TIMEOUT, f"chat completion exceeded {self._timeout}s")
            )
        except openai.OpenAIError as exc:
            error = classify_openai_error(exc)
            log.warning("chat_failed", model=chosen, error=error)
            return ChatResult(success=False, error=error)

        content = response.choices[0].message.content or ""
        log.debug("chat_completed", model=chosen, chars=len(content))
        return ChatResult(success=True, content=content)
