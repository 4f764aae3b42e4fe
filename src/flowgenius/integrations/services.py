"""Contracts for the external services the workflow nodes call.

Adapters never raise for vendor failures. They return a result with
``success=False`` and an error string starting with an ErrorCode.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from pydantic import BaseModel, Field


class ChatResult(BaseModel):
    success: bool
    content: str | None = None
    error: str | None = None


class TranscriptionOptions(BaseModel):
    language: str | None = None
    prompt: str | None = None


class TranscriptionResult(BaseModel):
    success: bool
    text: str | None = None
    language: str | None = None
    duration: float | None = None
    error: str | None = None


class SearchResult(BaseModel):
    title: str = ""
    url: str = ""
    content: str = ""
    score: float = 0.0


class SearchResponse(BaseModel):
    success: bool
    query: str = ""
    results: list[SearchResult] = Field(default_factory=list)
    answer: str | None = None
    error: str | None = None


class ChatCompletionService(Protocol):
    async def call(
        self,
        system_prompt: str,
        user_message: str,
        history: list[dict[str, str]] | None = None,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        model: str | None = None,
    ) -> ChatResult: ...


class SpeechToTextService(Protocol):
    async def transcribe(
        self, audio_ref: str, options: TranscriptionOptions | None = None
    ) -> TranscriptionResult: ...


class WebSearchService(Protocol):
    async def search(self, query: str) -> SearchResponse: ...


@dataclass
class Services:
    """Everything the nodes need from the outside world, injected into the executor."""

    chat: ChatCompletionService
    speech: SpeechToTextService | None = None
    search: WebSearchService | None = None

    @classmethod
    def from_settings(cls) -> Services:
        """Build the vendor-backed services from environment settings."""
        from flowgenius.integrations.openai_chat import OpenAIChatService
        from flowgenius.integrations.speech import WhisperSpeechService
        from flowgenius.integrations.web_search import TavilySearchService

        return cls(
            chat=OpenAIChatService(),
            speech=WhisperSpeechService(),
            search=TavilySearchService(),
        )
