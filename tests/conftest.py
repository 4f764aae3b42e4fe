from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from flowgenius.agent.state import SessionState, Stage, create_session, user_message
from flowgenius.integrations.services import (
    ChatResult,
    SearchResponse,
    Services,
    TranscriptionOptions,
    TranscriptionResult,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Timestamp ``seconds`` after a fixed origin."""
    return T0 + timedelta(seconds=seconds)


def as_json(payload: dict) -> str:
    """Chat payload wrapped in a markdown fence, the way models usually return it."""
    return f"```json\n{json.dumps(payload)}\n```"


class FakeChat:
    """Scripted chat service. Each call pops the next ChatResult (or str content)."""

    def __init__(self, *replies: ChatResult | str) -> None:
        self.replies = list(replies)
        self.calls: list[dict] = []

    def queue(self, *replies: ChatResult | str) -> None:
        self.replies.extend(replies)

    async def call(
        self,
        system_prompt: str,
        user_message: str,
        history: list[dict[str, str]] | None = None,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        model: str | None = None,
    ) -> ChatResult:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_message": user_message,
                "history": history,
                "temperature": temperature,
                "model": model,
            }
        )
        if not self.replies:
            raise AssertionError("FakeChat ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, str):
            return ChatResult(success=True, content=reply)
        return reply


class FakeSpeech:
    def __init__(self, result: TranscriptionResult) -> None:
        self.result = result
        self.calls: list[tuple[str, TranscriptionOptions | None]] = []

    async def transcribe(
        self, audio_ref: str, options: TranscriptionOptions | None = None
    ) -> TranscriptionResult:
        self.calls.append((audio_ref, options))
        return self.result


class FakeSearch:
    def __init__(self, responses: dict[str, SearchResponse] | None = None, default: SearchResponse | None = None):
        self.responses = responses or {}
        self.default = default or SearchResponse(success=True)
        self.queries: list[str] = []

    async def search(self, query: str) -> SearchResponse:
        self.queries.append(query)
        return self.responses.get(query, self.default.model_copy(update={"query": query}))


class RecordingSleep:
    """Async sleep stand-in that records requested delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def session() -> SessionState:
    """Fresh brainstorm session with no messages."""
    return create_session("test-session", user_id="test_user")


@pytest.fixture()
def chatting_session(session: SessionState) -> SessionState:
    """Session whose last message is a user turn waiting for a reply."""
    session["messages"] = [
        user_message("I want to build an app that helps remote teams plan meetings", Stage.BRAINSTORM, at(0))
    ]
    return session


@pytest.fixture()
def chat() -> FakeChat:
    return FakeChat()


@pytest.fixture()
def services(chat: FakeChat) -> Services:
    return Services(chat=chat, speech=None, search=FakeSearch())


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
