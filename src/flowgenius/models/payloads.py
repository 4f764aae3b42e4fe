"""Pydantic models for the JSON payloads the chat model returns.

The model is asked for bare JSON but frequently wraps it in a markdown code
fence. ``parse_payload`` strips the fence and validates the result.
"""

from __future__ import annotations

import enum
import json
import re
from typing import TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from flowgenius.errors import PayloadParseError

_FENCED = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL | re.IGNORECASE)
_BARE_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class ChecklistAnalysis(BaseModel):
    """Per-criterion completion scores for the user's latest message."""

    completion_scores: dict[str, float] = Field(default_factory=dict)
    reasoning: str = ""

    @field_validator("completion_scores")
    @classmethod
    def clamp_scores(cls, v: dict[str, float]) -> dict[str, float]:
        return {key: min(max(score, 0.0), 1.0) for key, score in v.items()}


class QuestionSet(BaseModel):
    questions: list[str] = Field(default_factory=list)
    reasoning: str = ""

    @field_validator("questions")
    @classmethod
    def drop_blank(cls, v: list[str]) -> list[str]:
        return [q.strip() for q in v if q and q.strip()]


class FollowupVerdict(enum.StrEnum):
    CONTINUE = "continue"
    STOP = "stop"


class FollowupDecision(BaseModel):
    decision: FollowupVerdict
    question: str | None = None
    reasoning: str = ""

    @property
    def should_continue(self) -> bool:
        return self.decision == FollowupVerdict.CONTINUE and bool(self.question and self.question.strip())


def strip_code_fences(content: str) -> str:
    """Return the JSON object text inside ``content``, fenced or not."""
    fenced = _FENCED.search(content)
    if fenced:
        return fenced.group(1)
    bare = _BARE_OBJECT.search(content)
    if bare:
        return bare.group(0)
    return content.strip()


def parse_payload(content: str | None, model: type[PayloadT]) -> PayloadT:
    """Strip fencing, decode JSON and validate into ``model``.

    Raises:
        PayloadParseError: The content is empty, not JSON, or fails validation.
    """
    if not content or not content.strip():
        raise PayloadParseError(f"Empty payload for {model.__name__}")
    try:
        data = json.loads(strip_code_fences(content))
        return model.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise PayloadParseError(f"Unparseable {model.__name__} payload: {exc}") from exc
