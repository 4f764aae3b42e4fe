"""Unit tests for payload fence stripping, validation and error messages."""

import pytest

from flowgenius.errors import (
    ErrorCategory,
    PayloadParseError,
    ServiceError,
    StateValidationError,
    categorize,
    describe_error,
)
from flowgenius.models.payloads import (
    ChecklistAnalysis,
    FollowupDecision,
    QuestionSet,
    parse_payload,
    strip_code_fences,
)


@pytest.mark.parametrize(
    "content",
    [
        '```json\n{"questions": ["a"]}\n```',
        '```\n{"questions": ["a"]}\n```',
        'Here you go:\n{"questions": ["a"]}\nHope that helps',
        '{"questions": ["a"]}',
    ],
)
def test_strip_code_fences_variants(content: str) -> None:
    assert strip_code_fences(content) == '{"questions": ["a"]}'


def test_scores_are_clamped() -> None:
    analysis = parse_payload('{"completion_scores": {"a": 1.4, "b": -0.2, "c": 0.5}}', ChecklistAnalysis)
    assert analysis.completion_scores == {"a": 1.0, "b": 0.0, "c": 0.5}


def test_blank_questions_dropped() -> None:
    questions = parse_payload('{"questions": ["  ", "What next?"]}', QuestionSet)
    assert questions.questions == ["What next?"]


def test_followup_continue_needs_a_question() -> None:
    assert parse_payload('{"decision": "continue", "question": "Why?"}', FollowupDecision).should_continue
    assert not parse_payload('{"decision": "continue", "question": ""}', FollowupDecision).should_continue
    assert not parse_payload('{"decision": "stop"}', FollowupDecision).should_continue


@pytest.mark.parametrize("content", ["", None, "no json here", '{"decision": "maybe"}', "{broken"])
def test_parse_errors(content) -> None:
    with pytest.raises(PayloadParseError):
        parse_payload(content, FollowupDecision)


@pytest.mark.parametrize(
    ("error", "category"),
    [
        ("NETWORK_ERROR: connection reset", ErrorCategory.NETWORK),
        ("TIMEOUT: chat completion exceeded 45s", ErrorCategory.TIMEOUT),
        ("RATE_LIMIT: slow down", ErrorCategory.RATE_LIMIT),
        ("UNAUTHORIZED: invalid api key", ErrorCategory.AUTH),
        ("QUOTA_EXCEEDED: insufficient_quota", ErrorCategory.QUOTA),
        (StateValidationError("bad"), ErrorCategory.VALIDATION),
        (PayloadParseError("bad json"), ErrorCategory.PARSE),
        (ServiceError("INVALID_REQUEST: rejected"), ErrorCategory.WORKFLOW),
        (ValueError("something odd"), ErrorCategory.UNKNOWN),
    ],
)
def test_categorize(error, category) -> None:
    assert categorize(error) is category


def test_describe_error_is_user_facing() -> None:
    assert describe_error("NETWORK_ERROR: x") == (
        "A network error occurred. Please check your connection and try again."
    )
