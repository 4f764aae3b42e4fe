"""Unit tests for session state reducers and helpers."""

from datetime import datetime

import pytest
from conftest import at

from flowgenius.agent.state import (
    CLEAR,
    Stage,
    UserAction,
    add_user_message,
    as_overwrite,
    assistant_message,
    clear_error,
    create_session,
    merge_messages,
    merge_state,
    reset_to_safe_state,
    user_message,
    validate_state,
)
from flowgenius.errors import StateValidationError


def test_create_session_defaults() -> None:
    state = create_session("abc")

    assert state["session_id"] == "abc"
    assert state["messages"] == []
    assert state["current_stage"] == Stage.BRAINSTORM
    assert state["last_user_action"] == UserAction.CHAT
    assert state["is_processing"] is False
    assert state["error"] is None
    assert state["checklist_state"] is None
    assert "brainstorm" in state["user_prompts"]


@pytest.mark.parametrize("bad_id", ["", "   "])
def test_create_session_rejects_blank_id(bad_id: str) -> None:
    with pytest.raises(StateValidationError):
        create_session(bad_id)


def test_message_merge_is_idempotent(session) -> None:
    update = {"messages": [user_message("hi", Stage.BRAINSTORM, at(1)), assistant_message("hello", Stage.BRAINSTORM, at(2))]}

    once = merge_state(session, update)
    twice = merge_state(once, update)

    assert twice["messages"] == once["messages"]
    assert len(twice["messages"]) == 2


def test_empty_message_update_keeps_history(session) -> None:
    session["messages"] = [user_message("hi", Stage.BRAINSTORM, at(1))]

    merged = merge_state(session, {"messages": []})

    assert [m["content"] for m in merged["messages"]] == ["hi"]


def test_messages_sorted_regardless_of_merge_order(session) -> None:
    first = {"messages": [user_message("one", Stage.BRAINSTORM, at(1))]}
    second = {"messages": [assistant_message("two", Stage.BRAINSTORM, at(2))]}

    forward = merge_state(merge_state(session, first), second)
    backward = merge_state(merge_state(session, second), first)

    assert [m["content"] for m in forward["messages"]] == ["one", "two"]
    assert forward["messages"] == backward["messages"]


def test_same_content_different_time_is_kept_twice() -> None:
    merged = merge_messages(
        [user_message("yes", Stage.BRAINSTORM, at(1))],
        [user_message("yes", Stage.BRAINSTORM, at(5))],
    )
    assert len(merged) == 2


def test_scalar_none_keeps_and_clear_empties(session) -> None:
    errored = merge_state(session, {"error": "boom"})

    assert merge_state(errored, {"error": None})["error"] == "boom"
    assert merge_state(errored, {"error": CLEAR})["error"] is None


def test_false_is_a_defined_update(session) -> None:
    processing = merge_state(session, {"is_processing": True})
    assert merge_state(processing, {"is_processing": False})["is_processing"] is False


def test_nested_records_shallow_merge(session) -> None:
    merged = merge_state(session, {"user_prompts": {"summary": "Be brief"}})

    assert merged["user_prompts"]["summary"] == "Be brief"
    assert merged["user_prompts"]["brainstorm"] == session["user_prompts"]["brainstorm"]


def test_checklist_state_shallow_merge_from_none(session) -> None:
    merged = merge_state(session, {"checklist_state": {"progress": 10}})
    merged = merge_state(merged, {"checklist_state": {"is_complete": False}})

    assert merged["checklist_state"] == {"progress": 10, "is_complete": False}


def test_updated_at_is_stamped_on_every_merge(session) -> None:
    before = session["updated_at"]
    merged = merge_state(session, {})
    assert isinstance(merged["updated_at"], datetime)
    assert merged["updated_at"] >= before


def test_session_id_is_immutable(session) -> None:
    merged = merge_state(session, {"session_id": "other"})
    assert merged["session_id"] == "test-session"


def test_unknown_field_is_rejected(session) -> None:
    with pytest.raises(StateValidationError):
        merge_state(session, {"not_a_field": 1})


def test_merge_does_not_mutate_input(session) -> None:
    merge_state(session, {"messages": [user_message("hi", Stage.BRAINSTORM, at(1))]})
    assert session["messages"] == []


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("session_id", ""),
        ("current_stage", "requirements"),
        ("messages", "not a list"),
        ("messages", [{"role": "system", "content": "x", "created_at": at(0)}]),
        ("messages", [{"role": "user", "content": "x", "created_at": "yesterday"}]),
    ],
)
def test_validate_state_rejects_malformed(session, field: str, value) -> None:
    session[field] = value
    with pytest.raises(StateValidationError):
        validate_state(session)


def test_add_user_message_resumes_after_error(session) -> None:
    errored = merge_state(session, {"error": "paused", "last_user_action": UserAction.BRAINSTORM_DONE})

    resumed = add_user_message(errored, "Here is more detail")

    assert resumed["error"] is None
    assert resumed["last_user_action"] == UserAction.CHAT
    assert resumed["messages"][-1]["role"] == "user"


def test_typed_message_drops_stale_voice_audio(session) -> None:
    pending = merge_state(session, {"voice_audio_pending": {"file_path": "memo.wav"}})

    typed = add_user_message(pending, "Never mind, typing it")

    assert typed["voice_audio_pending"] is None


def test_clear_error_and_safe_reset(session) -> None:
    messy = merge_state(
        session,
        {
            "error": "boom",
            "is_processing": True,
            "voice_audio_pending": {"file_path": "a.wav"},
            "messages": [user_message("keep me", Stage.BRAINSTORM, at(1))],
        },
    )

    assert clear_error(messy)["error"] is None
    safe = reset_to_safe_state(messy)
    assert safe["error"] is None
    assert safe["is_processing"] is False
    assert safe["voice_audio_pending"] is None
    assert safe["messages"][0]["content"] == "keep me"


def test_as_overwrite_clears_emptied_optional_fields(session) -> None:
    update = as_overwrite(merge_state(session, {"title": "MealMate"}))

    assert update["title"] == "MealMate"
    assert update["error"] == CLEAR
    assert update["voice_audio_pending"] == CLEAR
    assert update["session_id"] == session["session_id"]
