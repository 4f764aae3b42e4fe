"""Session state for the LangGraph workflow, with per-field reducers.

Nodes never mutate state. They return a partial update which LangGraph merges
into the session through the reducers annotated on each field below. The same
reducers back ``merge_state`` so hosts and tests can merge updates outside a
graph run.
"""

from __future__ import annotations

import copy
import enum
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Literal, TypedDict, get_type_hints

import structlog

from flowgenius.errors import StateValidationError

log = structlog.get_logger(__name__)

# Explicit "clear this field" marker. ``None`` in an update means "keep".
CLEAR = "__clear__"


class Stage(enum.StrEnum):
    BRAINSTORM = "brainstorm"
    SUMMARY = "summary"
    MARKET_RESEARCH = "market_research"
    PRD = "prd"


class UserAction(enum.StrEnum):
    CHAT = "chat"
    BRAINSTORM_DONE = "brainstorm_done"
    SUMMARY_DONE = "summary_done"
    MARKET_RESEARCH_DONE = "market_research_done"
    PRD_DONE = "prd_done"


Role = Literal["user", "assistant"]


class ChatMessage(TypedDict):
    role: Role
    content: str
    created_at: datetime
    stage_at_creation: Stage


class ChecklistItem(TypedDict, total=False):
    id: str
    question: str
    keywords: list[str]
    priority: int
    completed: bool
    response: str | None
    completed_at: datetime | None


class ChecklistState(TypedDict, total=False):
    items: list[ChecklistItem]
    completed_items: list[str]
    partial_items: list[str]
    dismissed_items: list[str]
    followup_counts: dict[str, int]
    active_items: list[str]
    progress: int
    is_complete: bool
    min_required: int
    last_addressed_item: str | None
    last_probed_item: str | None


class VoiceAudio(TypedDict, total=False):
    file_path: str
    language: str | None
    received_at: datetime


class VoiceTranscription(TypedDict, total=False):
    status: Literal["processing", "completed", "failed"]
    text: str | None
    language: str | None
    duration: float | None
    error: str | None
    started_at: datetime | None
    completed_at: datetime | None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Reducers ──────────────────────────────────────────────────────────────


def merge_messages(
    existing: list[ChatMessage] | None, update: list[ChatMessage] | None
) -> list[ChatMessage]:
    """Union of both lists, deduplicated on (role, content, created_at), sorted by time.

    An empty or missing update is "no new messages", never "clear history".
    """
    if not update:
        return list(existing or [])
    merged: dict[tuple[str, str, datetime], ChatMessage] = {}
    for message in (*(existing or []), *update):
        merged[(message["role"], message["content"], message["created_at"])] = message
    return sorted(merged.values(), key=lambda m: m["created_at"])


def replace_if_set(existing: Any, update: Any) -> Any:
    """Scalar reducer: a defined update replaces, ``None`` keeps, ``CLEAR`` empties."""
    if update is None:
        return existing
    if isinstance(update, str) and update == CLEAR:
        return None
    return update


def shallow_merge(existing: dict | None, update: dict | None) -> dict | None:
    """Nested-record reducer: incoming keys overwrite, other keys are preserved."""
    if update is None:
        return existing
    if isinstance(update, str) and update == CLEAR:
        return None
    if not existing:
        return dict(update)
    return {**existing, **update}


def keep_session_id(existing: str | None, update: str | None) -> str | None:
    if not existing:
        return update
    if update and update != existing:
        log.warning("session_id_change_ignored", session_id=existing, attempted=update)
    return existing


def touch(existing: datetime | None, update: datetime | None) -> datetime:
    return utcnow()


class SessionState(TypedDict, total=False):
    """State passed between nodes in the LangGraph workflow.

    Attributes:
        session_id: Stable identifier, immutable once set.
        user_id: Optional owner of the session.
        title: Optional display title chosen by the host.
        messages: Conversation, chronologically sorted and deduplicated.
        current_stage: Workflow stage the session is in.
        last_user_action: Drives routing; ``chat`` or ``<stage>_done``.
        is_processing: Re-entrancy guard; nodes no-op while it is true.
        error: Human-readable error; presence pauses the workflow.
        user_prompts: Extra per-stage instructions from the user.
        selected_models: Per-stage chat model override.
        checklist_state: Brainstorm progress, present once brainstorming begins.
        voice_audio_pending: Audio waiting to be transcribed.
        voice_transcription: Status of the latest transcription.
        created_at: Session creation time.
        updated_at: Time of the latest merge.
    """

    session_id: Annotated[str, keep_session_id]
    user_id: Annotated[str | None, replace_if_set]
    title: Annotated[str | None, replace_if_set]
    messages: Annotated[list[ChatMessage], merge_messages]
    current_stage: Annotated[Stage, replace_if_set]
    last_user_action: Annotated[UserAction, replace_if_set]
    is_processing: Annotated[bool, replace_if_set]
    error: Annotated[str | None, replace_if_set]
    user_prompts: Annotated[dict[str, str], shallow_merge]
    selected_models: Annotated[dict[str, str], shallow_merge]
    checklist_state: Annotated[ChecklistState | None, shallow_merge]
    voice_audio_pending: Annotated[VoiceAudio | None, replace_if_set]
    voice_transcription: Annotated[VoiceTranscription | None, shallow_merge]
    created_at: Annotated[datetime, replace_if_set]
    updated_at: Annotated[datetime, touch]


SessionUpdate = dict[str, Any]


def _reducers() -> dict[str, Callable[[Any, Any], Any]]:
    hints = get_type_hints(SessionState, include_extras=True)
    return {name: hint.__metadata__[0] for name, hint in hints.items()}


REDUCERS = _reducers()

# Optional fields seeded with None so every reducer sees a defined starting value.
OPTIONAL_FIELDS = (
    "user_id",
    "title",
    "error",
    "checklist_state",
    "voice_audio_pending",
    "voice_transcription",
)

DEFAULT_USER_PROMPTS: dict[str, str] = {
    "brainstorm": "Help me explore the idea from every angle. Keep questions short and concrete.",
    "summary": "Keep the summary concise and use the user's own wording where possible.",
    "prd": "Write requirements a small team could start building from.",
}


# ── Operations ────────────────────────────────────────────────────────────


def create_session(session_id: str, user_id: str | None = None) -> SessionState:
    """Return a fresh session with defaults (empty conversation, brainstorm stage)."""
    if not session_id or not session_id.strip():
        raise StateValidationError("session_id must be a non-empty string")
    now = utcnow()
    state: SessionState = {
        "session_id": session_id,
        "messages": [],
        "current_stage": Stage.BRAINSTORM,
        "last_user_action": UserAction.CHAT,
        "is_processing": False,
        "user_prompts": dict(DEFAULT_USER_PROMPTS),
        "selected_models": {stage.value: "" for stage in Stage},
        "created_at": now,
        "updated_at": now,
    }
    for name in OPTIONAL_FIELDS:
        state[name] = None  # type: ignore[literal-required]
    state["user_id"] = user_id
    return state


def with_defaults(state: SessionState) -> SessionState:
    """Fill optional fields a host may have left out, without touching the rest."""
    return {**{name: None for name in OPTIONAL_FIELDS}, **state}  # type: ignore[return-value]


def as_overwrite(state: SessionState) -> SessionUpdate:
    """``state`` as an update over stored state: empty optional fields become ``CLEAR``."""
    cleared = {name: CLEAR for name in OPTIONAL_FIELDS if state.get(name) is None}
    return {**state, **cleared}  # type: ignore[return-value]


def merge_state(state: SessionState, update: SessionUpdate) -> SessionState:
    """Merge a partial update into ``state`` with the field reducers. Returns a new dict."""
    merged: dict[str, Any] = dict(state)
    for name, value in update.items():
        reducer = REDUCERS.get(name)
        if reducer is None:
            raise StateValidationError(f"Unknown state field: {name!r}")
        merged[name] = reducer(merged.get(name), value)
    merged["updated_at"] = utcnow()
    return merged  # type: ignore[return-value]


def validate_state(state: SessionState) -> None:
    """Raise StateValidationError if required fields are missing or out of range."""
    session_id = state.get("session_id")
    if not isinstance(session_id, str) or not session_id.strip():
        raise StateValidationError("session_id must be a non-empty string")

    messages = state.get("messages")
    if messages is not None and not isinstance(messages, list):
        raise StateValidationError("messages must be a list")
    for index, message in enumerate(messages or []):
        if message.get("role") not in ("user", "assistant"):
            raise StateValidationError(f"messages[{index}] has invalid role {message.get('role')!r}")
        if not isinstance(message.get("content"), str):
            raise StateValidationError(f"messages[{index}] content must be a string")
        if not isinstance(message.get("created_at"), datetime):
            raise StateValidationError(f"messages[{index}] created_at must be a datetime")

    stage = state.get("current_stage")
    if stage is not None and stage not in Stage.__members__.values():
        raise StateValidationError(f"Invalid current_stage {stage!r}")


def user_message(content: str, stage: Stage | str, created_at: datetime | None = None) -> ChatMessage:
    return {
        "role": "user",
        "content": content,
        "created_at": created_at or utcnow(),
        "stage_at_creation": Stage(stage),
    }


def assistant_message(
    content: str, stage: Stage | str, created_at: datetime | None = None
) -> ChatMessage:
    return {
        "role": "assistant",
        "content": content,
        "created_at": created_at or utcnow(),
        "stage_at_creation": Stage(stage),
    }


def add_user_message(state: SessionState, content: str) -> SessionState:
    """Append a typed user turn, clearing any paused error and stale pending audio."""
    stage = state.get("current_stage") or Stage.BRAINSTORM
    return merge_state(
        state,
        {
            "messages": [user_message(content, stage)],
            "last_user_action": UserAction.CHAT,
            "error": CLEAR,
            "voice_audio_pending": CLEAR,
        },
    )


def clear_error(state: SessionState) -> SessionState:
    return merge_state(state, {"error": CLEAR, "is_processing": False})


def reset_to_safe_state(state: SessionState) -> SessionState:
    """Drop transient fields and errors while keeping the conversation and progress."""
    return merge_state(
        state,
        {
            "error": CLEAR,
            "is_processing": False,
            "last_user_action": UserAction.CHAT,
            "voice_audio_pending": CLEAR,
            "voice_transcription": CLEAR,
        },
    )


def snapshot(state: SessionState) -> SessionState:
    return copy.deepcopy(state)


def conversation_text(messages: list[ChatMessage]) -> str:
    """Render messages as ``role: content`` blocks separated by blank lines."""
    return "\n\n".join(f"{m['role']}: {m['content']}" for m in messages)
