"""Summary node: turns the brainstorm conversation into a project summary."""

from __future__ import annotations

import structlog

from flowgenius.agent.state import (
    CLEAR,
    SessionState,
    SessionUpdate,
    Stage,
    UserAction,
    assistant_message,
    conversation_text,
    validate_state,
)
from flowgenius.errors import ServiceError
from flowgenius.integrations.services import Services

log = structlog.get_logger(__name__)

EMPTY_CONVERSATION = (
    "No conversation to summarize yet. Share your idea first and I'll summarize it once we've "
    "talked it through."
)

SUMMARY_PROMPT = """You write concise project summaries from brainstorming conversations.
Use only what the user actually said. Leave a section out rather than inventing content.

Use exactly this markdown format:

# Project Name
<a short, descriptive name>

## Project Description
<two or three sentences on the problem and the solution>

## Target Audience
<who it is for>

## Desired Features
- <feature>

## Design Requests
- <design or style request>

## Other Notes
- <anything else worth keeping>"""


async def run(state: SessionState, services: Services) -> SessionUpdate:
    """Summarize the conversation and move the session to the summary stage."""
    if state.get("is_processing"):
        log.warning("summary_skipped_already_processing", session_id=state.get("session_id"))
        return {}
    validate_state(state)

    messages = state.get("messages") or []
    if not messages:
        return {
            "messages": [assistant_message(EMPTY_CONVERSATION, Stage.SUMMARY)],
            "current_stage": Stage.SUMMARY,
            "last_user_action": UserAction.CHAT,
            "is_processing": False,
        }

    system = SUMMARY_PROMPT
    extra = (state.get("user_prompts") or {}).get(Stage.SUMMARY.value)
    if extra:
        system += f"\n\nAdditional instructions from the user: {extra}"
    model = (state.get("selected_models") or {}).get(Stage.SUMMARY.value) or None

    log.info("summary_generating", session_id=state.get("session_id"), messages=len(messages))
    result = await services.chat.call(
        system,
        f"Summarize this conversation:\n\n{conversation_text(messages)}",
        temperature=0.3,
        max_tokens=2000,
        model=model,
    )
    if not result.success:
        raise ServiceError(result.error or "summary generation failed")

    summary = (result.content or "").strip()
    if not summary:
        raise ServiceError("INVALID_REQUEST: summary came back empty")

    return {
        "messages": [assistant_message(summary, Stage.SUMMARY)],
        "current_stage": Stage.SUMMARY,
        "last_user_action": UserAction.CHAT,
        "is_processing": False,
        "error": CLEAR,
    }
