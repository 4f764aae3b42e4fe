"""Routing functions: map merged session state to the next node or END."""

from __future__ import annotations

import enum
from typing import Literal, TypeAlias

import structlog
from langgraph.graph import END

from flowgenius.agent.state import SessionState, Stage, UserAction

log = structlog.get_logger(__name__)


class NodeName(enum.StrEnum):
    PROCESS_USER_TURN = "process_user_turn"
    PROCESS_VOICE_INPUT = "process_voice_input"
    GENERATE_SUMMARY = "generate_summary"
    EVALUATE_MARKET_LANDSCAPE = "evaluate_market_landscape"


TERMINAL = END
Route: TypeAlias = NodeName | Literal["__end__"]

# Which stage a "<stage>_done" action closes.
DONE_ACTIONS: dict[UserAction, Stage] = {
    UserAction.BRAINSTORM_DONE: Stage.BRAINSTORM,
    UserAction.SUMMARY_DONE: Stage.SUMMARY,
    UserAction.MARKET_RESEARCH_DONE: Stage.MARKET_RESEARCH,
    UserAction.PRD_DONE: Stage.PRD,
}

# Node that moves the session out of a finished stage. Stages absent here end the run.
STAGE_EXITS: dict[Stage, NodeName] = {
    Stage.BRAINSTORM: NodeName.GENERATE_SUMMARY,
    Stage.SUMMARY: NodeName.EVALUATE_MARKET_LANDSCAPE,
}


def route(state: SessionState) -> Route:
    """Pick the next node for ``state``. First matching rule wins; never raises."""
    if state.get("error"):
        log.debug("route_terminal", reason="error")
        return TERMINAL

    if state.get("is_processing"):
        log.warning("route_while_processing", session_id=state.get("session_id"))
        return TERMINAL

    action = state.get("last_user_action") or UserAction.CHAT
    messages = state.get("messages") or []
    if messages and messages[-1].get("role") == "assistant" and action == UserAction.CHAT:
        # Normal idle point: the assistant has replied and we wait for the user.
        return TERMINAL

    if action == UserAction.CHAT:
        return NodeName.PROCESS_USER_TURN

    done_stage = DONE_ACTIONS.get(action)  # type: ignore[call-overload]
    if done_stage is None:
        log.warning("route_unknown_action", action=str(action))
        return TERMINAL

    current_stage = state.get("current_stage") or Stage.BRAINSTORM
    if done_stage != current_stage:
        log.warning("route_stale_stage_action", action=str(action), current_stage=str(current_stage))
        return TERMINAL

    node = STAGE_EXITS.get(done_stage)
    if node is None:
        log.info("route_stage_has_no_exit", stage=str(done_stage))
        return TERMINAL
    return node


def route_entry(state: SessionState) -> Route:
    """Entry routing: transcribe pending voice audio before anything else."""
    if state.get("voice_audio_pending") and not state.get("error") and not state.get("is_processing"):
        return NodeName.PROCESS_VOICE_INPUT
    return route(state)


def describe_route(state: SessionState) -> str:
    """Human-readable explanation of where ``state`` would go next."""
    target = route_entry(state)
    if target == TERMINAL:
        if state.get("error"):
            return f"Paused on error: {state['error']}"
        return "Waiting for user input"
    return f"Next step: {target}"
