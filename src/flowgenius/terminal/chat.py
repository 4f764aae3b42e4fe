"""Terminal host: chat with the workflow from a shell.

Plain lines are chat messages. Commands:
    /done           mark the current stage as done
    /voice <path>   transcribe an audio file as the next message
    /health         show node health
    /reset          clear a paused error
    /quit           exit
"""

from __future__ import annotations

import argparse
import asyncio
import uuid

import structlog

from flowgenius.agent.graph import Workflow
from flowgenius.agent.router import describe_route
from flowgenius.agent.state import (
    SessionState,
    Stage,
    UserAction,
    add_user_message,
    merge_state,
    reset_to_safe_state,
    utcnow,
)
from flowgenius.config.logging import configure_logging
from flowgenius.errors import FlowGeniusError
from flowgenius.integrations.services import Services

log = structlog.get_logger(__name__)

DONE_ACTIONS = {
    Stage.BRAINSTORM: UserAction.BRAINSTORM_DONE,
    Stage.SUMMARY: UserAction.SUMMARY_DONE,
    Stage.MARKET_RESEARCH: UserAction.MARKET_RESEARCH_DONE,
    Stage.PRD: UserAction.PRD_DONE,
}


def apply_command(state: SessionState, line: str) -> SessionState | None:
    """Apply one input line to ``state``.

    Returns the state to run the workflow on, or None when the line needs no run.
    """
    text = line.strip()
    if not text:
        return None
    if text == "/done":
        stage = Stage(state.get("current_stage") or Stage.BRAINSTORM)
        return merge_state(reset_to_safe_state(state), {"last_user_action": DONE_ACTIONS[stage]})
    if text.startswith("/voice"):
        path = text[len("/voice"):].strip()
        if not path:
            return None
        return merge_state(
            reset_to_safe_state(state),
            {"voice_audio_pending": {"file_path": path, "received_at": utcnow()}},
        )
    if text == "/reset":
        return reset_to_safe_state(state)
    return add_user_message(state, text)


def _print_new_messages(state: SessionState, seen: int) -> int:
    messages = state.get("messages") or []
    for message in messages[seen:]:
        if message["role"] == "assistant":
            print(f"\n🤖 {message['content']}\n")
    return len(messages)


async def run_chat(session_id: str) -> None:
    workflow = Workflow(Services.from_settings())
    state = await workflow.invoke(workflow.create_session(session_id))
    seen = _print_new_messages(state, 0)

    while True:
        try:
            line = await asyncio.to_thread(input, "you> ")
        except EOFError:
            break
        if line.strip() == "/quit":
            break
        if line.strip() == "/health":
            report = workflow.health()
            print(f"overall: {report.overall}")
            for recommendation in report.recommendations:
                print(f"  - {recommendation}")
            continue

        next_state = apply_command(state, line)
        if next_state is None:
            continue
        try:
            state = await workflow.invoke(next_state)
        except FlowGeniusError as exc:
            log.error("workflow_invoke_failed", error=str(exc))
            print(f"\n⚠️  {exc}\n")
            continue
        seen = _print_new_messages(state, seen)
        log.debug("turn_done", route=describe_route(state))


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with FlowGenius in the terminal")
    parser.add_argument("--session-id", default=None)
    args = parser.parse_args()

    configure_logging()
    session_id = args.session_id or f"terminal-{uuid.uuid4().hex[:8]}"
    log.info("starting_terminal_chat", session_id=session_id)
    asyncio.run(run_chat(session_id))


if __name__ == "__main__":
    main()
