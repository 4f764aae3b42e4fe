"""User turn node: advances the brainstorm checklist and decides what to ask next.

Flow per turn:
    1. Score the latest user message against the open criteria (chat model,
       keyword heuristic if the call fails).
    2. Fold the scores into the checklist.
    3. Probe one partially covered criterion at most once.
    4. Otherwise ask the next questions, or congratulate once enough is covered.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from flowgenius.agent.checklist import (
    ANALYSIS_THRESHOLDS,
    FALLBACK_THRESHOLDS,
    ScoreThresholds,
    apply_turn,
    dismiss_partial,
    fallback_scores,
    initialize_checklist,
    item_by_id,
    pending_items,
    progress_line,
    record_probe,
    select_probe_candidate,
)
from flowgenius.agent.state import (
    ChatMessage,
    ChecklistItem,
    ChecklistState,
    SessionState,
    SessionUpdate,
    Stage,
    UserAction,
    assistant_message,
    conversation_text,
    validate_state,
)
from flowgenius.errors import ServiceError
from flowgenius.integrations.services import ChatCompletionService, Services
from flowgenius.models.payloads import ChecklistAnalysis, FollowupDecision, QuestionSet, parse_payload

log = structlog.get_logger(__name__)

HISTORY_WINDOW = 10
MAX_QUESTIONS = 3

WELCOME = (
    "Hello! I'm FlowGenius, your AI thought partner. I'll help you explore your product idea "
    "step by step until we have everything needed for a solid project summary.\n\n{question}"
)
GREETING = (
    "Hello! I'm FlowGenius. We're in the {stage} stage of your project. "
    "What would you like to work on?"
)
COMPLETE = (
    "🎉 Excellent! We've covered {done} of {total} key areas of your idea, which is enough for "
    "a solid project summary. Add anything else you'd like, or mark brainstorming as done and "
    "I'll write the summary."
)
ACKNOWLEDGE = "Great, that gives me a clear picture of {topic}."

ANALYSIS_PROMPT = """You evaluate a product brainstorming conversation.
For each criterion listed by the user, score from 0 to 1 how completely the conversation,
and especially the latest user message, answers it. 1 means fully answered with specifics,
0.5 means touched on but vague, 0 means not addressed.

Respond with JSON only:
{"completion_scores": {"<criterion_id>": <score>}, "reasoning": "<one sentence>"}"""

FOLLOWUP_PROMPT = """You decide whether a brainstorming assistant should ask one follow-up
question about a topic the user only partly answered. Ask again only when a short, specific
question would clearly get a better answer; otherwise move on.

Respond with JSON only:
{"decision": "continue" | "stop", "question": "<follow-up question or null>", "reasoning": "<one sentence>"}"""

QUESTION_PROMPT = """You are FlowGenius, a friendly thought partner helping a user shape a
product idea. Ask at most {max_questions} short, concrete questions about the open topics
listed by the user, most important first. Build on what they already said and do not repeat
questions that were answered.
{instructions}
Respond with JSON only:
{{"questions": ["<question>", ...], "reasoning": "<one sentence>"}}"""

CONVERSE_PROMPT = """You are FlowGenius, a friendly thought partner. The user is in the
{stage} stage of refining their product idea. Answer their latest message helpfully and
concisely, using the conversation for context.
{instructions}"""


def _topic(item_id: str) -> str:
    return item_id.replace("_", " ")


def _history(messages: list[ChatMessage]) -> list[dict[str, str]]:
    return [{"role": m["role"], "content": m["content"]} for m in messages[-HISTORY_WINDOW:]]


def _instructions(state: SessionState, stage: Stage) -> str:
    extra = (state.get("user_prompts") or {}).get(stage.value)
    return f"\nAdditional instructions from the user: {extra}\n" if extra else ""


def _model(state: SessionState, stage: Stage) -> str | None:
    return (state.get("selected_models") or {}).get(stage.value) or None


async def _score_turn(
    chat: ChatCompletionService,
    checklist: ChecklistState,
    messages: list[ChatMessage],
    model: str | None,
) -> tuple[dict[str, float], ScoreThresholds]:
    """Per-criterion scores for the latest message.

    Falls back to keyword scoring when the analysis call itself fails. A call
    that succeeds with an unreadable payload raises PayloadParseError.
    """
    text = messages[-1]["content"]
    open_items = pending_items(checklist)
    if not open_items:
        return {}, ANALYSIS_THRESHOLDS

    criteria = "\n".join(f"- {item['id']}: {item['question']}" for item in open_items)
    request = (
        f"Criteria:\n{criteria}\n\n"
        f"Conversation so far:\n{conversation_text(messages[-HISTORY_WINDOW:-1])}\n\n"
        f"Latest user message:\n{text}"
    )
    result = await chat.call(ANALYSIS_PROMPT, request, temperature=0.1, max_tokens=2000, model=model)
    if not result.success:
        log.warning("analysis_unavailable_using_keywords", error=result.error)
        return fallback_scores(checklist, text), FALLBACK_THRESHOLDS

    analysis = parse_payload(result.content, ChecklistAnalysis)
    log.debug("analysis_scored", scores=analysis.completion_scores, reasoning=analysis.reasoning)
    return analysis.completion_scores, ANALYSIS_THRESHOLDS


async def _judge_followup(
    chat: ChatCompletionService,
    item: ChecklistItem,
    user_text: str,
    attempts: int,
    model: str | None,
) -> FollowupDecision:
    request = json.dumps(
        {
            "topic_question": item["question"],
            "user_response": user_text,
            "previous_followups": attempts,
        }
    )
    result = await chat.call(FOLLOWUP_PROMPT, request, temperature=0.3, max_tokens=500, model=model)
    if not result.success:
        raise ServiceError(result.error or "followup judgment failed")
    return parse_payload(result.content, FollowupDecision)


async def _ask_questions(
    chat: ChatCompletionService,
    state: SessionState,
    checklist: ChecklistState,
    messages: list[ChatMessage],
    model: str | None,
) -> list[str]:
    active = checklist.get("active_items", [])
    ordered = sorted(
        pending_items(checklist),
        key=lambda item: (item["id"] not in active, -item.get("priority", 0)),
    )
    topics = "\n".join(f"- {item['id']}: {item['question']}" for item in ordered)
    system = QUESTION_PROMPT.format(
        max_questions=MAX_QUESTIONS, instructions=_instructions(state, Stage.BRAINSTORM)
    )
    result = await chat.call(
        system,
        f"Open topics, most important first:\n{topics}",
        history=_history(messages),
        temperature=0.3,
        max_tokens=1500,
        model=model,
    )
    if not result.success:
        raise ServiceError(result.error or "question generation failed")
    questions = parse_payload(result.content, QuestionSet).questions[:MAX_QUESTIONS]
    if not questions and ordered:
        questions = [ordered[0]["question"]]
    return questions


async def _converse(
    chat: ChatCompletionService, state: SessionState, stage: Stage, messages: list[ChatMessage]
) -> str:
    system = CONVERSE_PROMPT.format(stage=stage.value.replace("_", " "), instructions=_instructions(state, stage))
    result = await chat.call(
        system,
        messages[-1]["content"],
        history=_history(messages[:-1]),
        temperature=0.5,
        max_tokens=1000,
        model=_model(state, stage),
    )
    if not result.success:
        raise ServiceError(result.error or "chat reply failed")
    return (result.content or "").strip()


def _reply_update(text: str, stage: Stage, **extra: Any) -> SessionUpdate:
    return {
        "messages": [assistant_message(text, stage)],
        "is_processing": False,
        "last_user_action": UserAction.CHAT,
        **extra,
    }


async def run(state: SessionState, services: Services) -> SessionUpdate:
    """Process the latest user message and produce the assistant's reply.

    Args:
        state: Current session state.
        services: Injected external services.

    Returns:
        Partial update with the reply and the new checklist state.
    """
    if state.get("is_processing"):
        log.warning("turn_skipped_already_processing", session_id=state.get("session_id"))
        return {}
    validate_state(state)

    stage = Stage(state.get("current_stage") or Stage.BRAINSTORM)
    messages = state.get("messages") or []
    if not messages and stage is not Stage.BRAINSTORM:
        log.info("turn_greeting", session_id=state.get("session_id"), stage=stage.value)
        return _reply_update(GREETING.format(stage=stage.value.replace("_", " ")), stage)

    checklist = state.get("checklist_state") or initialize_checklist()
    if not messages:
        first = item_by_id(checklist, (checklist.get("active_items") or [None])[0])
        question = first["question"] if first else "What idea would you like to explore?"
        log.info("turn_welcome", session_id=state.get("session_id"))
        return _reply_update(WELCOME.format(question=question), stage, checklist_state=checklist)

    if messages[-1]["role"] != "user":
        return {"is_processing": False}

    if stage is not Stage.BRAINSTORM:
        return _reply_update(await _converse(services.chat, state, stage, messages), stage)

    text = messages[-1]["content"]
    model = _model(state, stage)
    scores, thresholds = await _score_turn(services.chat, checklist, messages, model)
    updated = apply_turn(checklist, scores, text, thresholds)
    newly_completed = len(updated["completed_items"]) > len(checklist.get("completed_items", []))

    if updated["is_complete"]:
        reply = COMPLETE.format(done=len(updated["completed_items"]), total=len(updated["items"]))
        log.info("checklist_complete", session_id=state.get("session_id"), progress=updated["progress"])
        return _reply_update(reply, stage, checklist_state=updated)

    candidate = select_probe_candidate(updated)
    if candidate is not None:
        attempts = updated.get("followup_counts", {}).get(candidate["id"], 0)
        decision = await _judge_followup(services.chat, candidate, text, attempts, model)
        if decision.should_continue:
            updated = record_probe(updated, candidate["id"])
            log.info("followup_probe", item=candidate["id"])
            return _reply_update(decision.question or "", stage, checklist_state=updated)
        updated = dismiss_partial(updated, candidate["id"])
        log.info("followup_dismissed", item=candidate["id"], reasoning=decision.reasoning)

    parts: list[str] = []
    if newly_completed and updated.get("last_addressed_item"):
        parts.append(ACKNOWLEDGE.format(topic=_topic(updated["last_addressed_item"])))
    parts.append("\n\n".join(await _ask_questions(services.chat, state, updated, messages, model)))
    parts.append(progress_line(updated))
    return _reply_update("\n\n".join(p for p in parts if p), stage, checklist_state=updated)
