"""Brainstorm checklist engine.

Tracks which criteria of a product idea the conversation has covered and
decides what to ask next. Everything here is pure: functions take a
ChecklistState and return a new one, the node does the I/O.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime

import structlog

from flowgenius.agent.state import ChecklistItem, ChecklistState, utcnow
from flowgenius.config.settings import settings

log = structlog.get_logger(__name__)

MAX_FOLLOWUPS = 1
RESPONSE_SNIPPET_CHARS = 200
FALLBACK_LENGTH_SATURATION = 50  # characters of user text for full length confidence

DEFAULT_ITEMS: list[ChecklistItem] = [
    {
        "id": "problem_definition",
        "question": "What specific problem does your idea solve and what is its scope?",
        "keywords": ["problem", "issue", "challenge", "solve", "fix", "scope", "pain", "frustration"],
        "priority": 5,
    },
    {
        "id": "target_users",
        "question": "Who are your target users and what are their characteristics?",
        "keywords": ["users", "target", "audience", "customer", "demographic", "personas", "who"],
        "priority": 5,
    },
    {
        "id": "user_pain_points",
        "question": "What specific pain points do your target users experience?",
        "keywords": ["pain points", "frustrations", "difficulties", "struggles", "issues", "problems"],
        "priority": 5,
    },
    {
        "id": "solution_approach",
        "question": "How does your solution approach solve those pain points?",
        "keywords": ["solution", "approach", "method", "how", "solve", "address", "tackle"],
        "priority": 5,
    },
    {
        "id": "key_features",
        "question": "What are the key features and how would you describe each one?",
        "keywords": ["features", "functionality", "capabilities", "what", "tools", "functions"],
        "priority": 4,
    },
    {
        "id": "user_interactions",
        "question": "How will users interact with your product? What's the user flow?",
        "keywords": ["interaction", "user flow", "journey", "experience", "navigation", "workflow"],
        "priority": 4,
    },
    {
        "id": "ui_aspects",
        "question": "What are the key UI aspects and interface elements?",
        "keywords": ["ui", "interface", "design", "layout", "screens", "elements", "components"],
        "priority": 4,
    },
    {
        "id": "design_visuals",
        "question": "What style, design, and visual approach will you use?",
        "keywords": ["design", "style", "visual", "look", "feel", "branding", "aesthetic"],
        "priority": 3,
    },
    {
        "id": "competition_analysis",
        "question": "Who are your competitors and how is your idea different from existing approaches?",
        "keywords": ["competitors", "competition", "existing", "different", "unique", "alternative"],
        "priority": 4,
    },
    {
        "id": "technical_implementation",
        "question": "What tech stack and technical approach will you use for implementation?",
        "keywords": [
            "tech stack",
            "technology",
            "implementation",
            "development",
            "architecture",
            "backend",
            "frontend",
            "database",
            "security",
        ],
        "priority": 3,
    },
]


@dataclass(frozen=True)
class ScoreThresholds:
    """Score cut-offs for one scoring source.

    ``completion_inclusive`` selects ``>=`` (LLM analysis) or ``>`` (keyword fallback).
    """

    completion: float
    partial: float
    completion_inclusive: bool = True

    def is_complete(self, score: float) -> bool:
        if self.completion_inclusive:
            return score >= self.completion
        return score > self.completion

    def is_partial(self, score: float) -> bool:
        return self.partial <= score and not self.is_complete(score)


ANALYSIS_THRESHOLDS = ScoreThresholds(
    completion=settings.checklist_completion_threshold,
    partial=settings.checklist_partial_threshold,
)
FALLBACK_THRESHOLDS = ScoreThresholds(
    completion=settings.checklist_fallback_completion_threshold,
    partial=settings.checklist_partial_threshold,
    completion_inclusive=False,
)


def initialize_checklist(
    items: list[ChecklistItem] | None = None, min_required: int | None = None
) -> ChecklistState:
    """Fresh checklist with nothing covered yet."""
    fresh = [
        {**copy.deepcopy(item), "completed": False, "response": None, "completed_at": None}
        for item in (items if items is not None else DEFAULT_ITEMS)
    ]
    return {
        "items": fresh,
        "completed_items": [],
        "partial_items": [],
        "dismissed_items": [],
        "followup_counts": {},
        "active_items": compute_active_items(fresh, []),
        "progress": 0,
        "is_complete": False,
        "min_required": min_required if min_required is not None else settings.checklist_min_required,
        "last_addressed_item": None,
        "last_probed_item": None,
    }


def compute_active_items(
    items: list[ChecklistItem], completed: list[str], count: int | None = None
) -> list[str]:
    """Top-priority incomplete ids. Always derived fresh from the items."""
    limit = count if count is not None else settings.checklist_active_items
    pending = [item for item in items if item["id"] not in completed]
    pending.sort(key=lambda item: item.get("priority", 0), reverse=True)
    return [item["id"] for item in pending[:limit]]


def _progress(completed: list[str], items: list[ChecklistItem]) -> int:
    if not items:
        return 0
    return round(len(completed) / len(items) * 100)


def apply_turn(
    checklist: ChecklistState,
    scores: dict[str, float],
    user_text: str,
    thresholds: ScoreThresholds = ANALYSIS_THRESHOLDS,
    now: datetime | None = None,
) -> ChecklistState:
    """Fold one turn's per-criterion scores into the checklist.

    Args:
        checklist: Prior checklist state (not modified).
        scores: Criterion id to completion score in [0, 1]. Unknown ids are ignored.
        user_text: The user's message, stored as the response snippet.
        thresholds: Cut-offs for the source that produced ``scores``.
        now: Completion timestamp, defaults to the current time.

    Returns:
        The updated checklist state.
    """
    now = now or utcnow()
    completed = list(checklist.get("completed_items", []))
    partial = list(checklist.get("partial_items", []))
    dismissed = set(checklist.get("dismissed_items", []))
    items = copy.deepcopy(checklist.get("items", []))
    snippet = user_text[:RESPONSE_SNIPPET_CHARS]

    newly_completed: list[str] = []
    newly_partial: list[str] = []
    for item in items:
        item_id = item["id"]
        if item_id not in scores or item_id in completed:
            continue
        score = scores[item_id]
        if thresholds.is_complete(score):
            newly_completed.append(item_id)
        elif thresholds.is_partial(score):
            newly_partial.append(item_id)

    by_id = {item["id"]: item for item in items}
    for item_id in newly_completed:
        completed.append(item_id)
        by_id[item_id].update(completed=True, response=snippet, completed_at=now)
    partial = [item_id for item_id in partial if item_id not in completed]

    for item_id in newly_partial:
        if item_id in partial or item_id in dismissed:
            continue
        partial.append(item_id)
        by_id[item_id]["response"] = snippet

    min_required = checklist.get("min_required", settings.checklist_min_required)
    if newly_completed or newly_partial:
        log.info(
            "checklist_updated",
            newly_completed=newly_completed,
            newly_partial=newly_partial,
            completed=len(completed),
        )

    return {
        **checklist,
        "items": items,
        "completed_items": completed,
        "partial_items": partial,
        "active_items": compute_active_items(items, completed),
        "progress": _progress(completed, items),
        "is_complete": len(completed) >= min_required,
        "last_addressed_item": (
            newly_completed[0] if newly_completed else checklist.get("last_addressed_item")
        ),
    }


def select_probe_candidate(checklist: ChecklistState) -> ChecklistItem | None:
    """Highest-priority partial item that has never been probed, if any."""
    counts = checklist.get("followup_counts", {})
    completed = checklist.get("completed_items", [])
    by_id = {item["id"]: item for item in checklist.get("items", [])}
    candidates = [
        by_id[item_id]
        for item_id in checklist.get("partial_items", [])
        if item_id in by_id and item_id not in completed and counts.get(item_id, 0) == 0
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda item: item.get("priority", 0), reverse=True)
    return candidates[0]


def record_probe(checklist: ChecklistState, item_id: str) -> ChecklistState:
    """The judgment said "continue": count the follow-up, capped at one per item."""
    counts = dict(checklist.get("followup_counts", {}))
    counts[item_id] = min(counts.get(item_id, 0) + 1, MAX_FOLLOWUPS)
    return {**checklist, "followup_counts": counts, "last_probed_item": item_id}


def dismiss_partial(checklist: ChecklistState, item_id: str) -> ChecklistState:
    """The judgment said "stop": the item leaves partial tracking for good."""
    partial = [pid for pid in checklist.get("partial_items", []) if pid != item_id]
    dismissed = list(checklist.get("dismissed_items", []))
    if item_id not in dismissed:
        dismissed.append(item_id)
    return {**checklist, "partial_items": partial, "dismissed_items": dismissed}


def fallback_scores(checklist: ChecklistState, user_text: str) -> dict[str, float]:
    """Keyword-overlap heuristic used when the analysis call is unavailable.

    Score is the mean of keyword-match ratio and a length confidence that
    saturates at FALLBACK_LENGTH_SATURATION characters. Items with no keyword
    hit score nothing.
    """
    text = user_text.lower()
    length_confidence = min(len(user_text) / FALLBACK_LENGTH_SATURATION, 1.0)
    completed = checklist.get("completed_items", [])
    scores: dict[str, float] = {}
    for item in checklist.get("items", []):
        keywords = item.get("keywords") or []
        if item["id"] in completed or not keywords:
            continue
        matched = [keyword for keyword in keywords if keyword.lower() in text]
        if not matched:
            continue
        keyword_confidence = len(matched) / len(keywords)
        scores[item["id"]] = (keyword_confidence + length_confidence) / 2
    return scores


def pending_items(checklist: ChecklistState) -> list[ChecklistItem]:
    completed = checklist.get("completed_items", [])
    return [item for item in checklist.get("items", []) if item["id"] not in completed]


def item_by_id(checklist: ChecklistState, item_id: str | None) -> ChecklistItem | None:
    for item in checklist.get("items", []):
        if item["id"] == item_id:
            return item
    return None


def progress_line(checklist: ChecklistState) -> str:
    total = len(checklist.get("items", []))
    done = len(checklist.get("completed_items", []))
    return f"📊 Progress: {checklist.get('progress', 0)}% complete ({done}/{total} areas covered)"
