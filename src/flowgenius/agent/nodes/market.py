"""Market research node: searches the web for products similar to the summarized idea."""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from flowgenius.agent.state import (
    CLEAR,
    ChatMessage,
    SessionState,
    SessionUpdate,
    Stage,
    UserAction,
    assistant_message,
    validate_state,
)
from flowgenius.config.settings import settings
from flowgenius.errors import ServiceError
from flowgenius.integrations.services import SearchResponse, SearchResult, Services

log = structlog.get_logger(__name__)

MAX_SEARCH_TERMS = 6
MAX_KEYWORDS = 5
MAX_COMPETITORS = 3
DESCRIPTION_CHARS = 200
GENERIC_TERMS = ("similar product ideas", "existing solutions", "market competition")

STOP_WORDS = frozenset(
    "this that with have will from they been their would there could other into after "
    "first well also some what your when make time very just much".split()
)
PRODUCT_INDICATORS = (
    "app",
    "software",
    "platform",
    "service",
    "solution",
    "product",
    "startup",
    "company",
    "business",
    "tool",
    "website",
    "download",
)
TITLE_SEPARATORS = (" - ", " | ", " : ", " — ")

_PROJECT_NAME = re.compile(r"^# (.+?)\s*$", re.MULTILINE)
_SECTION = r"^## {title}\s*\n(.*?)(?=^##|\Z)"

NO_SUMMARY = (
    "I need a project summary before I can research the market. Finish brainstorming and "
    "generate the summary first."
)


@dataclass
class Competitor:
    name: str
    url: str
    description: str
    relevance: float


def _section(summary: str, title: str) -> str | None:
    match = re.search(_SECTION.format(title=re.escape(title)), summary, re.MULTILINE | re.DOTALL)
    return match.group(1).strip() if match else None


def extract_keywords(text: str) -> list[str]:
    """First few meaningful words of ``text``, lowercased, stop words removed."""
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    return [w for w in words if len(w) > 3 and w not in STOP_WORDS][:MAX_KEYWORDS]


def extract_search_terms(summary: str) -> list[str]:
    """Search queries derived from the project name, description and audience."""
    terms: list[str] = []

    name = _PROJECT_NAME.search(summary)
    if name:
        project = name.group(1).strip()
        # The summary template puts the name on the line under "# Project Name".
        if project.lower() == "project name":
            following = summary[name.end():].strip().splitlines()
            project = following[0].strip() if following else ""
        if project:
            terms.extend([f'"{project}" app', f"{project} product"])

    description = _section(summary, "Project Description")
    if description:
        keywords = extract_keywords(description)
        terms.extend(f"{k} software" for k in keywords)
        terms.extend(f"{k} app" for k in keywords)

    audience = _section(summary, "Target Audience")
    if audience:
        terms.extend(f"{k} solution" for k in extract_keywords(audience))

    unique = list(dict.fromkeys(terms))
    if len(unique) < 3:
        unique.extend(t for t in GENERIC_TERMS if t not in unique)
    return unique[:MAX_SEARCH_TERMS]


def is_product_result(result: SearchResult) -> bool:
    content = f"{result.title} {result.content}".lower()
    return any(indicator in content for indicator in PRODUCT_INDICATORS)


def product_name(title: str) -> str:
    for separator in TITLE_SEPARATORS:
        if separator in title:
            return title.split(separator)[0].strip() or title
    return " ".join(title.split()[:3])


def extract_competitors(responses: list[SearchResponse]) -> list[Competitor]:
    """Top product-like results across all searches, best score first, unique by URL."""
    seen: set[str] = set()
    competitors: list[Competitor] = []
    for response in responses:
        for result in response.results:
            if not result.url or result.url in seen or not is_product_result(result):
                continue
            seen.add(result.url)
            description = result.content[:DESCRIPTION_CHARS]
            if len(result.content) > DESCRIPTION_CHARS:
                description += "..."
            competitors.append(Competitor(product_name(result.title), result.url, description, result.score))
    competitors.sort(key=lambda c: c.relevance, reverse=True)
    return competitors[:MAX_COMPETITORS]


def format_report(competitors: list[Competitor]) -> str:
    lines = ["# 🔍 Market Research Results", ""]
    if not competitors:
        lines += [
            "## No Direct Competitors Found",
            "",
            "I couldn't find products that closely match your idea. That may point to an open "
            "niche, or the idea may need more specific search terms.",
        ]
        return "\n".join(lines)

    lines += ["## Similar Solutions Found:", ""]
    for index, competitor in enumerate(competitors, start=1):
        lines += [f"**{index}. [{competitor.name}]({competitor.url})**", competitor.description, ""]
    lines.append("Review these to see how your idea can stand apart.")
    return "\n".join(lines)


def latest_summary(messages: list[ChatMessage]) -> str | None:
    for message in reversed(messages):
        if message["role"] == "assistant" and message.get("stage_at_creation") == Stage.SUMMARY:
            if message["content"].lstrip().startswith("#"):
                return message["content"]
    return None


async def run(state: SessionState, services: Services) -> SessionUpdate:
    """Research similar products for the latest project summary."""
    if state.get("is_processing"):
        log.warning("market_skipped_already_processing", session_id=state.get("session_id"))
        return {}
    validate_state(state)

    summary = latest_summary(state.get("messages") or [])
    if summary is None:
        return {
            "messages": [assistant_message(NO_SUMMARY, Stage.SUMMARY)],
            "last_user_action": UserAction.CHAT,
            "is_processing": False,
        }
    if services.search is None:
        raise ServiceError("INVALID_REQUEST: no web search service configured")

    terms = extract_search_terms(summary)[: settings.market_max_searches]
    log.info("market_research_started", session_id=state.get("session_id"), terms=terms)

    responses: list[SearchResponse] = []
    errors: list[str] = []
    for term in terms:
        response = await services.search.search(term)
        if response.success:
            responses.append(response)
        else:
            errors.append(response.error or "search failed")
    if not responses and errors:
        raise ServiceError(errors[0])

    competitors = extract_competitors(responses)
    log.info("market_research_completed", searches=len(responses), competitors=len(competitors))
    return {
        "messages": [assistant_message(format_report(competitors), Stage.MARKET_RESEARCH)],
        "current_stage": Stage.MARKET_RESEARCH,
        "last_user_action": UserAction.CHAT,
        "is_processing": False,
        "error": CLEAR,
    }
