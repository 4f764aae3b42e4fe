"""Tavily web search adapter over httpx."""

from __future__ import annotations

import asyncio
import time

import httpx
import structlog

from flowgenius.config.settings import settings
from flowgenius.errors import ErrorCode, coded
from flowgenius.integrations.services import SearchResponse, SearchResult

log = structlog.get_logger(__name__)


def _status_error(exc: httpx.HTTPStatusError) -> str:
    status = exc.response.status_code
    if status == 429:
        return coded(ErrorCode.RATE_LIMIT, f"search rate limited ({status})")
    if status in (401, 403):
        return coded(ErrorCode.UNAUTHORIZED, f"search rejected credentials ({status})")
    if status in (402, 432, 433):
        return coded(ErrorCode.QUOTA_EXCEEDED, f"search plan limit reached ({status})")
    if status >= 500:
        return coded(ErrorCode.SERVER_ERROR, f"search service error ({status})")
    return coded(ErrorCode.INVALID_REQUEST, f"search request rejected ({status})")


class TavilySearchService:
    """Sequential search client that keeps a minimum spacing between requests."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        min_interval: float | None = None,
        max_results: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if api_key is None and settings.tavily_api_key is not None:
            api_key = settings.tavily_api_key.get_secret_value()
        self._api_key = api_key
        self._base_url = (base_url or settings.tavily_base_url).rstrip("/")
        self._timeout = timeout or settings.search_timeout_seconds
        self._min_interval = settings.search_min_interval_seconds if min_interval is None else min_interval
        self._max_results = max_results or settings.market_results_per_search
        self._transport = transport
        self._last_request: float | None = None
        self._lock = asyncio.Lock()

    async def _respect_spacing(self) -> None:
        if self._last_request is None or self._min_interval <= 0:
            return
        wait = self._min_interval - (time.monotonic() - self._last_request)
        if wait > 0:
            await asyncio.sleep(wait)

    async def search(self, query: str) -> SearchResponse:
        """Run one basic-depth search for ``query``."""
        if not self._api_key:
            return SearchResponse(
                success=False, query=query, error=coded(ErrorCode.UNAUTHORIZED, "TAVILY_API_KEY is not set")
            )

        payload = {
            "api_key": self._api_key,
            "query": query,
            "search_depth": "basic",
            "max_results": self._max_results,
            "include_answer": True,
        }
        async with self._lock:
            await self._respect_spacing()
            try:
                async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                    response = await client.post(f"{self._base_url}/search", json=payload)
                    response.raise_for_status()
                    data = response.json()
            except httpx.TimeoutException as exc:
                return SearchResponse(success=False, query=query, error=coded(ErrorCode.TIMEOUT, str(exc)))
            except httpx.HTTPStatusError as exc:
                error = _status_error(exc)
                log.warning("search_failed", query=query, error=error)
                return SearchResponse(success=False, query=query, error=error)
            except httpx.TransportError as exc:
                return SearchResponse(
                    success=False, query=query, error=coded(ErrorCode.NETWORK_ERROR, str(exc))
                )
            finally:
                self._last_request = time.monotonic()

        results = [
            SearchResult(
                title=item.get("title") or "",
                url=item.get("url") or "",
                content=item.get("content") or "",
                score=float(item.get("score") or 0.0),
            )
            for item in data.get("results", [])
        ]
        log.info("search_completed", query=query, results=len(results))
        return SearchResponse(success=True, query=query, results=results, answer=data.get("answer"))
