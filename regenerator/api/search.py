from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from .cache import LookupCache
from .models import PAAData, ReferenceData, SearchResult

logger = logging.getLogger("regenerator.search")

SERPER_URL = "https://google.serper.dev/search"
SERPER_RESULT_COUNT = 15
ORGANIC_LIMIT = 8
PAA_LIMIT = 6
DEFAULT_SEARCH_TIMEOUT_SECONDS = 20


def build_search_query(title: str, year: int) -> str:
    return f"{title} successor vs new model {year} {year + 1} review comparison"


def _parse_results(body: Dict[str, Any]) -> SearchResult:
    organics: List[ReferenceData] = []
    for item in (body.get("organic") or [])[:ORGANIC_LIMIT]:
        if not isinstance(item, dict) or not item.get("link"):
            continue
        organics.append(
            ReferenceData(
                title=str(item.get("title") or ""),
                link=str(item.get("link")),
                snippet=str(item.get("snippet") or ""),
            )
        )
    questions: List[PAAData] = []
    for item in (body.get("peopleAlsoAsk") or [])[:PAA_LIMIT]:
        if not isinstance(item, dict) or not item.get("question"):
            continue
        questions.append(
            PAAData(
                question=str(item.get("question")),
                snippet=str(item.get("snippet") or ""),
                link=str(item.get("link") or ""),
            )
        )
    return SearchResult(organic_results=organics, people_also_ask=questions)


class SearchClient:
    """Competitor snippets from Serper; any failure degrades to empty results."""

    def __init__(
        self,
        api_key: str,
        *,
        cache: Optional[LookupCache[SearchResult]] = None,
        timeout_seconds: int = DEFAULT_SEARCH_TIMEOUT_SECONDS,
        year: Optional[int] = None,
    ):
        self.api_key = (api_key or "").strip()
        self.cache: LookupCache[SearchResult] = cache if cache is not None else LookupCache()
        self.timeout_seconds = timeout_seconds
        self._year = year

    def search(self, title: str) -> SearchResult:
        if not self.api_key:
            return SearchResult()

        year = self._year or datetime.now(timezone.utc).year
        query = build_search_query(title, year)
        cached = self.cache.get(query)
        if cached is not None:
            logger.debug("search.cache_hit query=%s", query)
            return cached

        payload = {"q": query, "num": SERPER_RESULT_COUNT, "tbs": "qdr:y", "gl": "us", "hl": "en"}
        headers = {"X-API-KEY": self.api_key, "Content-Type": "application/json"}
        try:
            response = requests.post(SERPER_URL, headers=headers, json=payload, timeout=self.timeout_seconds)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("search.failed query=%s error=%s", query, exc)
            return SearchResult()
        if not isinstance(body, dict):
            logger.warning("search.failed query=%s error=unexpected payload", query)
            return SearchResult()

        result = _parse_results(body)
        logger.info(
            "search.fetched query=%s organics=%s paa=%s",
            query,
            len(result.organic_results),
            len(result.people_also_ask),
        )
        self.cache.set(query, result)
        return result
