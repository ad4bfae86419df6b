"""
Polymath Brain - Research Lookup

Grounds curriculum drafting in a Wikipedia summary and a few OpenAlex works.
Lookups never raise; a failed source is simply missing from the result.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from loguru import logger


WIKIPEDIA_SUMMARY_URL = "https://en.wikipedia.org/api/rest_v1/page/summary/{topic}"
OPENALEX_WORKS_URL = "https://api.openalex.org/works"
USER_AGENT = "PolymathResearch/0.1"


@dataclass
class ResearchSource:
    title: str
    url: str
    summary: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    year: Optional[int] = None


@dataclass
class ResearchResult:
    topic: str
    sources: List[ResearchSource] = field(default_factory=list)
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ResearchClient:
    """
    ``lookup(topic)`` over public scholarly endpoints.

    An ``httpx.Client`` can be injected (tests use ``httpx.MockTransport``).
    """

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 10.0, works_per_page: int = 3):
        self._client = client or httpx.Client(
            timeout=timeout,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            follow_redirects=True,
        )
        self.works_per_page = works_per_page

    def __call__(self, topic: str) -> ResearchResult:
        return self.lookup(topic)

    def lookup(self, topic: str) -> ResearchResult:
        sources: List[ResearchSource] = []
        wiki = self._wikipedia_summary(topic)
        if wiki:
            sources.append(wiki)
        sources.extend(self._openalex_works(topic))
        notes = (
            "Sources retrieved from Wikipedia and OpenAlex."
            if sources
            else "No sources found. Consider a broader query."
        )
        logger.debug(f"Research for '{topic}': {len(sources)} sources")
        return ResearchResult(topic=topic, sources=sources, notes=notes)

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._client.get(url, params=params)
        response.raise_for_status()
        return response.json()

    def _wikipedia_summary(self, topic: str) -> Optional[ResearchSource]:
        url = WIKIPEDIA_SUMMARY_URL.format(topic=quote(topic, safe=""))
        try:
            data = self._get_json(url)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Wikipedia lookup failed for '{topic}': {e}")
            return None
        if not data.get("extract"):
            return None
        page = ((data.get("content_urls") or {}).get("desktop") or {}).get("page")
        return ResearchSource(
            title=data.get("title") or topic,
            url=page or url,
            summary=data["extract"],
        )

    def _openalex_works(self, topic: str) -> List[ResearchSource]:
        try:
            data = self._get_json(OPENALEX_WORKS_URL, params={"search": topic, "per-page": self.works_per_page})
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"OpenAlex lookup failed for '{topic}': {e}")
            return []
        works = []
        for item in data.get("results") or []:
            authors = [
                (a.get("author") or {}).get("display_name")
                for a in item.get("authorships") or []
            ]
            works.append(ResearchSource(
                title=item.get("display_name") or topic,
                url=(item.get("primary_location") or {}).get("landing_page_url") or "https://openalex.org",
                authors=[a for a in authors if a],
                year=item.get("publication_year"),
            ))
        return works

    def close(self) -> None:
        self._client.close()


__all__ = ["ResearchSource", "ResearchResult", "ResearchClient"]
