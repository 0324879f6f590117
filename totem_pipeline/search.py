"""
Knowledge search client (Azure AI Search REST API).
"""
import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from logging_setup import get_logger, Component
from .config import AzureSearchSettings
from .errors import SearchError
from .http_pool import PooledHTTPClient

logger = get_logger(Component.SEARCH)

NO_CONTEXT_TEXT = "No se encontró información relevante sobre tu consulta."

_URL_PATTERN = re.compile(r"https?://\S+")
_WHITESPACE_PATTERN = re.compile(r"\s+")
# Keeps letters (accented too), digits, whitespace and basic punctuation
_NOISE_PATTERN = re.compile(r"[^\w\s.,;:!?¿¡()\-%]")


@dataclass(frozen=True)
class SearchSnippet:
    score: float
    chunk: str
    title: Optional[str] = None
    chunk_id: Optional[str] = None
    parent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "chunk": self.chunk,
            "title": self.title,
            "chunkId": self.chunk_id,
            "parentId": self.parent_id,
        }


def clean_text(text: str) -> str:
    """Strip URLs, noise characters and repeated whitespace."""
    if not text:
        return ""
    text = _URL_PATTERN.sub("", text)
    text = _WHITESPACE_PATTERN.sub(" ", text)
    text = _NOISE_PATTERN.sub("", text)
    return text.strip()


def extract_relevant_text(snippets: Sequence[SearchSnippet], limit: int = 2) -> str:
    """Join the best-scored chunks into one context string."""
    if not snippets:
        return NO_CONTEXT_TEXT
    best = sorted(snippets, key=lambda s: s.score, reverse=True)[:limit]
    return clean_text("\n\n".join(s.chunk for s in best))


def parse_search_results(data: Dict[str, Any]) -> List[SearchSnippet]:
    values = data.get("value")
    if not isinstance(values, list):
        return []

    snippets = []
    for item in values:
        chunk = item.get("chunk") or ""
        if not chunk.strip():
            continue
        snippets.append(SearchSnippet(
            score=float(item.get("@search.score") or 0.0),
            chunk=chunk,
            title=item.get("title"),
            chunk_id=item.get("chunk_id"),
            parent_id=item.get("parent_id"),
        ))
    return snippets


class AzureSearchClient(PooledHTTPClient):
    """search(query, filter, top) -> ranked snippets."""

    def __init__(self, settings: AzureSearchSettings, http_session: Optional[aiohttp.ClientSession] = None):
        super().__init__(http_session)
        self._settings = settings
        self._timeout_s = settings.timeout_s
        self._logger = logger

    @property
    def default_filter(self) -> str:
        return self._settings.default_filter

    async def search(self, query: str, filter: Optional[str] = None, top: Optional[int] = None) -> List[SearchSnippet]:
        if not self._settings.api_key or not self._settings.endpoint:
            raise SearchError("Azure Search is not configured (api key / endpoint missing)")

        body = {
            "search": query,
            "filter": self._settings.default_filter if filter is None else filter,
            "top": top or self._settings.top_k,
        }
        start_ts = time.time()
        session = self._get_or_create_session()

        try:
            async with session.post(
                self._settings.search_url,
                json=body,
                headers={"api-key": self._settings.api_key},
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error("Search request failed", status_code=response.status, error_text=error_text[:300])
                    raise SearchError(f"Azure Search API error: {response.status}", status=response.status)
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Search request exception", error=str(e), error_type=type(e).__name__)
            raise SearchError(f"Azure Search request failed: {e}") from e
        except ValueError as e:
            logger.error("Search response unreadable", error=str(e), error_type=type(e).__name__)
            raise SearchError(f"Azure Search returned an invalid body: {e}") from e

        snippets = parse_search_results(data)
        logger.info(
            "Search completed",
            filter=body["filter"],
            top=body["top"],
            results=len(snippets),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return snippets
