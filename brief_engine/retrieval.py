"""
Hybrid Law Retrieval
====================

Authority search for one pipeline run.

Key Features:
- Pure hybrid merge: vector results rank first, keyword results backfill
- Explicit search session (connect/close) owned by the run, no global client
- Keyword and vector legs issued concurrently; a failed vector or embedding
  leg degrades the query to keyword-only
- Article-form queries ("民法第184條") go straight to keyword search
- Per-session cache of fetched authorities keyed by canonical ID
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

import httpx

from .config import Settings, get_settings
from .errors import BackendError, PipelineCancelled
from .law_refs import is_article_query, normalize_article_no
from .llm.base import BackendHTTPClient
from .schemas import FoundLaw, LawSource

logger = logging.getLogger(__name__)

MIN_LIMIT = 1
MAX_LIMIT = 50

Embedder = Callable[[str, Optional[asyncio.Event]], Awaitable[List[float]]]
T = TypeVar("T", bound="LawHit")


@dataclass
class LawHit:
    """One authority returned by a search leg"""
    id: str
    law_name: str
    article_no: str
    content: str
    score: float = 0.0
    via: str = "keyword"

    @classmethod
    def from_payload(cls, item: Dict[str, Any], via: str) -> "LawHit":
        return cls(
            id=str(item.get("id") or item.get("_id") or ""),
            law_name=item.get("law_name", ""),
            article_no=normalize_article_no(str(item.get("article_no") or item.get("article") or "")),
            content=item.get("content", ""),
            score=float(item.get("score") or 0.0),
            via=via,
        )

    def to_found_law(self, source: LawSource) -> FoundLaw:
        return FoundLaw(
            id=self.id,
            law_name=self.law_name,
            article_no=self.article_no,
            content=self.content,
            source=source,
        )


def clamp_limit(limit: Optional[int], default: int = 3) -> int:
    if limit is None:
        limit = default
    return max(MIN_LIMIT, min(MAX_LIMIT, int(limit)))


def merge_hybrid_results(vector_results: Sequence[T], keyword_results: Sequence[T], limit: int) -> List[T]:
    """
    Merge two ranked result lists for the same query.

    Vector results come first in their own order; keyword results fill the
    remaining slots only when their ID is not already present. The output
    never holds duplicate IDs and never exceeds `limit`.
    """
    merged: List[T] = []
    seen = set()
    for hit in list(vector_results) + list(keyword_results):
        if len(merged) >= limit:
            break
        if not hit.id or hit.id in seen:
            continue
        seen.add(hit.id)
        merged.append(hit)
    return merged


class LawSearchSession(BackendHTTPClient):
    """
    Search session against the authority search service.

    Usage:
        async with LawSearchSession.from_settings(embedder=gateway.embed) as session:
            hits = await session.search("侵權行為 損害賠償", limit=3)
    """

    service_name = "Law search"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        embedder: Optional[Embedder] = None,
        default_limit: int = 3,
        timeout: float = 30,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout, max_retries, retry_base_delay, transport)
        self.api_key = api_key
        self.embedder = embedder
        self.default_limit = default_limit
        self._cache: Dict[str, LawHit] = {}
        self._connected = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, embedder: Optional[Embedder] = None) -> "LawSearchSession":
        settings = settings or get_settings()
        if not settings.law_search_base_url:
            raise BackendError("LAW_SEARCH_BASE_URL not configured")
        return cls(
            base_url=settings.law_search_base_url,
            api_key=settings.law_search_api_key,
            embedder=embedder,
            default_limit=settings.search_default_limit,
            max_retries=settings.llm_max_retries,
            retry_base_delay=settings.llm_retry_base_delay,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> "LawSearchSession":
        await self._get_client()
        self._connected = True
        logger.debug(f"Law search session opened ({self.base_url})")
        return self

    async def close(self):
        await super().close()
        if self._connected:
            logger.debug(f"Law search session closed ({len(self._cache)} cached authorities)")
        self._connected = False

    async def __aenter__(self) -> "LawSearchSession":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require_connected(self) -> None:
        if not self._connected:
            raise BackendError("Law search session is not connected")

    # =========================================================================
    # Search legs
    # =========================================================================

    async def _results(self, path: str, payload: Dict[str, Any], via: str, cancel: Optional[asyncio.Event]) -> List[LawHit]:
        self._require_connected()
        data = await self._post_json(path, payload, cancel=cancel)
        items = data.get("results", []) if isinstance(data, dict) else []
        hits = [LawHit.from_payload(item, via) for item in items if isinstance(item, dict)]
        return [hit for hit in hits if hit.id]

    async def keyword_search(self, query: str, limit: int, cancel: Optional[asyncio.Event] = None) -> List[LawHit]:
        return await self._results("/search/keyword", {"query": query, "limit": limit}, "keyword", cancel)

    async def vector_search(self, query: str, limit: int, cancel: Optional[asyncio.Event] = None) -> List[LawHit]:
        if self.embedder is None:
            raise BackendError("No embedder configured for vector search")
        vector = await self.embedder(query, cancel)
        return await self._results("/search/vector", {"vector": vector, "limit": limit}, "vector", cancel)

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[LawHit]:
        """Hybrid search for one query"""
        limit = clamp_limit(limit, self.default_limit)

        if self.embedder is None or is_article_query(query):
            hits = merge_hybrid_results([], await self.keyword_search(query, limit, cancel), limit)
            self._remember(hits)
            return hits

        keyword, vector = await asyncio.gather(
            self.keyword_search(query, limit, cancel),
            self.vector_search(query, limit, cancel),
            return_exceptions=True,
        )
        for outcome in (keyword, vector):
            if isinstance(outcome, (PipelineCancelled, asyncio.CancelledError)):
                raise outcome

        if isinstance(vector, BaseException):
            logger.warning(f"Vector leg failed for query '{query[:40]}', keyword-only: {vector}")
            vector = []
        if isinstance(keyword, BaseException):
            if not vector:
                raise keyword
            logger.warning(f"Keyword leg failed for query '{query[:40]}': {keyword}")
            keyword = []

        hits = merge_hybrid_results(vector, keyword, limit)
        self._remember(hits)
        logger.info(f"Law search '{query[:40]}': {len(vector)} vector + {len(keyword)} keyword -> {len(hits)}")
        return hits

    async def lookup_by_ids(self, ids: Iterable[str], cancel: Optional[asyncio.Event] = None) -> List[LawHit]:
        """Batch fetch authorities by canonical ID, cache first"""
        wanted = list(dict.fromkeys(i for i in ids if i))
        missing = [i for i in wanted if i not in self._cache]
        if missing:
            fetched = await self._results("/articles/batch", {"ids": missing}, "lookup", cancel)
            self._remember(fetched)
        return [self._cache[i] for i in wanted if i in self._cache]

    def cached(self, law_id: str) -> Optional[LawHit]:
        return self._cache.get(law_id)

    def _remember(self, hits: Iterable[LawHit]) -> None:
        for hit in hits:
            self._cache.setdefault(hit.id, hit)
