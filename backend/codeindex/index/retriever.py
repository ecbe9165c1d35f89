"""Query-time retrieval over the vector store.

``Retriever.search`` embeds the query (through a small TTL cache), asks the
store for ``top_k * over_fetch_factor`` candidates, and then:

* optionally boosts chunks whose symbol name appears in the query;
* drops chunks scoring below ``min_score``;
* collapses runs of adjacent chunks of the same symbol (consecutive
  ``sequence_index``) to the best-scoring one;
* orders by score descending, ties broken by file path, sequence index and
  chunk ID, and returns the first ``top_k``.
"""
import asyncio
import hashlib
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from codeindex.config import RetrievalSettings
from codeindex.embeddings.gateway import EmbeddingGateway
from codeindex.errors import CodeIndexError, VectorStoreError

from .vector_store import QueryHit, VectorStoreAdapter

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass
class SearchResult:
    chunk_id: str
    file_path: str
    symbol_path: List[str]
    score: float
    text_excerpt: str
    start_line: int = 0
    end_line: int = 0
    sequence_index: int = 0
    language: str = ""
    partial: bool = False


@dataclass
class _CacheEntry:
    vector: List[float]
    expires_at: float = field(default=0.0)


class QueryCache:
    """Bounded TTL cache of query embeddings keyed by normalised query text."""

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 256) -> None:
        self._ttl = ttl_seconds
        self._max = max_entries
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()

    @staticmethod
    def key(query: str) -> str:
        normalised = " ".join(query.split())
        return hashlib.sha256(normalised.encode("utf-8")).hexdigest()

    def get(self, query: str) -> Optional[List[float]]:
        if self._max <= 0 or self._ttl <= 0:
            return None
        k = self.key(query)
        entry = self._entries.get(k)
        if entry is None:
            return None
        if entry.expires_at <= time.monotonic():
            del self._entries[k]
            return None
        self._entries.move_to_end(k)
        return entry.vector

    def put(self, query: str, vector: List[float]) -> None:
        if self._max <= 0 or self._ttl <= 0:
            return
        k = self.key(query)
        self._entries[k] = _CacheEntry(vector, time.monotonic() + self._ttl)
        self._entries.move_to_end(k)
        while len(self._entries) > self._max:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class Retriever:
    """Semantic search over one project's vector store.

    Args:
        gateway:       Embeds the query text.
        store:         Vector store to search.
        settings:      Result count, thresholds and cache policy.
        store_timeout: Seconds allowed for the store query.
    """

    def __init__(
        self,
        gateway: EmbeddingGateway,
        store: VectorStoreAdapter,
        settings: Optional[RetrievalSettings] = None,
        store_timeout: float = 30.0,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._settings = settings or RetrievalSettings()
        self._store_timeout = store_timeout
        self._cache = QueryCache(self._settings.cache_ttl_seconds, self._settings.cache_max_entries)

    @property
    def cache(self) -> QueryCache:
        return self._cache

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        filters: Optional[dict] = None,
        min_score: Optional[float] = None,
    ) -> List[SearchResult]:
        """Return up to *top_k* chunks most similar to *query*.

        Raises:
            CodeIndexError:   If *query* is blank (status 400).
            ProviderError:    If the query cannot be embedded.
            VectorStoreError: If the store query fails or times out.
        """
        if not query or not query.strip():
            raise CodeIndexError("query must not be empty", status_code=400)
        top_k = self._settings.default_top_k if top_k is None else top_k
        if top_k <= 0:
            return []
        if min_score is None:
            min_score = self._settings.min_score

        vector = self._cache.get(query)
        if vector is None:
            vector = await self._gateway.embed_query(query)
            self._cache.put(query, vector)
        else:
            logger.debug("[Retriever] query embedding cache hit")

        fetch_k = top_k * max(1, self._settings.over_fetch_factor)
        try:
            hits: List[QueryHit] = await asyncio.wait_for(
                asyncio.to_thread(self._store.query, vector, fetch_k, filters),
                timeout=self._store_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise VectorStoreError(
                f"query timed out after {self._store_timeout}s", transient=True,
            ) from exc

        results = [self._to_result(hit) for hit in hits]
        if self._settings.name_match_boost:
            _apply_name_boost(results, query, self._settings.name_match_boost)
        if min_score is not None:
            results = [r for r in results if r.score >= min_score]

        results = collapse_adjacent(results)
        results.sort(key=_rank_key)
        logger.info(
            "[Retriever] %d candidates → %d results (top_k=%d)",
            len(hits), min(len(results), top_k), top_k,
        )
        return results[:top_k]

    def invalidate(self) -> None:
        """Forget cached query embeddings."""
        self._cache.clear()

    @staticmethod
    def _to_result(hit: QueryHit) -> SearchResult:
        chunk_id, score, meta = hit
        return SearchResult(
            chunk_id=chunk_id,
            file_path=meta.file_path,
            symbol_path=list(meta.symbol_path),
            score=score,
            text_excerpt=meta.text,
            start_line=meta.start_line,
            end_line=meta.end_line,
            sequence_index=meta.sequence_index,
            language=meta.language,
            partial=meta.partial,
        )


def _rank_key(r: SearchResult) -> Tuple[float, str, int, str]:
    return (-r.score, r.file_path, r.sequence_index, r.chunk_id)


def _apply_name_boost(results: List[SearchResult], query: str, boost: float) -> None:
    tokens = {t.lower() for t in _IDENTIFIER_RE.findall(query)}
    for r in results:
        if r.symbol_path and r.symbol_path[-1].lower() in tokens:
            r.score += boost


def collapse_adjacent(results: List[SearchResult]) -> List[SearchResult]:
    """Keep one result per run of consecutive chunks of the same symbol."""
    groups: Dict[Tuple[str, Tuple[str, ...]], List[SearchResult]] = {}
    for r in results:
        groups.setdefault((r.file_path, tuple(r.symbol_path)), []).append(r)

    kept: List[SearchResult] = []
    for members in groups.values():
        members.sort(key=lambda r: r.sequence_index)
        best = members[0]
        prev_seq = members[0].sequence_index
        for r in members[1:]:
            if r.sequence_index == prev_seq + 1:
                if _rank_key(r) < _rank_key(best):
                    best = r
            else:
                kept.append(best)
                best = r
            prev_seq = r.sequence_index
        kept.append(best)
    return kept
