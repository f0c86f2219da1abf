"""
Similarity cache for vector search results.

A repeated or near-identical question (cosine similarity of the query
embeddings above the threshold) with the same metadata filters reuses the
previous vector hits instead of searching again. Entries for time-bounded
questions expire sooner, since new logs keep landing in their range.
"""

import hashlib
import json
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np
import structlog

from insight.schemas.analysis import QueryMetadata
from insight.schemas.events import VectorMatch

logger = structlog.get_logger(__name__)


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    total_requests: int = 0
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate overall cache hit rate."""
        if self.total_requests == 0:
            return 0.0
        return self.hits / self.total_requests


@dataclass
class _CachedSearch:
    embedding: np.ndarray
    matches: List[VectorMatch]
    expires_at: float


class VectorResultCache:
    """
    In-process cache of vector search results keyed by metadata filters.

    Usage:
        cache = VectorResultCache(similarity_threshold=0.95)
        hits = cache.get(embedding, metadata)
        if hits is None:
            hits = await storage.vector_search(embedding, 10, metadata)
            cache.put(embedding, metadata, hits)
    """

    def __init__(
        self,
        similarity_threshold: float = 0.95,
        default_ttl: float = 3600.0,
        time_range_ttl: float = 900.0,
        max_entries_per_key: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.similarity_threshold = similarity_threshold
        self.default_ttl = default_ttl
        self.time_range_ttl = time_range_ttl
        self.max_entries_per_key = max_entries_per_key
        self._clock = clock
        self._entries: Dict[str, List[_CachedSearch]] = {}
        self._stats = CacheStats()

    @staticmethod
    def _metadata_key(metadata: Optional[QueryMetadata]) -> str:
        payload = metadata.model_dump(mode="json") if metadata else {}
        return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()

    @staticmethod
    def _cosine_similarity(vec1: np.ndarray, vec2: np.ndarray) -> float:
        if vec1.shape != vec2.shape:
            return 0.0
        norm_product = np.linalg.norm(vec1) * np.linalg.norm(vec2)
        if norm_product == 0:
            return 0.0
        return float(np.dot(vec1, vec2) / norm_product)

    def get(self, embedding: List[float], metadata: Optional[QueryMetadata]) -> Optional[List[VectorMatch]]:
        """Return cached matches for a similar query, or None on a miss."""
        self._stats.total_requests += 1
        key = self._metadata_key(metadata)
        now = self._clock()
        candidates = [c for c in self._entries.get(key, []) if c.expires_at > now]
        if candidates:
            self._entries[key] = candidates
        else:
            self._entries.pop(key, None)

        query_vector = np.asarray(embedding, dtype=float)
        best: Optional[_CachedSearch] = None
        best_similarity = 0.0
        for candidate in candidates:
            similarity = self._cosine_similarity(query_vector, candidate.embedding)
            if similarity >= self.similarity_threshold and similarity > best_similarity:
                best, best_similarity = candidate, similarity

        if best is None:
            self._stats.misses += 1
            logger.debug("Vector cache miss", candidates=len(candidates))
            return None

        self._stats.hits += 1
        logger.info("Vector cache hit", similarity=round(best_similarity, 4), threshold=self.similarity_threshold)
        return list(best.matches)

    def put(self, embedding: List[float], metadata: Optional[QueryMetadata], matches: List[VectorMatch]) -> None:
        if not matches:
            return
        ttl = self.time_range_ttl if metadata and (metadata.start_time or metadata.end_time) else self.default_ttl
        now = self._clock()
        self.cleanup_expired_entries(now)
        key = self._metadata_key(metadata)
        bucket = self._entries.setdefault(key, [])
        bucket.append(_CachedSearch(np.asarray(embedding, dtype=float), list(matches), now + ttl))
        if len(bucket) > self.max_entries_per_key:
            del bucket[0]

    def cleanup_expired_entries(self, now: Optional[float] = None) -> int:
        """Drop expired entries and keys left empty. Returns the number of entries removed."""
        now = self._clock() if now is None else now
        removed = 0
        for key in list(self._entries):
            live = [c for c in self._entries[key] if c.expires_at > now]
            removed += len(self._entries[key]) - len(live)
            if live:
                self._entries[key] = live
            else:
                del self._entries[key]
        if removed:
            logger.debug("Vector cache entries expired", removed=removed, keys=len(self._entries))
        return removed

    def key_count(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def get_stats(self) -> CacheStats:
        return CacheStats(self._stats.total_requests, self._stats.hits, self._stats.misses)
