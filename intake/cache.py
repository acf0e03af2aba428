"""
Result Cache
============
Global content-hash -> analysis result cache on top of the project store.

Unbounded and without TTL: stale entries are replaced by a forced rescan or
removed by an explicit ``clear()``. Entries hold the validated, sanitized
result list before rubric filtering.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from .database import ProjectStore
from .models import AnalysisResult

logger = logging.getLogger(__name__)

_RESULTS_ADAPTER = TypeAdapter(list[AnalysisResult])


class ResultCache:
    """Typed view of the store's ``cache`` namespace."""

    def __init__(self, store: ProjectStore, enabled: bool = True):
        self.store = store
        self.enabled = enabled

    def get(self, content_hash: str) -> Optional[list[AnalysisResult]]:
        """
        Look up the results stored for a content hash.

        Returns:
            The cached results, or None on a miss. Entries that no longer
            validate are treated as misses.
        """
        if not self.enabled or not content_hash:
            return None

        payload = self.store.cache_get(content_hash)
        if payload is None:
            return None
        if isinstance(payload, dict):
            payload = [payload]

        try:
            results = _RESULTS_ADAPTER.validate_python(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable cache entry {content_hash}: {e}")
            return None
        if not results:
            return None

        logger.debug(f"Cache hit: {content_hash}")
        return results

    def put(self, content_hash: str, results: list[AnalysisResult]):
        """Store (or overwrite) the results for a content hash."""
        if not self.enabled or not content_hash or not results:
            return
        payload = _RESULTS_ADAPTER.dump_python(results, mode="json")
        self.store.cache_put(content_hash, payload)
        logger.debug(f"Cached {len(results)} result(s) for {content_hash}")

    def clear(self) -> int:
        removed = self.store.cache_clear()
        logger.info(f"Cleared {removed} cache entries")
        return removed

    def count(self) -> int:
        return self.store.cache_count()
