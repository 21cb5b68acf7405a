"""Keyword embedding cache.

Maps each keyword to its embedding so page windows can be compared
against keyword vectors without re-embedding the keywords per request.
Entries are written once per key and never evicted; keyword sets are
expected to hold tens of entries.

Keys are canonicalized with ``normalize_keyword`` (strip + lower-case)
at every entry point, matching the lower-casing applied to page text by
the tokenizer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

import numpy as np

from focusml_mcp.observability import timed_operation
from focusml_mcp.services.embedding_service import EmbeddingService

logger = logging.getLogger(__name__)


def normalize_keyword(keyword: str) -> str:
    """Canonical cache key for a keyword."""
    return keyword.strip().lower()


class KeywordEmbeddingCache:
    """Append-only keyword → embedding mapping populated through the provider.

    Args:
        provider: The shared EmbeddingService.
    """

    def __init__(self, provider: EmbeddingService) -> None:
        self._provider = provider
        self._vectors: Dict[str, np.ndarray] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}

    def __contains__(self, keyword: object) -> bool:
        return isinstance(keyword, str) and normalize_keyword(keyword) in self._vectors

    def __len__(self) -> int:
        return len(self._vectors)

    def get(self, keyword: str) -> Optional[np.ndarray]:
        """Cached vector for ``keyword``, or None if absent."""
        return self._vectors.get(normalize_keyword(keyword))

    def keywords(self) -> List[str]:
        """Cached keys in insertion order."""
        return list(self._vectors)

    def missing(self, keywords: Iterable[str]) -> List[str]:
        """Canonical keys from ``keywords`` that are not cached yet."""
        result: List[str] = []
        for keyword in keywords:
            key = normalize_keyword(keyword)
            if key and key not in self._vectors and key not in result:
                result.append(key)
        return result

    async def precompute(self, keywords: Iterable[str]) -> int:
        """Embed and cache every keyword not already present.

        A no-op (with a warning) while the provider is not ready. Each keyword
        is handled independently: a failure is logged and skipped. Concurrent
        calls for the same uncached keyword share one computation.

        Returns:
            Number of keywords newly cached by this call.
        """
        if not self._provider.is_ready:
            logger.warning("Model not ready, skipping keyword embedding precomputation")
            return 0

        pending = self.missing(keywords)
        if not pending:
            return 0

        with timed_operation("precompute_keywords", count=len(pending)) as op:
            logger.info(f"Precomputing embeddings for keywords: {pending}")
            added = 0
            for key in pending:
                if await self._compute_once(key):
                    added += 1
            op["cached"] = added
        return added

    async def _compute_once(self, key: str) -> bool:
        """Compute ``key`` unless already cached; True if this call cached it."""
        if key in self._vectors:
            return False

        task = self._in_flight.get(key)
        if task is not None:
            await asyncio.shield(task)
            return False

        task = asyncio.ensure_future(self._compute(key))
        self._in_flight[key] = task
        return await asyncio.shield(task)

    async def _compute(self, key: str) -> bool:
        try:
            vector = await self._provider.compute_embedding(key)
        except Exception as e:
            logger.error(f'Failed to compute embedding for keyword "{key}": {e}')
            return False
        finally:
            self._in_flight.pop(key, None)

        # Write-once: a concurrent writer may have won the race.
        if key in self._vectors:
            return False
        self._vectors[key] = vector
        logger.debug(f"Cached embedding for keyword: {key}")
        return True
