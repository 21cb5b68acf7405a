"""Semantic relevance scoring for page content.

Walks a document window by window, scores each window against the cached
blocked and allowed keyword vectors, pools the per-window scores, and
applies a fixed two-sided threshold policy:

    should_block = blocked > BLOCK_THRESHOLD and allowed < ALLOW_THRESHOLD

The thresholds were calibrated against ``descending_percentile`` exactly
as written; changing the pooling formula invalidates them.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import numpy as np

from focusml_mcp.models.schema import SimilarityResult
from focusml_mcp.observability import metrics, timed_operation
from focusml_mcp.services.embedding_service import EmbeddingService, ProgressCallback
from focusml_mcp.services.keyword_cache import KeywordEmbeddingCache
from focusml_mcp.services.similarity import cosine_similarity
from focusml_mcp.services.text_windows import (
    DEFAULT_OVERLAP,
    DEFAULT_WINDOW_SIZE,
    create_sliding_windows,
    validate_window_config,
)

logger = logging.getLogger(__name__)

# Decision thresholds (empirical):
# - single keywords vs. related content: 0.5-0.7
# - articles vs. keywords: 0.3-0.5
# - unrelated content: < 0.3
BLOCK_THRESHOLD = 0.30
ALLOW_THRESHOLD = 0.55

# Stop early once a window past the halfway mark scores above this
EARLY_EXIT_SIMILARITY = 0.85
EARLY_EXIT_MIN_FRACTION = 0.5

# Index fraction into the descending sort used for pooling
POOLING_INDEX_FRACTION = 0.25

# Decision event counters reported through the metrics tool
EVENT_BLOCKED = "page_blocked"
EVENT_ALLOWED = "page_allowed"
EVENT_EARLY_EXIT = "early_exit"
EVENT_FAIL_OPEN = "fail_open"


def descending_percentile(values: Sequence[float]) -> float:
    """Pool per-window scores into one value.

    Sorts descending and takes the element at ``floor(n * 0.25)``, an
    approximation of the 75th percentile. Empty input pools to 0 and a
    single value pools to itself.
    """
    if not values:
        return 0.0
    if len(values) == 1:
        return float(values[0])
    ordered = sorted(values, reverse=True)
    return float(ordered[math.floor(len(ordered) * POOLING_INDEX_FRACTION)])


def decide(blocked_similarity: float, allowed_similarity: float) -> bool:
    """Block only content close to the blocked set and not close to the allowed set."""
    return blocked_similarity > BLOCK_THRESHOLD and allowed_similarity < ALLOW_THRESHOLD


@dataclass(frozen=True)
class AggregatedScores:
    """Pooled scores for one document.

    Attributes:
        blocked_similarity: Pooled max-similarity to blocked keywords.
        allowed_similarity: Pooled max-similarity to allowed keywords.
        windows_processed: Windows embedded before stopping.
        window_count: Windows the document was split into.
    """

    blocked_similarity: float
    allowed_similarity: float
    windows_processed: int = 0
    window_count: int = 0

    @property
    def exited_early(self) -> bool:
        return self.windows_processed < self.window_count


class RelevanceService:
    """Scores page text against blocked and allowed keyword sets.

    Args:
        provider: The shared EmbeddingService.
        cache: Keyword cache populated through the same provider.
        window_size: Tokens per sliding window.
        overlap: Tokens shared by consecutive windows.
        max_text_chars: Cut page text to this many characters before
            windowing (0 disables the limit).
    """

    def __init__(
        self,
        provider: EmbeddingService,
        cache: KeywordEmbeddingCache,
        window_size: int = DEFAULT_WINDOW_SIZE,
        overlap: int = DEFAULT_OVERLAP,
        max_text_chars: int = 0,
    ) -> None:
        validate_window_config(window_size, overlap)
        self._provider = provider
        self._cache = cache
        self._window_size = window_size
        self._overlap = overlap
        self._max_text_chars = max_text_chars

    @property
    def provider(self) -> EmbeddingService:
        return self._provider

    @property
    def cache(self) -> KeywordEmbeddingCache:
        return self._cache

    def _max_similarity(self, vector: np.ndarray, keywords: Iterable[str]) -> float:
        """Highest similarity between ``vector`` and any cached keyword."""
        best = 0.0
        for keyword in keywords:
            keyword_vector = self._cache.get(keyword)
            if keyword_vector is None:
                continue
            best = max(best, cosine_similarity(vector, keyword_vector))
        return best

    async def compute_aggregated_similarity(
        self,
        text: str,
        blocked_keywords: Sequence[str],
        allowed_keywords: Sequence[str],
    ) -> AggregatedScores:
        """Score every window of ``text`` and pool the results.

        Windows are processed in order. Once at least half of them have been
        processed, a window whose blocked score exceeds 0.85 ends processing;
        the remaining windows are never embedded.

        Raises:
            FocusMLError: Any embedding failure propagates to the caller.
        """
        windows = create_sliding_windows(text, self._window_size, self._overlap)
        min_before_exit = math.ceil(len(windows) * EARLY_EXIT_MIN_FRACTION)
        logger.debug(f"Processing {len(windows)} windows for similarity check")

        blocked_scores: List[float] = []
        allowed_scores: List[float] = []
        for window in windows:
            vector = await self._provider.compute_embedding(window.text)

            blocked = self._max_similarity(vector, blocked_keywords)
            allowed = self._max_similarity(vector, allowed_keywords)
            blocked_scores.append(blocked)
            allowed_scores.append(allowed)

            if blocked > EARLY_EXIT_SIMILARITY and len(blocked_scores) >= min_before_exit:
                logger.info(
                    f"Early exit: high blocked similarity ({blocked:.3f}) at window "
                    f"{len(blocked_scores)}/{len(windows)}"
                )
                metrics.record_event(EVENT_EARLY_EXIT)
                break

        return AggregatedScores(
            blocked_similarity=descending_percentile(blocked_scores),
            allowed_similarity=descending_percentile(allowed_scores),
            windows_processed=len(blocked_scores),
            window_count=len(windows),
        )

    async def compute_page_similarity(
        self,
        text: str,
        blocked_keywords: Sequence[str],
        allowed_keywords: Sequence[str],
    ) -> SimilarityResult:
        """Decide whether page text should be blocked. Never raises.

        Initializes the model if needed (retrying after a failed load, or
        waiting on a load already in progress) and caches any request
        keywords the cache is missing. Any failure yields the neutral,
        non-blocking result.
        """
        if not text or not text.strip():
            logger.debug("Empty page text, returning neutral result")
            return SimilarityResult.neutral()

        try:
            with timed_operation("compute_page_similarity", chars=len(text)) as op:
                if not self._provider.is_ready:
                    logger.info("ML model not ready, initializing now...")
                    await self._provider.initialize()

                await self._cache.precompute([*blocked_keywords, *allowed_keywords])

                if self._max_text_chars:
                    text = text[: self._max_text_chars]
                scores = await self.compute_aggregated_similarity(
                    text, blocked_keywords, allowed_keywords
                )
                should_block = decide(scores.blocked_similarity, scores.allowed_similarity)

                op["windows"] = f"{scores.windows_processed}/{scores.window_count}"
                op["should_block"] = should_block
        except Exception as e:
            logger.error(f"Error computing page similarity, failing open: {e}", exc_info=True)
            metrics.record_event(EVENT_FAIL_OPEN)
            return SimilarityResult.neutral()

        metrics.record_event(EVENT_BLOCKED if should_block else EVENT_ALLOWED)
        logger.info(
            f"Similarity scores - Blocked: {scores.blocked_similarity:.3f}, "
            f"Allowed: {scores.allowed_similarity:.3f}, block={should_block}"
        )
        return SimilarityResult(
            blocked_similarity=scores.blocked_similarity,
            allowed_similarity=scores.allowed_similarity,
            should_block=should_block,
        )

    async def warmup(
        self,
        keywords: Iterable[str] = (),
        progress_callback: Optional[ProgressCallback] = None,
    ) -> bool:
        """Load the model and cache ``keywords``.

        Args:
            keywords: Keywords to embed once the model is ready.
            progress_callback: Receives LoadProgress events if this call
                starts the load.

        Returns:
            True if the model is ready afterwards. Load failures are logged
            and recorded in the provider state, not raised.
        """
        try:
            await self._provider.initialize(progress_callback=progress_callback)
        except Exception as e:
            logger.error(f"Failed to initialize ML model: {e}")
            return False
        logger.info("ML model initialized successfully")
        await self._cache.precompute(keywords)
        return True
