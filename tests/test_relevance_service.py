"""Tests for window aggregation, pooling and the block decision.

Scripted backends pin every vector so each window's similarity to each
keyword is known exactly:
- keyword "gaming" (blocked) is axis 0
- keyword "work" (allowed) is axis 1
- axis 7 absorbs the remainder so every window vector has unit length
"""
import numpy as np
import pytest

from focusml_mcp.exceptions import EmbeddingInferenceError
from focusml_mcp.models.schema import ModelState, SimilarityResult
from focusml_mcp.observability import metrics
from focusml_mcp.services.embedding_service import EmbeddingService
from focusml_mcp.services.keyword_cache import KeywordEmbeddingCache
from focusml_mcp.services.relevance_service import (
    ALLOW_THRESHOLD,
    BLOCK_THRESHOLD,
    RelevanceService,
    decide,
    descending_percentile,
)
from focusml_mcp.services.text_windows import create_sliding_windows
from tests.fakes import FailingEmbeddingBackend, ScriptedEmbeddingBackend

DIM = 8


def axis(i: int) -> np.ndarray:
    v = np.zeros(DIM, dtype=np.float32)
    v[i] = 1.0
    return v


def mix(blocked: float = 0.0, allowed: float = 0.0) -> np.ndarray:
    """Unit vector with the given cosine to "gaming" and "work"."""
    v = np.zeros(DIM, dtype=np.float64)
    v[0] = blocked
    v[1] = allowed
    v[-1] = np.sqrt(1.0 - blocked**2 - allowed**2)
    return v.astype(np.float32)


KEYWORD_VECTORS = {"gaming": axis(0), "work": axis(1)}


def _words(n: int) -> str:
    return " ".join(f"t{i}" for i in range(n))


def build_service(window_scores=None, text="", window_size=10, overlap=0, **kwargs):
    """RelevanceService whose windows of ``text`` score as scripted.

    Args:
        window_scores: List of (blocked, allowed) pairs, one per window.
    """
    vectors = dict(KEYWORD_VECTORS)
    if window_scores:
        windows = create_sliding_windows(text, window_size, overlap)
        assert len(windows) == len(window_scores)
        for window, (blocked, allowed) in zip(windows, window_scores):
            vectors[window.text] = mix(blocked, allowed)
    backend = ScriptedEmbeddingBackend(vectors, dim=DIM)
    provider = EmbeddingService(backend)
    cache = KeywordEmbeddingCache(provider)
    service = RelevanceService(
        provider, cache, window_size=window_size, overlap=overlap, **kwargs
    )
    return service, backend


async def _ready(service):
    await service.provider.initialize()
    await service.cache.precompute(["gaming", "work"])


def _window_calls(backend, text, window_size=10, overlap=0):
    window_texts = {w.text for w in create_sliding_windows(text, window_size, overlap)}
    return [t for t in backend.embedded_texts if t in window_texts]


class TestDescendingPercentile:

    def test_reference_example(self):
        assert descending_percentile([0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8]) == 0.6

    def test_order_of_input_irrelevant(self):
        assert descending_percentile([0.8, 0.1, 0.6, 0.3, 0.5, 0.2, 0.7, 0.4]) == 0.6

    def test_empty_is_zero(self):
        assert descending_percentile([]) == 0.0

    def test_single_value(self):
        assert descending_percentile([0.42]) == 0.42

    @pytest.mark.parametrize(
        "values,expected",
        [
            ([0.2, 0.9], 0.9),  # floor(2 * 0.25) = 0
            ([0.2, 0.9, 0.5], 0.9),  # floor(0.75) = 0
            ([0.1, 0.2, 0.3, 0.4], 0.3),  # floor(1.0) = 1
            ([0.1, 0.2, 0.3, 0.4, 0.5], 0.4),  # floor(1.25) = 1
        ],
    )
    def test_small_counts(self, values, expected):
        assert descending_percentile(values) == expected


class TestDecide:

    @pytest.mark.parametrize(
        "blocked,allowed,expected",
        [
            (0.5, 0.2, True),
            (0.5, 0.6, False),
            (0.2, 0.2, False),
            (BLOCK_THRESHOLD, 0.0, False),  # strictly greater than
            (0.31, ALLOW_THRESHOLD, False),  # strictly less than
            (0.31, 0.549, True),
        ],
    )
    def test_decision_table(self, blocked, allowed, expected):
        assert decide(blocked, allowed) is expected

    def test_thresholds(self):
        assert BLOCK_THRESHOLD == 0.30
        assert ALLOW_THRESHOLD == 0.55


class TestAggregation:

    @pytest.mark.anyio
    async def test_single_window_scores(self):
        text = "Gaming stream highlights"
        service, _ = build_service([(0.5, 0.2)], text)
        await _ready(service)

        scores = await service.compute_aggregated_similarity(text, ["gaming"], ["work"])

        assert scores.blocked_similarity == pytest.approx(0.5, abs=1e-5)
        assert scores.allowed_similarity == pytest.approx(0.2, abs=1e-5)
        assert scores.windows_processed == scores.window_count == 1

    @pytest.mark.anyio
    async def test_pools_per_window_maxima(self):
        text = _words(40)  # windows 0-10, 10-20, 20-30, 30-40
        scores_in = [(0.1, 0.4), (0.7, 0.1), (0.3, 0.2), (0.5, 0.3)]
        service, _ = build_service(scores_in, text)
        await _ready(service)

        scores = await service.compute_aggregated_similarity(text, ["gaming"], ["work"])

        # floor(4 * 0.25) = 1 -> second largest
        assert scores.blocked_similarity == pytest.approx(0.5, abs=1e-5)
        assert scores.allowed_similarity == pytest.approx(0.3, abs=1e-5)
        assert scores.window_count == 4

    @pytest.mark.anyio
    async def test_max_over_keywords(self):
        text = "one window"
        service, _ = build_service([(0.6, 0.0)], text)
        await _ready(service)

        scores = await service.compute_aggregated_similarity(
            text, ["work", "gaming"], []
        )
        assert scores.blocked_similarity == pytest.approx(0.6, abs=1e-5)
        assert scores.allowed_similarity == 0.0

    @pytest.mark.anyio
    async def test_uncached_keywords_skipped(self):
        text = "one window"
        service, _ = build_service([(0.6, 0.3)], text)
        await _ready(service)

        scores = await service.compute_aggregated_similarity(
            text, ["never-cached", "gaming"], ["also-missing"]
        )
        assert scores.blocked_similarity == pytest.approx(0.6, abs=1e-5)
        assert scores.allowed_similarity == 0.0

    @pytest.mark.anyio
    async def test_keyword_lookup_ignores_case(self):
        text = "one window"
        service, _ = build_service([(0.6, 0.3)], text)
        await _ready(service)

        scores = await service.compute_aggregated_similarity(text, ["GAMING"], [" Work"])
        assert scores.blocked_similarity == pytest.approx(0.6, abs=1e-5)
        assert scores.allowed_similarity == pytest.approx(0.3, abs=1e-5)

    @pytest.mark.anyio
    async def test_embedding_error_propagates(self):
        text = "one window"
        backend = FailingEmbeddingBackend(fail_texts=["one window"], dim=DIM)
        provider = EmbeddingService(backend)
        service = RelevanceService(provider, KeywordEmbeddingCache(provider), 10, 0)
        await provider.initialize()

        with pytest.raises(EmbeddingInferenceError):
            await service.compute_aggregated_similarity(text, ["gaming"], ["work"])


class TestEarlyExit:

    @pytest.mark.anyio
    async def test_stops_after_high_window_past_halfway(self):
        text = _words(40)
        # min windows before exit = ceil(4 * 0.5) = 2
        service, backend = build_service([(0.2, 0.1), (0.9, 0.1), (0.2, 0.1), (0.2, 0.1)], text)
        await _ready(service)

        scores = await service.compute_aggregated_similarity(text, ["gaming"], ["work"])

        assert len(_window_calls(backend, text)) == 2
        assert scores.windows_processed == 2
        assert scores.window_count == 4
        assert scores.exited_early
        # pooled over [0.9, 0.2] -> index floor(0.5) = 0
        assert scores.blocked_similarity == pytest.approx(0.9, abs=1e-5)

    @pytest.mark.anyio
    async def test_high_window_before_halfway_does_not_exit(self):
        text = _words(40)
        service, backend = build_service([(0.95, 0.1), (0.2, 0.1), (0.2, 0.1), (0.2, 0.1)], text)
        await _ready(service)

        scores = await service.compute_aggregated_similarity(text, ["gaming"], ["work"])

        assert len(_window_calls(backend, text)) == 4
        assert not scores.exited_early

    @pytest.mark.anyio
    async def test_early_window_counts_towards_threshold(self):
        text = _words(40)
        # First high window is too early; the second one at index 1 exits.
        service, backend = build_service([(0.95, 0.1), (0.9, 0.1), (0.2, 0.1), (0.2, 0.1)], text)
        await _ready(service)

        scores = await service.compute_aggregated_similarity(text, ["gaming"], ["work"])
        assert scores.windows_processed == 2

    @pytest.mark.anyio
    async def test_score_below_threshold_does_not_exit(self):
        text = _words(40)
        service, backend = build_service([(0.2, 0.1), (0.84, 0.1), (0.2, 0.1), (0.2, 0.1)], text)
        await _ready(service)

        scores = await service.compute_aggregated_similarity(text, ["gaming"], ["work"])
        assert scores.windows_processed == 4

    @pytest.mark.anyio
    async def test_allowed_score_does_not_trigger_exit(self):
        text = _words(40)
        service, backend = build_service([(0.2, 0.1), (0.1, 0.95), (0.2, 0.1), (0.2, 0.1)], text)
        await _ready(service)

        scores = await service.compute_aggregated_similarity(text, ["gaming"], ["work"])
        assert scores.windows_processed == 4


class TestComputePageSimilarity:

    @pytest.mark.anyio
    async def test_auto_initializes_and_blocks(self):
        text = "Gaming stream highlights"
        service, backend = build_service([(0.5, 0.2)], text)
        assert service.provider.get_status() is ModelState.UNINITIALIZED

        result = await service.compute_page_similarity(text, ["gaming"], ["work"])

        assert service.provider.is_ready
        assert backend.load_count == 1
        assert result.should_block is True
        assert result.blocked_similarity == pytest.approx(0.5, abs=1e-5)
        assert result.allowed_similarity == pytest.approx(0.2, abs=1e-5)

    @pytest.mark.anyio
    async def test_caches_request_keywords(self):
        text = "Gaming stream highlights"
        service, _ = build_service([(0.5, 0.2)], text)

        await service.compute_page_similarity(text, ["Gaming"], ["work"])

        assert set(service.cache.keywords()) == {"gaming", "work"}

    @pytest.mark.anyio
    async def test_allowed_content_not_blocked(self):
        text = "Gaming industry quarterly report"
        service, _ = build_service([(0.5, 0.6)], text)

        result = await service.compute_page_similarity(text, ["gaming"], ["work"])
        assert result.should_block is False

    @pytest.mark.anyio
    async def test_unrelated_content_not_blocked(self):
        text = "Recipe for sourdough bread"
        service, _ = build_service([(0.2, 0.2)], text)

        result = await service.compute_page_similarity(text, ["gaming"], ["work"])
        assert result.should_block is False

    @pytest.mark.anyio
    async def test_no_keywords_never_blocks(self):
        text = "anything at all"
        service, _ = build_service([(0.9, 0.0)], text)

        result = await service.compute_page_similarity(text, [], [])
        assert result == SimilarityResult.neutral()

    @pytest.mark.anyio
    async def test_fails_open_when_model_cannot_load(self):
        backend = FailingEmbeddingBackend(fail_load=True, dim=DIM)
        provider = EmbeddingService(backend)
        service = RelevanceService(provider, KeywordEmbeddingCache(provider), 10, 0)

        result = await service.compute_page_similarity("gaming news", ["gaming"], ["work"])

        assert result == SimilarityResult.neutral()
        assert provider.get_status() is ModelState.ERROR

    @pytest.mark.anyio
    async def test_retries_load_after_error(self):
        backend = FailingEmbeddingBackend(load_failures=1, dim=DIM)
        provider = EmbeddingService(backend)
        service = RelevanceService(provider, KeywordEmbeddingCache(provider), 10, 0)

        await service.compute_page_similarity("gaming news", ["gaming"], ["work"])
        assert provider.get_status() is ModelState.ERROR

        await service.compute_page_similarity("gaming news", ["gaming"], ["work"])
        assert provider.get_status() is ModelState.READY

    @pytest.mark.anyio
    async def test_fails_open_on_embedding_error(self):
        backend = FailingEmbeddingBackend(fail_texts=["gaming news"], dim=DIM)
        provider = EmbeddingService(backend)
        service = RelevanceService(provider, KeywordEmbeddingCache(provider), 10, 0)

        result = await service.compute_page_similarity("Gaming News", ["gaming"], ["work"])

        assert result == SimilarityResult.neutral()
        ops = metrics.get_metrics()
        assert ops["compute_page_similarity"]["error_count"] == 1

    @pytest.mark.anyio
    async def test_empty_text_is_neutral_without_loading(self):
        service, backend = build_service()

        result = await service.compute_page_similarity("   ", ["gaming"], ["work"])

        assert result == SimilarityResult.neutral()
        assert backend.load_count == 0

    @pytest.mark.anyio
    async def test_text_truncated_to_max_chars(self):
        service, backend = build_service(max_text_chars=11)

        await service.compute_page_similarity(
            "Gaming News and much more text after the limit", ["gaming"], ["work"]
        )

        assert "gaming news" in backend.embedded_texts
        assert not any("limit" in t for t in backend.embedded_texts)

    @pytest.mark.anyio
    async def test_result_message_uses_host_field_names(self):
        text = "Gaming stream highlights"
        service, _ = build_service([(0.5, 0.2)], text)

        result = await service.compute_page_similarity(text, ["gaming"], ["work"])

        message = result.to_message()
        assert set(message) == {"blockedSimilarity", "allowedSimilarity", "shouldBlock"}
        assert message["shouldBlock"] is True


class TestWarmup:

    @pytest.mark.anyio
    async def test_warmup_loads_and_caches(self):
        service, _ = build_service()
        assert await service.warmup(["gaming", "work"]) is True
        assert service.provider.is_ready
        assert service.cache.keywords() == ["gaming", "work"]

    @pytest.mark.anyio
    async def test_warmup_forwards_progress_and_loads_once(self):
        service, backend = build_service()
        events = []

        assert await service.warmup(["gaming"], progress_callback=events.append) is True

        assert backend.load_count == 1
        assert [e.stage for e in events] == ["download", "session", "warmup", "done"]

    @pytest.mark.anyio
    async def test_warmup_reports_failure(self):
        backend = FailingEmbeddingBackend(fail_load=True, dim=DIM)
        provider = EmbeddingService(backend)
        service = RelevanceService(provider, KeywordEmbeddingCache(provider), 10, 0)

        assert await service.warmup(["gaming"]) is False
        assert provider.get_error() == "model weights unavailable"


class TestConstruction:

    def test_rejects_invalid_window_config(self):
        backend = ScriptedEmbeddingBackend({}, dim=DIM)
        provider = EmbeddingService(backend)
        with pytest.raises(ValueError):
            RelevanceService(provider, KeywordEmbeddingCache(provider), window_size=8, overlap=8)


class TestDecisionEvents:
    """Decisions are counted in the global metrics collector."""

    @pytest.mark.anyio
    async def test_blocked_and_allowed_pages_counted(self):
        blocked_text = "Gaming stream highlights"
        allowed_text = "Gaming industry quarterly report"
        blocking, _ = build_service([(0.5, 0.2)], blocked_text)
        allowing, _ = build_service([(0.5, 0.6)], allowed_text)

        await blocking.compute_page_similarity(blocked_text, ["gaming"], ["work"])
        await allowing.compute_page_similarity(allowed_text, ["gaming"], ["work"])

        events = metrics.get_events()
        assert events["page_blocked"] == 1
        assert events["page_allowed"] == 1
        assert "fail_open" not in events

    @pytest.mark.anyio
    async def test_early_exit_counted(self):
        text = _words(40)
        service, _ = build_service([(0.2, 0.1), (0.9, 0.1), (0.2, 0.1), (0.2, 0.1)], text)
        await _ready(service)

        await service.compute_aggregated_similarity(text, ["gaming"], ["work"])

        assert metrics.get_events() == {"early_exit": 1}

    @pytest.mark.anyio
    async def test_no_early_exit_not_counted(self):
        text = _words(40)
        service, _ = build_service([(0.2, 0.1)] * 4, text)
        await _ready(service)

        await service.compute_aggregated_similarity(text, ["gaming"], ["work"])

        assert "early_exit" not in metrics.get_events()

    @pytest.mark.anyio
    async def test_fail_open_counted(self):
        backend = FailingEmbeddingBackend(fail_load=True, dim=DIM)
        provider = EmbeddingService(backend)
        service = RelevanceService(provider, KeywordEmbeddingCache(provider), 10, 0)

        await service.compute_page_similarity("gaming news", ["gaming"], ["work"])

        assert metrics.get_events() == {"fail_open": 1}
        assert metrics.get_summary()["events"] == {"fail_open": 1}
