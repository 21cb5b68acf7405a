"""Common test fixtures for the FocusML MCP server."""

import pytest

from focusml_mcp.config import config
from focusml_mcp.observability import metrics
from focusml_mcp.services.embedding_service import EmbeddingService
from focusml_mcp.services.keyword_cache import KeywordEmbeddingCache
from focusml_mcp.services.relevance_service import RelevanceService
from tests.fakes import FakeEmbeddingBackend


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Keep the global metrics collector isolated between tests."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def test_config(monkeypatch):
    """Global config with startup warm-up disabled (auto-restored)."""
    monkeypatch.setattr(config, "warmup_on_start", False)
    monkeypatch.setattr(config, "window_size", 512)
    monkeypatch.setattr(config, "window_overlap", 128)
    monkeypatch.setattr(config, "max_text_chars", 0)
    yield config


@pytest.fixture
def fake_backend():
    return FakeEmbeddingBackend()


@pytest.fixture
def provider(fake_backend):
    """An uninitialized EmbeddingService over the hash backend."""
    service = EmbeddingService(fake_backend)
    yield service
    service.shutdown()


@pytest.fixture
async def ready_provider(provider):
    """An EmbeddingService that has completed initialization."""
    await provider.initialize()
    return provider


@pytest.fixture
def keyword_cache(provider):
    return KeywordEmbeddingCache(provider)


@pytest.fixture
def relevance_service(provider, keyword_cache):
    return RelevanceService(provider, keyword_cache, window_size=512, overlap=128)
