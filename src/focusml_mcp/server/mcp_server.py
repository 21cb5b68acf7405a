"""MCP server exposing the FocusML relevance engine."""

import asyncio
import atexit
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from mcp.server.fastmcp import FastMCP

from focusml_mcp.config import config
from focusml_mcp.exceptions import FocusMLError
from focusml_mcp.models.schema import LoadProgress, SimilarityResult
from focusml_mcp.observability import metrics, timed_operation
from focusml_mcp.services.embedding_service import EmbeddingService
from focusml_mcp.services.keyword_cache import KeywordEmbeddingCache
from focusml_mcp.services.relevance_service import RelevanceService

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 2_000_000  # 2 MB of page text
MAX_KEYWORDS = 200


def _validate_request(
    text: Optional[str] = None, keywords: Optional[List[str]] = None
) -> None:
    """Validate request sizes at the MCP boundary."""
    if text and len(text) > MAX_TEXT_LENGTH:
        raise ValueError(f"Text exceeds maximum length of {MAX_TEXT_LENGTH} characters")
    if keywords and len(keywords) > MAX_KEYWORDS:
        raise ValueError(f"Too many keywords (max {MAX_KEYWORDS})")


class FocusMLMcpServer:
    """MCP server for semantic page filtering.

    Owns the embedding provider, keyword cache and relevance service; every
    tool call shares these three objects.
    """

    def __init__(self, backend=None):
        """Initialize the MCP server.

        Args:
            backend: Embedding backend to use. When None, an
                OnnxEmbeddingBackend is built from the global config.
        """
        self.provider = EmbeddingService(backend or self._create_backend())
        self.keyword_cache = KeywordEmbeddingCache(self.provider)
        self.relevance_service = RelevanceService(
            self.provider,
            self.keyword_cache,
            window_size=config.window_size,
            overlap=config.window_overlap,
            max_text_chars=config.max_text_chars,
        )
        self._warmup_task: Optional[asyncio.Task] = None
        self.mcp = FastMCP(config.server_name, lifespan=self._lifespan)
        # Register shutdown hook for resource cleanup
        atexit.register(self._shutdown)
        self._register_tools()

    @staticmethod
    def _create_backend():
        from focusml_mcp.services.onnx_backend import OnnxEmbeddingBackend

        backend = OnnxEmbeddingBackend(
            model_id=config.embedding_model,
            onnx_filename=config.onnx_filename,
            max_length=config.embedding_max_tokens,
            cache_dir=config.embedding_model_cache_dir,
            providers=config.onnx_providers,
        )
        logger.info(f"Embedding backend created (model={config.embedding_model})")
        return backend

    @asynccontextmanager
    async def _lifespan(self, server: FastMCP) -> AsyncIterator[None]:
        """Start background warm-up when the server starts serving."""
        if config.warmup_on_start:
            self._warmup_task = asyncio.ensure_future(self.warmup())
        try:
            yield
        finally:
            if self._warmup_task is not None and not self._warmup_task.done():
                self._warmup_task.cancel()
            self._warmup_task = None

    async def warmup(self) -> bool:
        """Load the model and cache the configured default keywords."""
        logger.info("Initializing ML model...")

        def log_progress(event: LoadProgress) -> None:
            logger.info(f"Model loading progress: {event.stage} {event.progress:.0%}")

        return await self.relevance_service.warmup(
            config.default_keywords, progress_callback=log_progress
        )

    def _shutdown(self) -> None:
        """Clean up resources on server exit."""
        self.provider.shutdown()

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            JSON error payload with an appropriate level of detail
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, FocusMLError):
            payload = error.to_dict()
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": payload},
            )
            return json.dumps(
                {"success": False, "error": error.message, "code": payload["code_name"]}
            )
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            message = f"Invalid input (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            message = f"An unexpected error occurred (ref: {error_id})"
        return json.dumps({"success": False, "error": message})

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="compute_page_similarity")
        async def compute_page_similarity(
            text: str,
            blocked_keywords: List[str],
            allowed_keywords: List[str],
        ) -> str:
            """Score page text against distracting and productive keywords.
            Args:
                text: Visible text of the page
                blocked_keywords: Keywords describing distracting content
                allowed_keywords: Keywords describing productive content
            Returns a JSON object {blockedSimilarity, allowedSimilarity, shouldBlock}.
            Internal failures return a neutral, non-blocking result.
            """
            try:
                _validate_request(text=text, keywords=[*blocked_keywords, *allowed_keywords])
            except ValueError as e:
                logger.warning(f"Rejected similarity request: {e}")
                return json.dumps(SimilarityResult.neutral().to_message())

            result = await self.relevance_service.compute_page_similarity(
                text, blocked_keywords, allowed_keywords
            )
            return json.dumps(result.to_message())

        @self.mcp.tool(name="precompute_keyword_embeddings")
        async def precompute_keyword_embeddings(keywords: List[str]) -> str:
            """Cache embeddings for keywords ahead of similarity requests.
            Args:
                keywords: Keywords to embed (case-insensitive)
            Does nothing while the model is not ready.
            """
            with timed_operation("precompute_keyword_embeddings", count=len(keywords)) as op:
                try:
                    _validate_request(keywords=keywords)
                    cached = await self.keyword_cache.precompute(keywords)
                    op["cached"] = cached
                    return json.dumps(
                        {
                            "success": True,
                            "cached": cached,
                            "ready": self.provider.is_ready,
                        }
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="get_ml_status")
        async def get_ml_status() -> str:
            """Report the embedding model lifecycle state.
            Returns a JSON object {status, error} where status is one of
            uninitialized, loading, ready, error.
            """
            return json.dumps(self.provider.status.to_message())

        @self.mcp.tool(name="get_metrics")
        async def get_metrics() -> str:
            """Report timing, error and decision metrics for relevance operations."""
            return json.dumps(
                {
                    "server": {
                        "name": config.server_name,
                        "version": config.server_version,
                        "model": self.provider.model_id,
                    },
                    "summary": metrics.get_summary(),
                    "events": metrics.get_events(),
                    "operations": metrics.get_metrics(),
                    "cached_keywords": self.keyword_cache.keywords(),
                },
                indent=2,
            )

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
