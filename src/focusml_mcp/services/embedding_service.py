"""Embedding service with an explicit model lifecycle.

Wraps a blocking EmbeddingBackend behind an asyncio interface:

- ``initialize()`` is single-flight. The first caller starts one load
  task; callers arriving while it runs await the same task instead of
  starting a second backend load.
- Backend work (loading, warm-up, inference) runs in worker threads so
  the event loop keeps serving other requests.
- Non-reentrant backends are serialized behind an asyncio.Lock; callers
  never see that constraint.

Usage:
    service = EmbeddingService(backend=OnnxEmbeddingBackend())
    await service.initialize(progress_callback=print)
    vector = await service.compute_embedding("some text")
    service.shutdown()  # Clean up on server exit
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Optional

import numpy as np

from focusml_mcp.exceptions import (
    EmbeddingInferenceError,
    EmptyInputError,
    FocusMLError,
    ModelLoadError,
    ModelNotInitializedError,
)
from focusml_mcp.models.schema import LoadProgress, ModelState, ModelStatus
from focusml_mcp.observability import timed_operation

if TYPE_CHECKING:
    from focusml_mcp.services.embedding_types import EmbeddingBackend

logger = logging.getLogger(__name__)

WARMUP_TEXT = "warmup text"

# Vectors further than this from unit length are re-normalized
_NORM_TOLERANCE = 1e-3

ProgressCallback = Callable[[LoadProgress], None]


class EmbeddingService:
    """Owns the embedding backend and its lifecycle state.

    One instance is created by the host and shared by every request; it is
    passed explicitly to the keyword cache and relevance service.

    Args:
        backend: An EmbeddingBackend implementation.
    """

    def __init__(self, backend: EmbeddingBackend) -> None:
        self._backend = backend
        self._state = ModelState.UNINITIALIZED
        self._error: Optional[str] = None
        self._pending: Optional[asyncio.Task] = None
        self._embed_lock = asyncio.Lock()

    @property
    def dimension(self) -> int:
        """Embedding dimensionality (delegates to backend)."""
        return self._backend.dimension

    @property
    def model_id(self) -> str:
        return self._backend.model_id

    @property
    def is_ready(self) -> bool:
        return self._state is ModelState.READY

    @property
    def status(self) -> ModelStatus:
        """Current lifecycle snapshot. Never blocks."""
        return ModelStatus(state=self._state, error=self._error)

    def get_status(self) -> ModelState:
        return self._state

    def get_error(self) -> Optional[str]:
        return self._error

    async def initialize(self, progress_callback: Optional[ProgressCallback] = None) -> None:
        """Load the backend and run one warm-up inference.

        Returns immediately when the model is ready. While a load is in
        flight, awaits that load rather than starting another; in that case
        ``progress_callback`` is not attached to the running load. After a
        failed load, a new call retries.

        Raises:
            ModelLoadError: If the backend fails to load or warm up. Every
                caller awaiting the failed load receives the error.
        """
        if self._state is ModelState.READY:
            return

        if self._pending is None:
            self._state = ModelState.LOADING
            self._error = None
            self._pending = asyncio.ensure_future(self._load(progress_callback))
            self._pending.add_done_callback(_consume_task_result)
        else:
            logger.debug("Model load already in progress, waiting for it")

        # Shield so a cancelled waiter does not cancel the shared load.
        await asyncio.shield(self._pending)

    async def _load(self, progress_callback: Optional[ProgressCallback]) -> None:
        loop = asyncio.get_running_loop()
        report = _progress_reporter(progress_callback)

        def report_from_thread(event: LoadProgress) -> None:
            loop.call_soon_threadsafe(report, event)

        try:
            logger.info(f"Loading embedding model: {self._backend.model_id}")
            await asyncio.to_thread(self._backend.load, report_from_thread)
            logger.info("Embedding model loaded")

            report(LoadProgress(stage="warmup", message="Running warm-up inference", progress=0.9))
            await asyncio.to_thread(self._backend.embed, WARMUP_TEXT)
            logger.info("Model warmup complete")
        except Exception as e:
            self._state = ModelState.ERROR
            self._error = str(e) or type(e).__name__
            logger.error(f"Failed to load embedding model: {self._error}", exc_info=True)
            raise ModelLoadError(
                f"Failed to load embedding model: {self._error}",
                model_id=self._backend.model_id,
                original_error=e,
            ) from e
        finally:
            # A load cancelled by shutdown() must not drop a newer load's handle.
            if self._pending is asyncio.current_task():
                self._pending = None

        self._state = ModelState.READY
        report(LoadProgress(stage="done", message="Model ready", progress=1.0))

    async def compute_embedding(self, text: str) -> np.ndarray:
        """Embed text into a unit-length vector.

        Args:
            text: Non-blank input text.

        Returns:
            1-D float32 numpy array of shape (dimension,) with L2 norm 1.

        Raises:
            ModelNotInitializedError: If the model is not ready.
            EmptyInputError: If ``text`` is empty or whitespace only.
            EmbeddingInferenceError: If the backend fails.
        """
        if self._state is not ModelState.READY:
            raise ModelNotInitializedError(self._state.value)
        if not text or not text.strip():
            raise EmptyInputError()

        with timed_operation("compute_embedding", chars=len(text)):
            try:
                if self._backend.reentrant:
                    vector = await asyncio.to_thread(self._backend.embed, text)
                else:
                    async with self._embed_lock:
                        vector = await asyncio.to_thread(self._backend.embed, text)
            except FocusMLError:
                raise
            except Exception as e:
                raise EmbeddingInferenceError(
                    f"Embedding inference failed: {e}", original_error=e
                ) from e

        return _as_unit_vector(vector)

    def shutdown(self) -> None:
        """Unload the backend and return to the uninitialized state.

        Call this when the server is shutting down.
        """
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self._backend.is_loaded:
            self._backend.unload()
        self._state = ModelState.UNINITIALIZED
        self._error = None
        logger.info("EmbeddingService shut down")


def _as_unit_vector(vector) -> np.ndarray:
    result = np.asarray(vector, dtype=np.float32).ravel()
    norm = float(np.linalg.norm(result))
    if norm > 0 and abs(norm - 1.0) > _NORM_TOLERANCE:
        result = result / norm
    return result


def _progress_reporter(callback: Optional[ProgressCallback]) -> ProgressCallback:
    """Wrap a host progress callback so its failures never abort a load."""

    def report(event: LoadProgress) -> None:
        logger.debug(f"Model loading progress: {event.stage} ({event.progress:.0%})")
        if callback is None:
            return
        try:
            callback(event)
        except Exception as e:
            logger.warning(f"Progress callback failed at stage {event.stage}: {e}")

    return report


def _consume_task_result(task: asyncio.Task) -> None:
    # The load error is delivered to waiters; mark it retrieved for the loop.
    if not task.cancelled():
        task.exception()
