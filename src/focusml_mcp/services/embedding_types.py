"""Type protocol for embedding backends.

Defines the structural contract that both the production ONNX backend
and test fakes must satisfy. Uses Protocol (PEP 544) for structural
subtyping: implementations don't need to inherit from it.

Backends are synchronous and may block; the EmbeddingService runs them in
worker threads and owns the lifecycle around them.

This module is importable without numpy installed (annotations are
deferred via __future__).
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    import numpy as np

    from focusml_mcp.models.schema import LoadProgress

ProgressCallback = Callable[["LoadProgress"], None]


@runtime_checkable
class EmbeddingBackend(Protocol):
    """Contract for turning text into dense unit vectors."""

    #: Whether ``embed`` may be called from several threads at once.
    #: Non-reentrant backends are serialized by the EmbeddingService.
    reentrant: bool

    @property
    def model_id(self) -> str:
        """Identifier the backend was loaded from."""
        ...

    @property
    def dimension(self) -> int:
        """Dimensionality of produced vectors."""
        ...

    def load(self, progress: Optional[ProgressCallback] = None) -> None:
        """Load model resources, reporting stages through ``progress``."""
        ...

    def unload(self) -> None:
        """Release model resources. May be called multiple times."""
        ...

    @property
    def is_loaded(self) -> bool:
        """Whether the model is currently loaded in memory."""
        ...

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text.

        Returns:
            1-D numpy array of shape (dimension,), mean-pooled and
            L2-normalized.
        """
        ...
