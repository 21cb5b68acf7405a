"""Custom exceptions for the FocusML relevance engine.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Every error raised by the core
derives from FocusMLError so the MCP boundary can format it uniformly.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Model lifecycle errors (1xxx)
    MODEL_LOAD_FAILED = 1001
    MODEL_NOT_INITIALIZED = 1002
    EMBEDDING_INFERENCE_FAILED = 1003

    # Input errors (2xxx)
    EMPTY_INPUT = 2001
    DIMENSION_MISMATCH = 2002

    # Windowing errors (3xxx)
    INVALID_WINDOW_CONFIG = 3001

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001


class FocusMLError(Exception):
    """Base exception for all FocusML errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class EmbeddingError(FocusMLError):
    """Raised for failures inside the embedding provider or its backend."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.EMBEDDING_INFERENCE_FAILED,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class ModelLoadError(EmbeddingError):
    """Raised when the embedding backend fails to initialize."""

    def __init__(
        self,
        message: str,
        model_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            code=ErrorCode.MODEL_LOAD_FAILED,
            operation="initialize",
            original_error=original_error,
        )
        self.model_id = model_id
        if model_id:
            self.details["model_id"] = model_id


class ModelNotInitializedError(EmbeddingError):
    """Raised when an embedding is requested before the model is ready."""

    def __init__(self, state: Optional[str] = None):
        super().__init__(
            "Model not initialized. Call initialize() first.",
            code=ErrorCode.MODEL_NOT_INITIALIZED,
            operation="compute_embedding",
        )
        self.state = state
        if state:
            self.details["state"] = state


class EmbeddingInferenceError(EmbeddingError):
    """Raised when the backend fails while embedding a ready request."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            message,
            code=ErrorCode.EMBEDDING_INFERENCE_FAILED,
            operation="compute_embedding",
            original_error=original_error,
        )


class EmptyInputError(FocusMLError):
    """Raised when asked to embed blank text."""

    def __init__(self, message: str = "Cannot compute embedding for empty text"):
        super().__init__(message, code=ErrorCode.EMPTY_INPUT)


class DimensionMismatchError(FocusMLError):
    """Raised when two vectors of different lengths are compared."""

    def __init__(self, left: int, right: int):
        super().__init__(
            "Embeddings must have the same dimension",
            code=ErrorCode.DIMENSION_MISMATCH,
            details={"left": left, "right": right},
        )
        self.left = left
        self.right = right


class InvalidWindowConfigError(FocusMLError, ValueError):
    """Raised for a window size or overlap that cannot produce forward progress."""

    def __init__(self, window_size: int, overlap: int, message: Optional[str] = None):
        super().__init__(
            message
            or (
                f"Invalid sliding window configuration: window_size={window_size}, "
                f"overlap={overlap}"
            ),
            code=ErrorCode.INVALID_WINDOW_CONFIG,
            details={"window_size": window_size, "overlap": overlap},
        )
        self.window_size = window_size
        self.overlap = overlap


class ConfigurationError(FocusMLError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key
