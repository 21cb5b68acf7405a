"""Data models for the FocusML relevance engine."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ModelState(str, Enum):
    """Lifecycle state of the embedding provider."""
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class ModelStatus(BaseModel):
    """Snapshot of the provider lifecycle.

    ``error`` is only ever set together with ``ModelState.ERROR``.
    """
    model_config = ConfigDict(frozen=True)

    state: ModelState = ModelState.UNINITIALIZED
    error: Optional[str] = None

    @model_validator(mode="after")
    def _error_only_in_error_state(self) -> "ModelStatus":
        if self.state is ModelState.ERROR and not self.error:
            raise ValueError("ERROR state requires an error message")
        if self.state is not ModelState.ERROR and self.error is not None:
            raise ValueError(f"{self.state.value} state cannot carry an error message")
        return self

    def to_message(self) -> Dict[str, Any]:
        """Status query response sent to the host."""
        return {"status": self.state.value, "error": self.error}


@dataclass(frozen=True)
class LoadProgress:
    """A progress event emitted while the embedding backend loads.

    Attributes:
        stage: Short stage name (``download``, ``tokenizer``, ``session``,
            ``warmup``, ``done``).
        message: Human-readable description of the stage.
        progress: Fraction of the load completed, in [0, 1].
    """

    stage: str
    message: str
    progress: float = 0.0


class SimilarityResult(BaseModel):
    """Outcome of one page-similarity request.

    Serialized with the camelCase field names the host expects.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    blocked_similarity: float = Field(default=0.0, alias="blockedSimilarity")
    allowed_similarity: float = Field(default=0.0, alias="allowedSimilarity")
    should_block: bool = Field(default=False, alias="shouldBlock")

    @classmethod
    def neutral(cls) -> "SimilarityResult":
        """The fail-open result: nothing matched, nothing blocked."""
        return cls(blocked_similarity=0.0, allowed_similarity=0.0, should_block=False)

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
