"""Configuration module for the FocusML MCP server."""

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from focusml_mcp import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls
_USER_ENV = Path.home() / ".focusml" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str) -> List[str]:
    """Parse a comma-separated environment variable into a list."""
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class FocusMLConfig(BaseModel):
    """Configuration for the FocusML server and relevance engine."""

    # Server configuration
    server_name: str = Field(default=os.getenv("FOCUSML_SERVER_NAME", "focusml-mcp"))
    server_version: str = Field(default=__version__)
    # Embedding backend configuration
    embedding_model: str = Field(
        default_factory=lambda: os.getenv(
            "FOCUSML_EMBEDDING_MODEL", "Alibaba-NLP/gte-base-en-v1.5"
        )
    )
    # 8-bit quantized weights; the backend falls back to onnx/model.onnx
    onnx_filename: str = Field(
        default_factory=lambda: os.getenv(
            "FOCUSML_ONNX_FILENAME", "onnx/model_quantized.onnx"
        )
    )
    embedding_max_tokens: int = Field(
        default_factory=lambda: int(os.getenv("FOCUSML_EMBEDDING_MAX_TOKENS", "1024"))
    )
    embedding_model_cache_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("FOCUSML_EMBEDDING_CACHE_DIR"))
            if os.getenv("FOCUSML_EMBEDDING_CACHE_DIR")
            else None
        )
    )
    # ONNX execution provider preference: "cpu" (default), "auto" (detect
    # GPU/CPU), or a comma-separated list of provider names
    onnx_providers: str = Field(
        default_factory=lambda: os.getenv("FOCUSML_ONNX_PROVIDERS", "cpu")
    )
    # Sliding window over whitespace tokens of the page text
    window_size: int = Field(
        default_factory=lambda: int(os.getenv("FOCUSML_WINDOW_SIZE", "512"))
    )
    window_overlap: int = Field(
        default_factory=lambda: int(os.getenv("FOCUSML_WINDOW_OVERLAP", "128"))
    )
    # Page text is cut to this many characters before windowing (0 = no limit)
    max_text_chars: int = Field(
        default_factory=lambda: int(os.getenv("FOCUSML_MAX_TEXT_CHARS", "0"))
    )
    # Load the model and cache the default keywords when the server starts
    warmup_on_start: bool = Field(
        default_factory=lambda: _env_bool("FOCUSML_WARMUP_ON_START", "true")
    )
    default_blocked_keywords: List[str] = Field(
        default_factory=lambda: _env_list(
            "FOCUSML_BLOCKED_KEYWORDS", "gaming,celebrity,sports,f1"
        )
    )
    default_allowed_keywords: List[str] = Field(
        default_factory=lambda: _env_list(
            "FOCUSML_ALLOWED_KEYWORDS", "work,study,productivity"
        )
    )
    # Logging
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("FOCUSML_LOG_DIR")) if os.getenv("FOCUSML_LOG_DIR") else None
        )
    )

    @model_validator(mode="after")
    def _validate_window_config(self) -> "FocusMLConfig":
        """Reject window settings that cannot make forward progress."""
        if self.window_size <= 0:
            raise ValueError("window_size must be > 0")
        if self.window_overlap < 0:
            raise ValueError("window_overlap must be >= 0")
        if self.window_overlap >= self.window_size:
            raise ValueError(
                f"window_overlap ({self.window_overlap}) must be less than "
                f"window_size ({self.window_size})"
            )
        if self.embedding_max_tokens < 128:
            raise ValueError("embedding_max_tokens must be >= 128")
        if self.max_text_chars < 0:
            raise ValueError("max_text_chars must be >= 0")
        return self

    @property
    def default_keywords(self) -> List[str]:
        """All default keywords, blocked first."""
        return [*self.default_blocked_keywords, *self.default_allowed_keywords]


# Create a global config instance
config = FocusMLConfig()
