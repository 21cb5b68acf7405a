"""Whitespace tokenization and overlapping sliding windows.

Long page text is split into bounded, overlapping token windows so the
embedding model sees focused spans instead of one truncated input.
Windows are positioned over the lower-cased whitespace token sequence,
not over characters.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from focusml_mcp.exceptions import InvalidWindowConfigError

DEFAULT_WINDOW_SIZE = 512
DEFAULT_OVERLAP = 128

# A trailing window shorter than this fraction of window_size is dropped.
MIN_TAIL_FRACTION = 0.25

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class TextWindow:
    """A contiguous span of tokens from a document.

    Attributes:
        text: The window's tokens joined by single spaces.
        start_index: Index of the first token (inclusive).
        end_index: Index one past the last token (exclusive).
    """

    text: str
    start_index: int
    end_index: int

    @property
    def token_count(self) -> int:
        return self.end_index - self.start_index


def tokenize(text: str) -> List[str]:
    """Lower-case ``text`` and split it on whitespace runs, dropping empties."""
    return [token for token in _WHITESPACE.split(text.lower()) if token]


def validate_window_config(window_size: int, overlap: int) -> int:
    """Check a window configuration and return its stride.

    Raises:
        InvalidWindowConfigError: If the window size is not positive, the
            overlap is negative, or the stride would not advance.
    """
    if window_size <= 0:
        raise InvalidWindowConfigError(
            window_size, overlap, f"window_size must be positive, got {window_size}"
        )
    if overlap < 0:
        raise InvalidWindowConfigError(
            window_size, overlap, f"overlap must not be negative, got {overlap}"
        )
    stride = window_size - overlap
    if stride <= 0:
        raise InvalidWindowConfigError(
            window_size,
            overlap,
            f"overlap ({overlap}) must be less than window_size ({window_size})",
        )
    return stride


def create_sliding_windows(
    text: str,
    window_size: int = DEFAULT_WINDOW_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> List[TextWindow]:
    """Split text into overlapping token windows.

    Texts with at most ``window_size`` tokens come back as a single window
    covering every token. Longer texts are sliced every
    ``window_size - overlap`` tokens; a trailing slice shorter than a quarter
    of ``window_size`` is discarded, and slicing stops at the first window
    that reaches the end of the token sequence.

    Args:
        text: The text to split.
        window_size: Maximum tokens per window.
        overlap: Tokens shared by consecutive windows.

    Returns:
        Ordered list of TextWindow instances.

    Raises:
        InvalidWindowConfigError: For a configuration that cannot advance.
    """
    stride = validate_window_config(window_size, overlap)
    tokens = tokenize(text)
    total = len(tokens)

    if total <= window_size:
        return [TextWindow(text=" ".join(tokens), start_index=0, end_index=total)]

    windows: List[TextWindow] = []
    min_tokens = window_size * MIN_TAIL_FRACTION
    for start in range(0, total, stride):
        window_tokens = tokens[start : start + window_size]
        if len(window_tokens) < min_tokens:
            break

        windows.append(
            TextWindow(
                text=" ".join(window_tokens),
                start_index=start,
                end_index=start + len(window_tokens),
            )
        )

        if start + window_size >= total:
            break

    return windows
