"""
FocusML MCP - semantic content filtering for a focus-management tool.
This package exposes an embedding-based relevance engine as a Model Context
Protocol (MCP) server. Page text is compared against "distracting" and
"productive" keyword sets and a fixed two-sided threshold policy decides
whether the content should be blocked.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("focusml-mcp")
except PackageNotFoundError:
    __version__ = "0.3.0"
