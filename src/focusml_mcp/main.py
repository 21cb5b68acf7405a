#!/usr/bin/env python
"""Main entry point for the FocusML MCP server."""
import argparse
import logging
import os
import sys
from pathlib import Path

from focusml_mcp.config import config
from focusml_mcp.observability import configure_logging
from focusml_mcp.server.mcp_server import FocusMLMcpServer


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="FocusML MCP Server")
    parser.add_argument(
        "--model",
        help="Hugging Face ID of the embedding model",
        type=str,
        default=os.environ.get("FOCUSML_EMBEDDING_MODEL"),
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for rotating log files",
        type=str,
        default=os.environ.get("FOCUSML_LOG_DIR"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("FOCUSML_LOG_LEVEL", "INFO"),
    )
    parser.add_argument(
        "--no-warmup",
        help="Load the model on the first request instead of at startup",
        action="store_true",
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.model:
        config.embedding_model = args.model
    if args.log_dir:
        config.log_dir = Path(args.log_dir)
    if args.no_warmup:
        config.warmup_on_start = False


def main():
    """Run the FocusML MCP server."""
    args = parse_args()
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except Exception as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    try:
        logger.info(
            f"Starting FocusML MCP server (model={config.embedding_model}, "
            f"warmup={config.warmup_on_start})"
        )
        server = FocusMLMcpServer()
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
