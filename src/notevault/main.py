#!/usr/bin/env python
"""Main entry point for the Notevault MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from notevault.config import config
from notevault.exceptions import NotevaultError
from notevault.observability import configure_logging, metrics
from notevault.server.mcp_server import NotevaultMcpServer


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Notevault MCP Server")
    parser.add_argument(
        "--data-dir",
        help="Directory holding per-user note stores",
        type=str,
        default=os.environ.get("NOTEVAULT_DATA_DIR"),
    )
    parser.add_argument(
        "--user",
        help="Account whose notes the server operates on",
        type=str,
        default=os.environ.get("NOTEVAULT_USER"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTEVAULT_LOG_LEVEL", "INFO"),
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.data_dir:
        config.data_dir = Path(args.data_dir)
    if args.user:
        config.default_user = args.user
    config.log_level = args.log_level


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    if metrics.save_metrics():
        logging.getLogger(__name__).info("Metrics saved to disk on shutdown")


def main():
    """Run the Notevault MCP server."""
    args = parse_args()
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    atexit.register(_save_metrics_on_exit)

    data_dir = config.get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    config.get_shared_dir().mkdir(parents=True, exist_ok=True)
    logger.info(f"Using data directory: {data_dir}")

    try:
        logger.info("Starting Notevault MCP server")
        server = NotevaultMcpServer(user_id=config.default_user)
        server.run()
    except (NotevaultError, OSError) as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
