#!/usr/bin/env python
"""Command line entry point: configure, provision the caller, serve MCP."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from todo_mcp.config import config
from todo_mcp.models.db_models import init_db
from todo_mcp.models.schema import BulkStrategy
from todo_mcp.observability import configure_logging, metrics
from todo_mcp.server.mcp_server import TodoMcpServer
from todo_mcp.services.provisioning import ProvisioningService

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def parse_args(argv=None):
    """Parse command line arguments; each falls back to its TODO_MCP_* variable."""
    parser = argparse.ArgumentParser(description="Todo MCP Server")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        default=os.environ.get("TODO_MCP_DATABASE_PATH"),
    )
    parser.add_argument(
        "--in-memory",
        help="Use a throwaway in-memory database",
        action="store_true",
    )
    parser.add_argument(
        "--user-id",
        help="Verified user identity every tool call acts for",
        default=os.environ.get("TODO_MCP_USER_ID"),
    )
    parser.add_argument(
        "--bulk-strategy",
        help="How bulk operations write rows",
        choices=[s.value for s in BulkStrategy],
        default=None,
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=LOG_LEVELS,
        default=os.environ.get("TODO_MCP_LOG_LEVEL", "INFO"),
    )
    return parser.parse_args(argv)


def update_config(args):
    """Apply command line arguments to the global config."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.in_memory:
        config.in_memory_db = True
    if args.user_id:
        config.user_id = args.user_id
    if args.bulk_strategy:
        config.bulk_strategy = BulkStrategy(args.bulk_strategy)
    config.log_level = args.log_level


def _setup_logging() -> logging.Logger:
    level = getattr(logging, config.log_level, logging.INFO)
    try:
        log_dir: Optional[Path] = configure_logging(level=level, console=True)
    except OSError as e:
        # Unwritable home directory: keep going with stderr only
        logging.basicConfig(level=level)
        logging.getLogger(__name__).warning(f"File logging disabled: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")
    return logger


def _save_metrics_on_exit():
    """Flush tool metrics to disk at interpreter exit."""
    log = logging.getLogger(__name__)
    try:
        if metrics.save_metrics():
            log.info("Metrics saved on shutdown")
    except Exception as e:
        log.warning(f"Failed to save metrics on shutdown: {e}")


def main():
    """Run the Todo MCP server."""
    update_config(parse_args())
    logger = _setup_logging()
    atexit.register(_save_metrics_on_exit)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    # First login for the configured user creates the profile and default categories
    if config.user_id:
        ProvisioningService(engine=engine).provision_user(config.user_id)
    else:
        logger.warning("No user identity configured (TODO_MCP_USER_ID); every tool will be denied")

    try:
        logger.info(f"Starting Todo MCP server (bulk strategy: {config.bulk_strategy.value})")
        TodoMcpServer(engine=engine).run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
