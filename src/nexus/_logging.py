"""Logging configuration for nexus.

Usage in other modules:
    import logging
    log = logging.getLogger(__name__)

The log level can be configured via the NEXUS_LOG_LEVEL environment variable:
    - DEBUG: Skipped folders, unresolved references, per-request detail
    - INFO: Sync progress and pushes (default)
    - WARNING: Remote failures after a successful local write
    - ERROR: Errors that prevented an operation
"""

import logging
import os
import sys

_quiet = False


def configure_logging() -> None:
    """Configure logging for the nexus package.

    Call this once at application startup (cli.py or server.py).
    Subsequent calls are no-ops.
    """
    root_logger = logging.getLogger("nexus")

    if root_logger.handlers:
        return

    level_name = os.environ.get("NEXUS_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    if _quiet:
        level = max(level, logging.ERROR)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="[%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Avoid duplicate messages through the root logger
    root_logger.propagate = False


def set_quiet_mode(quiet: bool) -> None:
    """Only show errors on the nexus logger."""
    global _quiet
    _quiet = quiet
    root_logger = logging.getLogger("nexus")
    if quiet:
        root_logger.setLevel(logging.ERROR)
        for handler in root_logger.handlers:
            handler.setLevel(logging.ERROR)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name."""
    return logging.getLogger(name)
