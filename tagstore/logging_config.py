"""
Logging configuration for tagstore.

The library itself only creates module loggers under ``tagstore``; these
helpers are for applications and the CLI.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

_LIBRARY_LOGGERS = ("pymongo", "pymongo.command", "pymongo.connection", "pymongo.serverSelection")


def configure_quiet_mode(quiet: bool = True):
    """
    Keep driver chatter out of the output.

    Args:
        quiet: If True, only warnings and above from pymongo. If False,
            leave pymongo loggers at their defaults.
    """
    level = logging.WARNING if quiet else logging.NOTSET
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("tagstore").setLevel(logging.DEBUG)
    # pymongo's own DEBUG output is one line per command; INFO is enough
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)


def configure_ops_log(log_dir):
    """Configure a persistent operations log.

    Writes to {log_dir}/tagstore-ops.log using a rotating file handler
    (1MB max, 3 backups). Retry attempts and index changes end up here.
    Returns the handler so it can be removed later.
    """
    log_path = Path(log_dir) / "tagstore-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    tagstore_logger = logging.getLogger("tagstore")
    tagstore_logger.addHandler(handler)
    # Ensure INFO gets through even in quiet mode
    if tagstore_logger.level == logging.NOTSET or tagstore_logger.level > logging.INFO:
        tagstore_logger.setLevel(logging.INFO)

    return handler
