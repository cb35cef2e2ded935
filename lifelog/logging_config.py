"""
Logging configuration for lifelog.

HTTP client libraries are quiet by default; LIFELOG_VERBOSE=1 or --verbose
turns on debug output.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "urllib3")


def configure_quiet_mode(quiet: bool = True):
    """
    Silence chatty third-party loggers.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    level = logging.WARNING if quiet else logging.INFO
    if quiet:
        warnings.filterwarnings("ignore", category=DeprecationWarning)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("lifelog", *_NOISY_LOGGERS):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path):
    """Configure a persistent operations log for a lifelog store.

    Writes to {store_path}/lifelog-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(store_path) / "lifelog-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    lifelog_logger = logging.getLogger("lifelog")
    lifelog_logger.addHandler(handler)
    # Ensure the lifelog logger allows INFO through even in quiet mode
    if lifelog_logger.level == logging.NOTSET or lifelog_logger.level > logging.INFO:
        lifelog_logger.setLevel(logging.INFO)

    return handler
