"""
Exception taxonomy and error logging for lifelog.

Per-entry and per-candidate failures are isolated by their callers; only
credential-level and whole-loop failures reach the invoking command.
Full stack traces go to an error log while users see a clean message.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class LifelogError(Exception):
    """Base class for all lifelog errors."""


class ProviderError(LifelogError):
    """The lifelog provider API could not be read."""


class TransientNetworkError(ProviderError):
    """5xx or transport failure. Retried with backoff before surfacing."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TerminalClientError(ProviderError):
    """4xx response. Never retried; aborts the current fetch loop."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class AuthConfigurationError(LifelogError):
    """A required credential is missing or was rejected.

    Callers treat this as "skip, don't crash".
    """


class MalformedResponseError(LifelogError):
    """A response could not be parsed into the expected JSON shape."""

    def __init__(self, message: str, preview: str = ""):
        super().__init__(message)
        self.preview = preview


class RateLimitError(LifelogError):
    """The remote service is rate limiting us. Stop, keep progress, retry next run."""


class InferenceError(LifelogError):
    """An inference provider call failed for a reason other than rate limiting."""


class PartialBatchFailure(LifelogError):
    """A segment batch insert failed after earlier batches were committed.

    The entry keeps a partial segment set until the next successful sync.
    """

    def __init__(self, entry_id: str, inserted: int, total: int, cause: Exception):
        super().__init__(
            f"Segment replace for {entry_id} stopped after {inserted}/{total} rows: {cause}"
        )
        self.entry_id = entry_id
        self.inserted = inserted
        self.total = total
        self.cause = cause


def _error_log_path() -> Path:
    """Resolve error log path, respecting LIFELOG_STORE_PATH."""
    store = os.environ.get("LIFELOG_STORE_PATH")
    if store:
        return Path(store) / "lifelog-errors.log"
    return Path.home() / ".lifelog" / "lifelog-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
