"""
Background continuations for work the caller shouldn't wait on.

An on-demand refresh answers immediately and hands the sync/analysis to
a worker thread. Every submission names an error hook; a failure is
handed to the hook and is never silently lost.
"""

import concurrent.futures
import logging
from typing import Any, Callable, Optional

from .errors import log_exception

logger = logging.getLogger(__name__)

ErrorHook = Callable[[BaseException], None]


def log_and_drop(exc: BaseException) -> None:
    """Default error hook: log it, write the traceback to the error log."""
    logger.error("Background task failed: %s", exc)
    if isinstance(exc, Exception):
        log_exception(exc, "background task")


class BackgroundRunner:
    """Runs callables on a small thread pool, one at a time by default."""

    def __init__(self, max_workers: int = 1):
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="lifelog-bg",
        )

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        on_error: ErrorHook = log_and_drop,
        name: Optional[str] = None,
        **kwargs: Any,
    ) -> concurrent.futures.Future:
        """
        Schedule fn(*args, **kwargs).

        Returns the Future. If fn raises, on_error receives the exception
        once the task finishes; the Future still carries it too.
        """
        label = name or getattr(fn, "__name__", "task")

        def _done(future: concurrent.futures.Future) -> None:
            if future.cancelled():
                logger.info("Background %s cancelled", label)
                return
            exc = future.exception()
            if exc is None:
                logger.debug("Background %s finished", label)
                return
            try:
                on_error(exc)
            except Exception as hook_error:
                logger.error("Error hook for %s failed: %s", label, hook_error)

        logger.debug("Submitting background %s", label)
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(_done)
        return future

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; with wait=True, let queued tasks finish."""
        self._executor.shutdown(wait=wait)
