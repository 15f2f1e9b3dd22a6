"""Blocking-with-timeout wrapper for calls to external services.

Registry, scanner, platform, and health-probe calls all go through
``call_with_timeout``.  A call that does not return in time is reported as
``CallTimeout``; the caller treats it as a failure and moves on.  The
worker thread running the abandoned call is left to finish on its own.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from convoy.errors import CallTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

_executor: concurrent.futures.ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


def _get_executor() -> concurrent.futures.ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=32, thread_name_prefix="convoy-call"
            )
        return _executor


def call_with_timeout(
    fn: Callable[..., T],
    *args: Any,
    timeout: float | None,
    operation: str = "",
    **kwargs: Any,
) -> T:
    """Run ``fn(*args, **kwargs)`` and wait at most *timeout* seconds.

    ``timeout=None`` calls *fn* inline with no limit.  Exceptions raised by
    *fn* propagate unchanged.
    """
    if timeout is None:
        return fn(*args, **kwargs)

    future = _get_executor().submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        future.cancel()
        name = operation or getattr(fn, "__qualname__", repr(fn))
        logger.warning("%s timed out after %.1fs", name, timeout)
        raise CallTimeout(f"{name} timed out after {timeout:.1f}s") from None
