"""Bounded exponential backoff for transient failures of external calls."""

from __future__ import annotations

import logging
from collections.abc import Callable

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from convoy.models.config import RetryPolicy

logger = logging.getLogger(__name__)


def build_retrying(
    policy: RetryPolicy,
    *,
    operation: str,
    retry_on: tuple[type[BaseException], ...],
    sleep: Callable[[float], None] | None = None,
) -> Retrying:
    """Return a ``Retrying`` controller for *operation*.

    Only exceptions in *retry_on* are retried; anything else propagates on the
    first attempt.  After the last attempt tenacity raises ``RetryError``, which
    callers translate into their own taxonomy error.
    """

    def _before_sleep(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s attempt %d/%d failed (%r); retrying in %.2fs",
            operation,
            retry_state.attempt_number,
            policy.max_attempts,
            exc,
            delay,
        )

    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep

    return Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.backoff_base_seconds,
            max=policy.backoff_max_seconds,
        ),
        retry=retry_if_exception_type(retry_on),
        reraise=False,
        before_sleep=_before_sleep,
        **kwargs,
    )
