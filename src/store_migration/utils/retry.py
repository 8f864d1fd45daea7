"""Retry policies built on tenacity.

Two independent policies live here:

- request-level throttle retry, used by the store client when the API
  answers 429. It waits for the server-advised ``Retry-After`` and never
  retries anything other than throttling;
- job-level retry, used by the scheduler around a whole module job, with
  exponential backoff between attempts.
"""

from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from store_migration.client.exceptions import RateLimitError
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)


class wait_retry_after(wait_base):  # noqa: N801 - tenacity naming convention
    """Wait for the duration advised by a RateLimitError, or a default."""

    def __init__(self, default: float = 2.0):
        self.default = default

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            return max(float(exc.retry_after), 0.0)
        return self.default


def _log_throttle_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        "rate_limit_retrying",
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
    )


def throttle_retrying(max_attempts: int = 3, default_retry_after: float = 2.0) -> AsyncRetrying:
    """Build the retry controller for throttled API calls.

    Args:
        max_attempts: Total attempts including the first one
        default_retry_after: Seconds to wait when the response has no Retry-After

    Returns:
        AsyncRetrying that retries only on RateLimitError and re-raises it
        once attempts are exhausted
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_retry_after(default_retry_after),
        retry=retry_if_exception_type(RateLimitError),
        before_sleep=_log_throttle_retry,
        reraise=True,
    )


def job_retrying(
    max_attempts: int = 3,
    backoff_base: float = 5.0,
    never_retry: tuple[type[BaseException], ...] = (),
    **context: Any,
) -> AsyncRetrying:
    """Build the retry controller for a module job.

    The delay before attempt ``n`` is ``backoff_base * 2 ** (n - 2)`` seconds,
    so with the default base the waits are 5s then 10s.

    Args:
        max_attempts: Total attempts including the first one
        backoff_base: Delay in seconds before the first retry
        never_retry: Exception types that fail the job immediately
        **context: Extra fields added to the retry log entry

    Returns:
        AsyncRetrying controller
    """

    def _log_job_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "job_retrying",
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            error=str(exc),
            **context,
        )

    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_base, min=0, max=3600),
        retry=retry_if_exception_type(Exception) & retry_if_not_exception_type(never_retry),
        before_sleep=_log_job_retry,
        reraise=True,
    )
