"""
Module for running single network operations under a retry policy.
"""
import logging
from typing import Callable, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .cancellation import CancellationToken
from .errors import TransferError, TransientNetworkError
from .models import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_retryable_error(exception: BaseException) -> bool:
    """Check if an exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the error is retryable, False otherwise
    """
    return isinstance(exception, TransientNetworkError)


def build_retrying(policy: RetryPolicy,
                   cancel_token: Optional[CancellationToken] = None) -> Retrying:
    """Create a tenacity controller for one operation.

    A fresh controller is built per call so concurrent units never share
    retry statistics. With a token, the backoff sleep ends as soon as the
    token is cancelled.
    """
    options = {}
    if cancel_token is not None:
        options['sleep'] = cancel_token.wait
    return Retrying(
        retry=retry_if_exception(is_retryable_error),
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.backoff_multiplier,
            min=policy.backoff_min,
            max=policy.backoff_max
        ),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        reraise=True,
        **options
    )


def call_with_retry(operation: Callable[[], T], policy: RetryPolicy,
                    cancel_token: Optional[CancellationToken] = None,
                    description: str = "operation") -> T:
    """Run an idempotent operation, retrying transient failures.

    Cancellation is checked before every attempt. When the budget is
    exhausted the last error is re-raised with its attempt count filled in.

    Args:
        operation: Zero-argument callable performing one network call
        policy: Retry budget and backoff
        cancel_token: Optional token checked before each attempt
        description: Human readable name used in log messages

    Returns:
        Whatever the operation returns
    """
    attempts = 0

    def attempt() -> T:
        nonlocal attempts
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        attempts += 1
        return operation()

    try:
        return build_retrying(policy, cancel_token)(attempt)
    except TransferError as e:
        if e.attempts is None:
            e.attempts = attempts
        if attempts > 1:
            logger.warning(f"{description} failed after {attempts} attempts: {e}")
        raise
