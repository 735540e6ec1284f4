import threading
import time

import pytest
from unittest.mock import Mock

from transfer_service.cancellation import CancellationToken
from transfer_service.errors import (
    AccessDeniedError,
    TransferCancelledError,
    TransferError,
    TransientNetworkError,
)
from transfer_service.models import RetryPolicy
from transfer_service.retry import call_with_retry, is_retryable_error


def test_is_retryable_error():
    assert is_retryable_error(TransientNetworkError("timeout"))
    assert not is_retryable_error(AccessDeniedError("denied"))
    assert not is_retryable_error(ValueError("bad"))


def test_retries_transient_failures(fast_retry):
    operation = Mock(side_effect=[TransientNetworkError("timeout"), "ok"])

    assert call_with_retry(operation, fast_retry) == "ok"
    assert operation.call_count == 2


def test_exhausted_budget_reraises_with_attempts(fast_retry):
    operation = Mock(side_effect=TransientNetworkError("timeout", bucket="b", key="k"))

    with pytest.raises(TransientNetworkError) as exc_info:
        call_with_retry(operation, fast_retry)

    assert operation.call_count == 3
    assert exc_info.value.attempts == 3
    assert "attempts=3" in str(exc_info.value)


def test_permanent_failure_is_not_retried(fast_retry):
    operation = Mock(side_effect=AccessDeniedError("denied"))

    with pytest.raises(AccessDeniedError) as exc_info:
        call_with_retry(operation, fast_retry)

    assert operation.call_count == 1
    assert exc_info.value.attempts == 1


def test_cancelled_token_prevents_attempt(fast_retry):
    token = CancellationToken()
    token.cancel()
    operation = Mock(return_value="ok")

    with pytest.raises(TransferCancelledError):
        call_with_retry(operation, fast_retry, token)

    operation.assert_not_called()


def test_cancellation_between_attempts(fast_retry):
    token = CancellationToken()

    def operation():
        token.cancel()
        raise TransientNetworkError("timeout")

    with pytest.raises(TransferCancelledError):
        call_with_retry(operation, fast_retry, token)


def test_child_token_follows_parent():
    parent = CancellationToken()
    child = parent.child()
    sibling = parent.child()

    child.cancel()
    assert child.cancelled
    assert not parent.cancelled
    assert not sibling.cancelled

    parent.cancel()
    assert sibling.cancelled


def test_error_string_carries_context():
    error = TransferError("boom", bucket="b", key="k", attempts=2)

    assert str(error) == "boom (bucket=b, key=k, attempts=2)"
    assert str(TransferError("plain")) == "plain"
    assert error.kind == "TransferError"


def test_cancellation_interrupts_backoff():
    """Test that a cancelled token ends the backoff sleep early."""
    slow = RetryPolicy(max_attempts=3, backoff_multiplier=0, backoff_min=5, backoff_max=5)
    token = CancellationToken()
    operation = Mock(side_effect=TransientNetworkError("timeout"))
    timer = threading.Timer(0.1, token.cancel)

    started = time.monotonic()
    timer.start()
    try:
        with pytest.raises(TransferCancelledError):
            call_with_retry(operation, slow, token)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 2
    assert operation.call_count == 1


def test_parent_cancellation_wakes_child():
    parent = CancellationToken()
    grandchild = parent.child().child()
    timer = threading.Timer(0.1, parent.cancel)

    started = time.monotonic()
    timer.start()
    try:
        assert grandchild.wait(5)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 2
    assert grandchild.cancelled


def test_child_of_cancelled_token_starts_cancelled():
    parent = CancellationToken()
    parent.cancel()

    assert parent.child().wait(0)
