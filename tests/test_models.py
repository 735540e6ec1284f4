import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from transfer_service.aggregator import ResultAggregator
from transfer_service.errors import (
    AccessDeniedError,
    ListingError,
    NotFoundError,
    TransferCancelledError,
)
from transfer_service.models import (
    CompletedPart,
    CopyRequest,
    InvalidSessionTransition,
    MultipartSession,
    PresignedUrlSpec,
    RetryPolicy,
    SessionState,
    TransferRequest,
)


def test_transfer_request_validation():
    with pytest.raises(ValueError, match="bucket"):
        TransferRequest(bucket="")
    with pytest.raises(ValueError, match="max_concurrency"):
        TransferRequest(bucket="b", max_concurrency=0)
    with pytest.raises(ValueError, match="part_size"):
        TransferRequest(bucket="b", part_size=0)
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError, match="key"):
        CopyRequest(source_bucket="a", target_bucket="b", key="")


def test_transfer_request_coerces_paths():
    request = TransferRequest(bucket="b", local_path="/tmp/in", files=["a.txt", "sub/b.txt"])

    assert request.local_path == Path("/tmp/in")
    assert request.files == (Path("a.txt"), Path("sub/b.txt"))


def test_session_lifecycle():
    session = MultipartSession(bucket="b", key="k", upload_id="u1")
    assert session.state is SessionState.INITIATED

    with pytest.raises(InvalidSessionTransition):
        session.add_part(CompletedPart(part_number=1, etag="e1"))

    session.transition(SessionState.UPLOADING)
    session.add_part(CompletedPart(part_number=2, etag="e2"))
    session.add_part(CompletedPart(part_number=1, etag="e1"))
    assert [p.part_number for p in session.ordered_parts()] == [1, 2]

    session.transition(SessionState.COMPLETED)
    assert session.is_terminal
    with pytest.raises(InvalidSessionTransition):
        session.transition(SessionState.ABORTED)


def test_session_cannot_skip_uploading():
    session = MultipartSession(bucket="b", key="k", upload_id="u1")

    with pytest.raises(InvalidSessionTransition):
        session.transition(SessionState.COMPLETED)


def test_presigned_url_spec_expires_in():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    spec = PresignedUrlSpec(bucket="b", key="k", expiration=now + timedelta(minutes=5))

    assert spec.method == "get_object"
    assert spec.expires_in(now) == 300
    naive = PresignedUrlSpec(bucket="b", key="k", expiration=datetime(2024, 1, 1, 0, 1))
    assert naive.expires_in(now) == 60


def test_aggregator_reports_in_submission_order():
    aggregator = ResultAggregator()
    aggregator.record_success(2, Path("c"), "c", 30)
    aggregator.record_failure(1, Path("b"), "b", AccessDeniedError("denied", key="b"))
    aggregator.record_success(0, Path("a"), "a", 10)

    result = aggregator.result()

    assert [o.key for o in result.outcomes] == ["a", "b", "c"]
    assert result.total_files == 2
    assert result.total_bytes == 40
    assert result.failed[0].error_kind == "AccessDeniedError"
    assert "denied" in result.failed[0].error_message
    assert aggregator.first_fatal_error() is None


def test_aggregator_prefers_root_cause_over_cancellations():
    aggregator = ResultAggregator()
    aggregator.record_failure(0, None, "a", TransferCancelledError("cancelled"))
    aggregator.record_failure(1, None, "b", NotFoundError("missing"))
    listing_error = ListingError("page failed")
    aggregator.record_failure(2, None, "c", listing_error)

    assert aggregator.first_fatal_error() is listing_error
    assert len(aggregator.errors()) == 3


def test_aggregator_counts_unexpected_errors():
    aggregator = ResultAggregator()
    aggregator.record_failure(0, Path("a"), "a", OSError("disk gone"))

    result = aggregator.result()

    assert result.total_files == 0
    assert result.failed[0].error_kind == "OSError"
