"""
Module for multipart uploads of large files.
"""
import hashlib
import logging
import math
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .cancellation import CancellationToken
from .client import ObjectStoreClient
from .errors import ObjectStoreError, PartUploadError, TransferCancelledError, TransferError
from .models import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_PART_SIZE,
    MiB,
    CompletedPart,
    MultipartSession,
    RetryPolicy,
    SessionState,
)
from .retry import call_with_retry

logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * MiB
MAX_PART_SIZE = 5 * 1024 * MiB
MAX_PARTS = 10000


def compute_part_size(file_size: int, preferred: int = DEFAULT_PART_SIZE,
                      min_part_size: int = MIN_PART_SIZE, max_parts: int = MAX_PARTS,
                      max_part_size: int = MAX_PART_SIZE) -> int:
    """Choose a part size that keeps the part count within the store limit.

    Args:
        file_size: Size of the file in bytes
        preferred: Requested part size
        min_part_size: Smallest part the store accepts, except the last one
        max_parts: Maximum number of parts per upload
        max_part_size: Largest part the store accepts

    Returns:
        Part size in bytes

    Raises:
        ObjectStoreError: If the file cannot fit into max_parts parts
    """
    part_size = max(preferred, min_part_size)
    if math.ceil(file_size / part_size) > max_parts:
        part_size = math.ceil(file_size / max_parts)
    if part_size > max_part_size:
        raise ObjectStoreError(
            f"File of {file_size} bytes exceeds the multipart limit of "
            f"{max_parts} parts of {max_part_size} bytes"
        )
    return part_size


def partition(file_size: int, part_size: int) -> List[Tuple[int, int, int]]:
    """Split a file into (part_number, offset, length) ranges, 1-based."""
    ranges = []
    offset = 0
    part_number = 1
    while offset < file_size:
        length = min(part_size, file_size - offset)
        ranges.append((part_number, offset, length))
        offset += length
        part_number += 1
    return ranges


class MultipartUploader:
    """Uploads one large file as an all-or-nothing multipart session."""

    def __init__(self, client: ObjectStoreClient, retry_policy: Optional[RetryPolicy] = None,
                 max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
                 part_size: int = DEFAULT_PART_SIZE,
                 min_part_size: int = MIN_PART_SIZE,
                 max_parts: int = MAX_PARTS,
                 cancel_token: Optional[CancellationToken] = None):
        """Initialize the multipart uploader.

        Args:
            client: Object store client
            retry_policy: Retry budget applied to each part independently
            max_concurrency: Maximum number of parts in flight
            part_size: Preferred size of each part in bytes
            min_part_size: Store minimum for every part but the last
            max_parts: Store maximum part count
            cancel_token: Token checked before each part attempt
        """
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrency = max_concurrency
        self.part_size = part_size
        self.min_part_size = min_part_size
        self.max_parts = max_parts
        self.cancel_token = cancel_token or CancellationToken()

    def upload(self, file_path: Path, bucket: str, key: str) -> MultipartSession:
        """Upload a file through a multipart session.

        Args:
            file_path: Local file to upload
            bucket: Target bucket
            key: Target key

        Returns:
            The COMPLETED session

        Raises:
            PartUploadError: If any part or the completion fails for good
            TransferCancelledError: If the transfer was cancelled
        """
        file_size = file_path.stat().st_size
        part_size = compute_part_size(file_size, self.part_size, self.min_part_size, self.max_parts)
        ranges = partition(file_size, part_size)

        upload_id = call_with_retry(
            lambda: self.client.initiate_multipart(bucket, key),
            self.retry_policy,
            cancel_token=self.cancel_token,
            description=f"Initiating multipart upload of s3://{bucket}/{key}"
        )
        session = MultipartSession(bucket=bucket, key=key, upload_id=upload_id)
        logger.info(
            f"Started multipart upload {upload_id} for {file_path} to s3://{bucket}/{key} "
            f"({len(ranges)} parts of {part_size} bytes)"
        )

        with self._open_session(session):
            for part in self._upload_parts(session, file_path, ranges):
                session.add_part(part)
            self._complete(session)
        return session

    @contextmanager
    def _open_session(self, session: MultipartSession) -> Iterator[MultipartSession]:
        """Run the upload body; a session not completed on exit is aborted."""
        session.transition(SessionState.UPLOADING)
        try:
            yield session
        except BaseException:
            if not session.is_terminal:
                self._abort(session)
            raise

    def _upload_parts(self, session: MultipartSession, file_path: Path,
                      ranges: List[Tuple[int, int, int]]) -> List[CompletedPart]:
        parts_token = self.cancel_token.child()
        workers = max(1, min(self.max_concurrency, len(ranges)))

        with ThreadPoolExecutor(max_workers=workers,
                                thread_name_prefix=f"part-{session.upload_id[:8]}") as executor:
            futures = {
                executor.submit(self._upload_part, session, file_path, number, offset,
                                length, parts_token): number
                for number, offset, length in ranges
            }
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            failed = [f for f in done if f.exception() is not None]
            if failed:
                # Stop the siblings, then let in-flight parts drain before aborting
                parts_token.cancel()
                for future in pending:
                    future.cancel()
                wait(pending)
                self._raise_part_failure(session, failed, futures)

        return [future.result() for future in futures]

    def _raise_part_failure(self, session: MultipartSession, failed, futures) -> None:
        first = min(failed, key=lambda f: futures[f])
        error = first.exception()
        # Parts stopped by a sibling's failure report cancellation; prefer the real cause
        for future in sorted(failed, key=lambda f: futures[f]):
            if not isinstance(future.exception(), TransferCancelledError):
                first, error = future, future.exception()
                break

        if isinstance(error, TransferCancelledError) and self.cancel_token.cancelled:
            raise error
        if not isinstance(error, TransferError):
            raise error

        raise PartUploadError(
            f"Part {futures[first]} failed: {getattr(error, 'message', error)}",
            bucket=session.bucket,
            key=session.key,
            attempts=error.attempts,
            part_number=futures[first],
            upload_id=session.upload_id
        ) from error

    def _upload_part(self, session: MultipartSession, file_path: Path, part_number: int,
                     offset: int, length: int, token: CancellationToken) -> CompletedPart:
        """Upload a single part of a multipart upload with retries."""
        def send() -> CompletedPart:
            with open(file_path, 'rb') as f:
                f.seek(offset)
                data = f.read(length)
            if len(data) != length:
                raise ObjectStoreError(
                    f"Short read of part {part_number}: {len(data)} of {length} bytes "
                    f"(file changed during upload?)",
                    bucket=session.bucket,
                    key=session.key
                )
            md5 = hashlib.md5(data).hexdigest()
            etag = self.client.upload_part(
                session.bucket, session.key, session.upload_id, part_number, data, md5
            )
            return CompletedPart(part_number=part_number, etag=etag, md5=md5)

        part = call_with_retry(
            send,
            self.retry_policy,
            cancel_token=token,
            description=f"Uploading part {part_number} of {session.upload_id}"
        )
        logger.debug(f"Uploaded part {part_number} of {session.upload_id} ({length} bytes)")
        return part

    def _complete(self, session: MultipartSession) -> None:
        parts = session.ordered_parts()
        try:
            call_with_retry(
                lambda: self.client.complete_multipart(
                    session.bucket, session.key, session.upload_id, parts
                ),
                self.retry_policy,
                cancel_token=self.cancel_token,
                description=f"Completing multipart upload {session.upload_id}"
            )
        except TransferCancelledError:
            raise
        except TransferError as e:
            raise PartUploadError(
                f"Failed to complete multipart upload: {e.message}",
                bucket=session.bucket,
                key=session.key,
                attempts=e.attempts,
                upload_id=session.upload_id
            ) from e

        session.transition(SessionState.COMPLETED)
        logger.info(
            f"Completed multipart upload {session.upload_id} to "
            f"s3://{session.bucket}/{session.key} with {len(parts)} parts"
        )

    def _abort(self, session: MultipartSession) -> None:
        """Best-effort abort; the session ends ABORTED either way."""
        try:
            self.client.abort_multipart(session.bucket, session.key, session.upload_id)
            session.abort_confirmed = True
            logger.info(f"Aborted multipart upload {session.upload_id} for s3://{session.bucket}/{session.key}")
        except Exception as e:
            logger.error(
                f"Error aborting multipart upload {session.upload_id}: {e}. "
                f"It will be reclaimed by the stale upload reaper"
            )
        session.transition(SessionState.ABORTED)
