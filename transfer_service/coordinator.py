"""
Module for coordinating multi-file transfers between local disk and a bucket.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .aggregator import ResultAggregator
from .cancellation import CancellationToken
from .client import MAX_DELETE_BATCH, BoundedClient, ObjectStoreClient
from .errors import (
    IntegrityMismatchError,
    NotFoundError,
    PartialDeleteError,
    TransferError,
    is_fatal,
)
from .lister import DirectoryLister
from .models import (
    CopyRequest,
    DeleteFailure,
    RetryPolicy,
    TransferRequest,
    TransferResult,
)
from .paths import (
    SEPARATOR,
    directory_prefix,
    local_path,
    relative_key,
    relative_remote_key,
    remote_key,
)
from .retry import call_with_retry
from .scanner import FileScanner
from .uploader import MAX_PARTS, MIN_PART_SIZE, MultipartUploader, partition

logger = logging.getLogger(__name__)


class Phase(Enum):
    BUILD_WORK_SET = "build_work_set"
    DISPATCH = "dispatch"
    COLLECT = "collect"
    DONE = "done"


@dataclass(frozen=True)
class WorkItem:
    """One unit of a transfer job."""
    key: str
    local_path: Optional[Path] = None


class TransferJob:
    """State of one coordinator invocation."""

    def __init__(self, name: str, bucket: str, client: ObjectStoreClient,
                 max_concurrency: int, cancel_token: Optional[CancellationToken]):
        self.name = name
        self.bucket = bucket
        self.max_concurrency = max_concurrency
        self.cancel_token = (cancel_token or CancellationToken()).child()
        self.client = BoundedClient(client, max_concurrency, self.cancel_token)
        self.aggregator = ResultAggregator()
        self.phase = Phase.BUILD_WORK_SET

    def advance(self, phase: Phase) -> None:
        logger.debug(f"{self.name} s3://{self.bucket}: {self.phase.value} -> {phase.value}")
        self.phase = phase


Unit = Callable[[TransferJob, WorkItem], int]


class TransferCoordinator:
    """Coordinates uploads, downloads, copies and deletes against one store."""

    def __init__(self, client: ObjectStoreClient, scanner: Optional[FileScanner] = None,
                 min_part_size: int = MIN_PART_SIZE, max_parts: int = MAX_PARTS):
        """Initialize the transfer coordinator.

        Args:
            client: Object store client shared by all invocations
            scanner: Local directory walker
            min_part_size: Smallest multipart part the store accepts
            max_parts: Largest part count the store accepts
        """
        self.client = client
        self.scanner = scanner or FileScanner()
        self.min_part_size = min_part_size
        self.max_parts = max_parts

    # Uploads

    def upload_file(self, request: TransferRequest,
                    cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        """Upload request.local_path to the key named by request.key_prefix."""
        if not request.key_prefix:
            raise ValueError("key_prefix must name the target key")
        source = self._require_local_path(request)
        job = self._start_job("upload_file", request.bucket, request.max_concurrency, cancel_token)
        items = [WorkItem(key=request.key_prefix, local_path=source)]
        return self._dispatch(job, items, self._upload_unit(request), raise_on_failure=True)

    def upload_file_list(self, request: TransferRequest,
                         cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        """Upload request.files, keyed by their path relative to request.local_path."""
        root = self._require_local_path(request)
        if request.files is None:
            raise ValueError("files must be set for a file list upload")
        job = self._start_job("upload_file_list", request.bucket, request.max_concurrency, cancel_token)
        items = []
        for file_path in request.files:
            relative = relative_key(root, file_path)
            items.append(WorkItem(key=remote_key(request.key_prefix, relative),
                                  local_path=local_path(root, relative)))
        return self._dispatch(job, items, self._upload_unit(request))

    def upload_directory(self, request: TransferRequest,
                         cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        """Upload every file under request.local_path, recursively."""
        root = self._require_local_path(request)
        job = self._start_job("upload_directory", request.bucket, request.max_concurrency, cancel_token)
        items = [
            WorkItem(key=remote_key(request.key_prefix, found.file_path),
                     local_path=local_path(root, found.file_path))
            for found in self.scanner.scan_folder(root)
        ]
        return self._dispatch(job, items, self._upload_unit(request))

    def _upload_unit(self, request: TransferRequest) -> Unit:
        def upload(job: TransferJob, item: WorkItem) -> int:
            size = item.local_path.stat().st_size
            if size > request.multipart_threshold:
                uploader = MultipartUploader(
                    job.client,
                    request.retry,
                    max_concurrency=request.max_concurrency,
                    part_size=request.part_size,
                    min_part_size=self.min_part_size,
                    max_parts=self.max_parts,
                    cancel_token=job.cancel_token
                )
                uploader.upload(item.local_path, request.bucket, item.key)
                return size

            def put():
                with open(item.local_path, 'rb') as f:
                    return job.client.put_object(request.bucket, item.key, f, size)

            call_with_retry(put, request.retry, job.cancel_token,
                            description=f"Uploading {item.local_path}")
            logger.debug(f"Uploaded {item.local_path} to s3://{request.bucket}/{item.key}")
            return size

        return upload

    # Downloads

    def download_file(self, request: TransferRequest,
                      cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        """Download the key named by request.key_prefix to request.local_path."""
        if not request.key_prefix:
            raise ValueError("key_prefix must name the source key")
        if request.local_path is None:
            raise ValueError("local_path must be set")
        job = self._start_job("download_file", request.bucket, request.max_concurrency, cancel_token)
        items = [WorkItem(key=request.key_prefix, local_path=request.local_path)]
        return self._dispatch(job, items, self._download_unit(request), raise_on_failure=True)

    def download_directory(self, request: TransferRequest,
                           cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        """Download every object under request.key_prefix into request.local_path.

        Local paths mirror the keys relative to the prefix. Keys ending in
        '/', directory markers included, are not downloaded.
        """
        if request.local_path is None:
            raise ValueError("local_path must be set")
        job = self._start_job("download_directory", request.bucket, request.max_concurrency, cancel_token)
        prefix = directory_prefix(request.key_prefix)
        listed = DirectoryLister(job.client, request.retry, job.cancel_token).list(
            request.bucket, prefix, ignore_zero_byte_markers=True
        )
        items = []
        for found in listed:
            if found.file_path.endswith(SEPARATOR):
                logger.warning(f"Skipping s3://{request.bucket}/{found.file_path}: "
                               f"a key ending in {SEPARATOR} cannot be stored as a file")
                continue
            relative = relative_remote_key(prefix, found.file_path)
            items.append(WorkItem(key=found.file_path,
                                  local_path=local_path(request.local_path, relative)))
        return self._dispatch(job, items, self._download_unit(request))

    def _download_unit(self, request: TransferRequest) -> Unit:
        def download(job: TransferJob, item: WorkItem) -> int:
            bucket = request.bucket
            metadata = call_with_retry(
                lambda: job.client.head_object(bucket, item.key),
                request.retry,
                job.cancel_token,
                description=f"Fetching metadata of s3://{bucket}/{item.key}"
            )
            if metadata is None:
                raise NotFoundError("Object does not exist", bucket=bucket, key=item.key)

            target = item.local_path
            target.parent.mkdir(parents=True, exist_ok=True)
            partial = target.with_name(target.name + '.part')
            ranges = partition(metadata.size_bytes, request.part_size) \
                if metadata.size_bytes > request.multipart_threshold else [(1, None, None)]

            try:
                with open(partial, 'wb') as f:
                    for number, offset, length in ranges:
                        byte_range = None if offset is None else (offset, offset + length - 1)

                        def fetch(byte_range=byte_range) -> bytes:
                            return job.client.get_object(bucket, item.key, byte_range).read()

                        f.write(call_with_retry(
                            fetch,
                            request.retry,
                            job.cancel_token,
                            description=f"Downloading part {number} of s3://{bucket}/{item.key}"
                        ))

                written = partial.stat().st_size
                if written != metadata.size_bytes:
                    raise IntegrityMismatchError(
                        f"Downloaded {written} bytes but object has {metadata.size_bytes}",
                        bucket=bucket,
                        key=item.key
                    )
                os.replace(partial, target)
            except BaseException:
                if partial.exists():
                    partial.unlink()
                raise

            logger.debug(f"Downloaded s3://{bucket}/{item.key} to {target}")
            return written

        return download

    # Copy

    def copy_file(self, request: CopyRequest,
                  cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        """Copy request.key from the source bucket to the same key in the target bucket.

        The source object is left in place.
        """
        job = self._start_job("copy_file", request.target_bucket, request.max_concurrency, cancel_token)

        def copy(job: TransferJob, item: WorkItem) -> int:
            metadata = call_with_retry(
                lambda: job.client.head_object(request.source_bucket, item.key),
                request.retry,
                job.cancel_token,
                description=f"Fetching metadata of s3://{request.source_bucket}/{item.key}"
            )
            if metadata is None:
                raise NotFoundError("Source object does not exist",
                                    bucket=request.source_bucket, key=item.key)
            call_with_retry(
                lambda: job.client.copy_object(request.source_bucket, item.key,
                                               request.target_bucket, item.key),
                request.retry,
                job.cancel_token,
                description=f"Copying {item.key} to s3://{request.target_bucket}"
            )
            return metadata.size_bytes

        return self._dispatch(job, [WorkItem(key=request.key)], copy, raise_on_failure=True)

    # Deletes

    def delete_file(self, request: TransferRequest,
                    cancel_token: Optional[CancellationToken] = None) -> None:
        """Delete the key named by request.key_prefix."""
        if not request.key_prefix:
            raise ValueError("key_prefix must name the key to delete")
        job = self._start_job("delete_file", request.bucket, 1, cancel_token)
        call_with_retry(
            lambda: job.client.delete_object(request.bucket, request.key_prefix),
            request.retry,
            job.cancel_token,
            description=f"Deleting s3://{request.bucket}/{request.key_prefix}"
        )
        logger.info(f"Deleted s3://{request.bucket}/{request.key_prefix}")

    def delete_file_list(self, request: TransferRequest,
                         cancel_token: Optional[CancellationToken] = None) -> None:
        """Delete the keys formed by request.key_prefix and each of request.files."""
        if request.files is None:
            raise ValueError("files must be set for a file list delete")
        root = request.local_path or Path('.')
        keys = [remote_key(request.key_prefix, relative_key(root, f)) for f in request.files]
        job = self._start_job("delete_file_list", request.bucket, request.max_concurrency, cancel_token)
        self._delete_keys(job, keys, request.retry)

    def delete_directory(self, request: TransferRequest,
                         cancel_token: Optional[CancellationToken] = None) -> None:
        """Delete every key under the directory prefix, markers included.

        Raises:
            ValueError: If the prefix is the bucket root
            PartialDeleteError: If some keys could not be deleted
        """
        prefix = directory_prefix(request.key_prefix)
        if not prefix:
            raise ValueError("Deleting from the root directory is not allowed")
        job = self._start_job("delete_directory", request.bucket, request.max_concurrency, cancel_token)
        listed = DirectoryLister(job.client, request.retry, job.cancel_token).list(
            request.bucket, prefix, ignore_zero_byte_markers=False
        )
        self._delete_keys(job, [found.file_path for found in listed], request.retry)

    def _delete_keys(self, job: TransferJob, keys: Sequence[str], retry: RetryPolicy) -> None:
        failures: List[DeleteFailure] = []
        for start in range(0, len(keys), MAX_DELETE_BATCH):
            batch = list(keys[start:start + MAX_DELETE_BATCH])
            try:
                failures.extend(call_with_retry(
                    lambda: job.client.delete_objects(job.bucket, batch),
                    retry,
                    job.cancel_token,
                    description=f"Deleting {len(batch)} keys from s3://{job.bucket}"
                ))
            except TransferError as e:
                if is_fatal(e):
                    raise
                logger.error(f"Error deleting batch of {len(batch)} keys: {e}")
                failures.extend(DeleteFailure(key=key, code=e.kind, message=e.message)
                                for key in batch)

        job.advance(Phase.DONE)
        if failures:
            raise PartialDeleteError(
                f"Failed to delete {len(failures)} of {len(keys)} keys",
                failures,
                bucket=job.bucket
            )
        logger.info(f"Deleted {len(keys)} keys from s3://{job.bucket}")

    # Single object helpers

    def validate_file(self, request: TransferRequest, expected_size: int,
                      cancel_token: Optional[CancellationToken] = None) -> None:
        """Check that the key named by request.key_prefix exists with the expected size.

        Raises:
            IntegrityMismatchError: If the object is missing or has another size
        """
        job = self._start_job("validate_file", request.bucket, 1, cancel_token)
        metadata = call_with_retry(
            lambda: job.client.head_object(request.bucket, request.key_prefix),
            request.retry,
            job.cancel_token,
            description=f"Fetching metadata of s3://{request.bucket}/{request.key_prefix}"
        )
        if metadata is None:
            raise IntegrityMismatchError("Object does not exist",
                                         bucket=request.bucket, key=request.key_prefix)
        if metadata.size_bytes != expected_size:
            raise IntegrityMismatchError(
                f"Object size {metadata.size_bytes} does not match expected size {expected_size}",
                bucket=request.bucket,
                key=request.key_prefix
            )

    def create_directory(self, request: TransferRequest,
                         cancel_token: Optional[CancellationToken] = None) -> None:
        """Create a zero-byte directory marker at request.key_prefix + '/'."""
        key = directory_prefix(request.key_prefix)
        if not key:
            raise ValueError("key_prefix must name the directory to create")
        job = self._start_job("create_directory", request.bucket, 1, cancel_token)
        call_with_retry(
            lambda: job.client.put_object(request.bucket, key, b'', 0),
            request.retry,
            job.cancel_token,
            description=f"Creating directory marker s3://{request.bucket}/{key}"
        )
        logger.info(f"Created directory marker s3://{request.bucket}/{key}")

    # Job plumbing

    def _start_job(self, name: str, bucket: str, max_concurrency: int,
                   cancel_token: Optional[CancellationToken]) -> TransferJob:
        return TransferJob(name, bucket, self.client, max_concurrency, cancel_token)

    @staticmethod
    def _require_local_path(request: TransferRequest) -> Path:
        if request.local_path is None:
            raise ValueError("local_path must be set")
        if not request.local_path.exists():
            raise ValueError(f"Local path does not exist: {request.local_path}")
        return request.local_path

    def _dispatch(self, job: TransferJob, items: List[WorkItem], unit: Unit,
                  raise_on_failure: bool = False) -> TransferResult:
        """Run every item on the worker pool and collect the outcomes.

        A failing item is recorded and its siblings keep running, unless the
        failure is fatal for the job, in which case the remaining items are
        cancelled and the error is raised once all units have returned.
        """
        job.advance(Phase.DISPATCH)
        logger.info(f"{job.name}: {len(items)} items for s3://{job.bucket}")

        with ThreadPoolExecutor(max_workers=job.max_concurrency,
                                thread_name_prefix=job.name) as executor:
            future_to_index = {
                executor.submit(unit, job, item): index
                for index, item in enumerate(items)
            }
            job.advance(Phase.COLLECT)

            for future in as_completed(future_to_index):
                index = future_to_index[future]
                item = items[index]
                try:
                    job.aggregator.record_success(index, item.local_path, item.key, future.result())
                except TransferError as e:
                    logger.error(f"Error transferring {item.local_path or item.key}: {e}")
                    job.aggregator.record_failure(index, item.local_path, item.key, e)
                    if is_fatal(e):
                        job.cancel_token.cancel()
                except Exception as e:
                    logger.exception(f"Unexpected error transferring {item.local_path or item.key}: {e}")
                    job.aggregator.record_failure(index, item.local_path, item.key, e)

        job.advance(Phase.DONE)
        result = job.aggregator.result()

        fatal = job.aggregator.first_fatal_error()
        if fatal is not None:
            raise fatal
        if raise_on_failure and result.failed:
            raise job.aggregator.errors()[0]

        logger.info(
            f"Completed {job.name}: {len(result.succeeded)}/{len(items)} items, "
            f"{result.total_bytes} bytes in {result.elapsed_seconds:.2f}s"
        )
        return result
