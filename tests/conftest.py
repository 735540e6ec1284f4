"""
Test fixtures for the transfer service.
"""
import io
import itertools
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws as moto_mock_aws

from transfer_service.client import S3ObjectStoreClient
from transfer_service.errors import NotFoundError, TransientNetworkError
from transfer_service.models import (
    ClientConfig,
    DeleteFailure,
    MultipartSession,
    ObjectListing,
    ObjectMetadata,
    ObjectSummary,
    RetryPolicy,
    TransferRequest,
)

NO_WAIT = RetryPolicy(max_attempts=3, backoff_multiplier=0, backoff_min=0, backoff_max=0)


class InMemoryObjectStore:
    """Thread-safe fake object store with failure injection.

    Attributes used by tests to inject failures:
        failing_keys: key -> exception raised by every put/upload_part of that key
        failing_parts: part number -> exception raised by every upload of that part
        flaky: operation name -> number of TransientNetworkErrors to raise first
        failing_aborts: upload ids whose abort raises
        delay: seconds each call sleeps while counted as in flight
        page_size: objects per listing page
    """

    def __init__(self):
        self.objects = {}
        self.uploads = {}
        self.failing_keys = {}
        self.failing_parts = {}
        self.flaky = {}
        self.failing_aborts = set()
        self.delete_errors = {}
        self.delay = 0.0
        self.page_size = 1000
        self.repeat_last_key_on_next_page = False
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    @contextmanager
    def _call(self, operation, key=None):
        with self._lock:
            self.calls.append((operation, key))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            remaining = self.flaky.get(operation, 0)
            if remaining:
                self.flaky[operation] = remaining - 1
        try:
            if self.delay:
                time.sleep(self.delay)
            if remaining:
                raise TransientNetworkError(f"{operation} timed out", key=key)
            yield
        finally:
            with self._lock:
                self.in_flight -= 1

    def count(self, operation):
        return sum(1 for op, _ in self.calls if op == operation)

    def put(self, bucket, key, data):
        self.objects[(bucket, key)] = data

    def head_object(self, bucket, key):
        with self._call('head_object', key):
            data = self.objects.get((bucket, key))
            if data is None:
                return None
            return ObjectMetadata(size_bytes=len(data), etag=f'"{hash(data)}"',
                                  last_modified=datetime.now(timezone.utc))

    def list_objects(self, bucket, prefix, continuation_token=None):
        with self._call('list_objects', prefix):
            keys = sorted(k for b, k in self.objects if b == bucket and k.startswith(prefix))
            start = int(continuation_token or 0)
            # Overlapping pages repeat the previous page's last key
            if self.repeat_last_key_on_next_page and start:
                start -= 1
            end = start + self.page_size
            items = [ObjectSummary(key=k, size_bytes=len(self.objects[(bucket, k)]))
                     for k in keys[start:end]]
            next_token = str(end) if end < len(keys) else None
            return ObjectListing(items=items, next_token=next_token)

    def put_object(self, bucket, key, body, size):
        with self._call('put_object', key):
            if key in self.failing_keys:
                raise self.failing_keys[key]
            data = body if isinstance(body, bytes) else body.read()
            self.objects[(bucket, key)] = data
            return f'"{hash(data)}"'

    def get_object(self, bucket, key, byte_range=None):
        with self._call('get_object', key):
            data = self.objects.get((bucket, key))
            if data is None:
                raise NotFoundError("NoSuchKey", bucket=bucket, key=key)
            if byte_range is not None:
                data = data[byte_range[0]:byte_range[1] + 1]
            return io.BytesIO(data)

    def copy_object(self, source_bucket, source_key, target_bucket, target_key):
        with self._call('copy_object', target_key):
            data = self.objects.get((source_bucket, source_key))
            if data is None:
                raise NotFoundError("NoSuchKey", bucket=source_bucket, key=source_key)
            self.objects[(target_bucket, target_key)] = data

    def initiate_multipart(self, bucket, key):
        with self._call('initiate_multipart', key):
            upload_id = f"upload-{next(self._ids)}"
            self.uploads[upload_id] = {
                'bucket': bucket,
                'key': key,
                'parts': {},
                'initiated': datetime.now(timezone.utc),
                'state': 'open',
            }
            return upload_id

    def upload_part(self, bucket, key, upload_id, part_number, data, content_md5=None):
        with self._call('upload_part', key):
            if key in self.failing_keys:
                raise self.failing_keys[key]
            if part_number in self.failing_parts:
                raise self.failing_parts[part_number]
            upload = self.uploads[upload_id]
            if upload['state'] != 'open':
                raise NotFoundError("NoSuchUpload", bucket=bucket, key=key)
            upload['parts'][part_number] = data
            return f'"etag-{part_number}"'

    def complete_multipart(self, bucket, key, upload_id, parts):
        with self._call('complete_multipart', key):
            upload = self.uploads[upload_id]
            numbers = [p.part_number for p in parts]
            assert numbers == sorted(numbers), "parts must be completed in ascending order"
            self.objects[(bucket, key)] = b''.join(upload['parts'][n] for n in numbers)
            upload['state'] = 'completed'
            upload['completed_parts'] = list(parts)

    def abort_multipart(self, bucket, key, upload_id):
        with self._call('abort_multipart', key):
            if upload_id in self.failing_aborts:
                raise TransientNetworkError("abort failed", bucket=bucket, key=key)
            upload = self.uploads.get(upload_id)
            if upload is None or upload['state'] != 'open':
                raise NotFoundError("NoSuchUpload", bucket=bucket, key=key)
            upload['state'] = 'aborted'

    def add_session(self, bucket, key, initiated):
        upload_id = f"upload-{next(self._ids)}"
        self.uploads[upload_id] = {
            'bucket': bucket,
            'key': key,
            'parts': {},
            'initiated': initiated,
            'state': 'open',
        }
        return upload_id

    def list_multipart_sessions(self, bucket):
        with self._call('list_multipart_sessions'):
            return [
                MultipartSession(bucket=bucket, key=u['key'], upload_id=upload_id,
                                 initiated_at=u['initiated'])
                for upload_id, u in self.uploads.items()
                if u['bucket'] == bucket and u['state'] == 'open'
            ]

    def delete_object(self, bucket, key):
        with self._call('delete_object', key):
            self.objects.pop((bucket, key), None)

    def delete_objects(self, bucket, keys):
        with self._call('delete_objects'):
            failures = []
            for key in keys:
                if key in self.delete_errors:
                    failures.append(DeleteFailure(key=key, code=self.delete_errors[key],
                                                  message="Access Denied"))
                else:
                    self.objects.pop((bucket, key), None)
            return failures

    def presign(self, bucket, key, expiration, method='get_object'):
        with self._call('presign', key):
            return f"https://fake-s3/{bucket}/{key}?expires={int(expiration.timestamp())}"


@pytest.fixture
def store():
    """In-memory object store."""
    return InMemoryObjectStore()


@pytest.fixture
def fast_retry():
    """Retry policy without waiting between attempts."""
    return NO_WAIT


@pytest.fixture
def make_request(fast_retry):
    """Build transfer requests for the test bucket."""
    def factory(**kwargs):
        kwargs.setdefault('bucket', 'test-bucket')
        kwargs.setdefault('retry', fast_retry)
        return TransferRequest(**kwargs)
    return factory


@pytest.fixture
def tmp_upload_dir(tmp_path):
    """Create a temporary directory for test files."""
    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir()
    return upload_dir


@pytest.fixture
def tmp_log_dir(tmp_path):
    """Create a temporary directory for logs."""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return log_dir


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS credentials for moto."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_aws(aws_credentials):
    """Mock S3 client using moto."""
    with moto_mock_aws():
        s3 = boto3.client('s3', region_name='us-east-1')
        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_store(mock_aws):
    """S3ObjectStoreClient talking to moto."""
    return S3ObjectStoreClient(ClientConfig(region_name='us-east-1'))
