"""
Public operation surface of the transfer engine.

Collaborators depend only on this module and on the StorageFile,
TransferResult and ObjectMetadata shapes.
"""
import logging
import re
import string
import threading
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple

from .cancellation import CancellationToken
from .client import ObjectStoreClient, S3ObjectStoreClient
from .coordinator import TransferCoordinator
from .lister import DirectoryLister
from .models import (
    ClientConfig,
    CopyRequest,
    ObjectMetadata,
    PresignedUrlSpec,
    StorageFile,
    TransferRequest,
    TransferResult,
)
from .reaper import StaleUploadReaper
from .retry import call_with_retry
from .tracker import TransferTracker
from .uploader import MAX_PARTS, MIN_PART_SIZE

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ClientConfig], ObjectStoreClient]

PROPERTY_WHITESPACE = ' \t\f'
PROPERTY_ESCAPES = {'t': '\t', 'n': '\n', 'r': '\r', 'f': '\f'}


def _logical_lines(text: str) -> Iterator[str]:
    """Join natural lines ending in an odd number of backslashes."""
    logical: Optional[str] = None
    for natural in re.split(r'\r\n|\r|\n', text):
        line = natural.lstrip(PROPERTY_WHITESPACE)
        if logical is None:
            if not line or line[0] in '#!':
                continue
            logical = ""
        trailing = len(line) - len(line.rstrip('\\'))
        if trailing % 2 == 1:
            logical += line[:-1]
            continue
        yield logical + line
        logical = None
    if logical:
        yield logical


def _unescape(text: str) -> str:
    chars = []
    i = 0
    while i < len(text):
        char = text[i]
        i += 1
        if char != '\\':
            chars.append(char)
            continue
        if i == len(text):
            break
        char = text[i]
        i += 1
        if char == 'u':
            digits = text[i:i + 4]
            if len(digits) != 4 or any(d not in string.hexdigits for d in digits):
                raise ValueError(f"Malformed \\uxxxx encoding in {text!r}")
            chars.append(chr(int(digits, 16)))
            i += 4
        else:
            chars.append(PROPERTY_ESCAPES.get(char, char))
    return ''.join(chars)


def _split_property(line: str) -> Tuple[str, str]:
    end = 0
    while end < len(line):
        char = line[end]
        if char == '\\':
            end += 2
            continue
        if char in '=:' or char in PROPERTY_WHITESPACE:
            break
        end += 1
    key = line[:end]

    start = end
    while start < len(line) and line[start] in PROPERTY_WHITESPACE:
        start += 1
    if start < len(line) and line[start] in '=:':
        start += 1
    while start < len(line) and line[start] in PROPERTY_WHITESPACE:
        start += 1
    return _unescape(key), _unescape(line[start:])


def parse_properties(text: str) -> Dict[str, str]:
    """Parse text in the Java ``.properties`` format.

    Keys end at the first unescaped ``=``, ``:`` or whitespace. Lines
    starting with ``#`` or ``!`` are comments, a line ending in an odd
    number of backslashes continues on the next one, and ``\\t``, ``\\n``,
    ``\\uXXXX`` and escaped separators are decoded. Later keys win.

    Raises:
        ValueError: If a ``\\u`` escape is malformed
    """
    properties: Dict[str, str] = {}
    for line in _logical_lines(text):
        key, value = _split_property(line)
        properties[key] = value
    return properties


class TransferService:
    """Entry point for every transfer operation.

    Each request carries its own ClientConfig; one client is built per
    distinct configuration and reused afterwards.
    """

    def __init__(self, client_factory: ClientFactory = S3ObjectStoreClient.from_config,
                 tracker: Optional[TransferTracker] = None,
                 min_part_size: int = MIN_PART_SIZE, max_parts: int = MAX_PARTS):
        """Initialize the transfer service.

        Args:
            client_factory: Builds a client for a ClientConfig
            tracker: Optional JSON log of jobs and their results
            min_part_size: Smallest multipart part the store accepts
            max_parts: Largest multipart part count the store accepts
        """
        self._client_factory = client_factory
        self._clients: Dict[ClientConfig, ObjectStoreClient] = {}
        self._lock = threading.Lock()
        self.tracker = tracker or TransferTracker()
        self.min_part_size = min_part_size
        self.max_parts = max_parts

    def client_for(self, config: ClientConfig) -> ObjectStoreClient:
        with self._lock:
            client = self._clients.get(config)
            if client is None:
                client = self._client_factory(config)
                self._clients[config] = client
            return client

    def _coordinator(self, config: ClientConfig) -> TransferCoordinator:
        return TransferCoordinator(self.client_for(config), min_part_size=self.min_part_size,
                                   max_parts=self.max_parts)

    def _tracked(self, operation: str, request: TransferRequest,
                 run: Callable[[], TransferResult]) -> TransferResult:
        job_id = self.tracker.start_job(operation, request.bucket, request.key_prefix,
                                        request.local_path)
        result = run()
        self.tracker.log_result(job_id, result)
        return result

    def get_object_metadata(self, request: TransferRequest) -> Optional[ObjectMetadata]:
        """Metadata of the key named by request.key_prefix, or None if it does not exist."""
        client = self.client_for(request.client_config)
        return call_with_retry(
            lambda: client.head_object(request.bucket, request.key_prefix),
            request.retry,
            description=f"Fetching metadata of s3://{request.bucket}/{request.key_prefix}"
        )

    def validate_file(self, request: TransferRequest, expected_size: int) -> None:
        self._coordinator(request.client_config).validate_file(request, expected_size)

    def create_directory(self, request: TransferRequest) -> None:
        self._coordinator(request.client_config).create_directory(request)

    def list_directory(self, request: TransferRequest,
                       ignore_zero_byte_markers: bool = False) -> List[StorageFile]:
        lister = DirectoryLister(self.client_for(request.client_config), request.retry)
        return lister.list(request.bucket, request.key_prefix, ignore_zero_byte_markers)

    def upload_file(self, request: TransferRequest,
                    cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        coordinator = self._coordinator(request.client_config)
        return self._tracked("upload_file", request,
                             lambda: coordinator.upload_file(request, cancel_token))

    def upload_file_list(self, request: TransferRequest,
                         cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        coordinator = self._coordinator(request.client_config)
        return self._tracked("upload_file_list", request,
                             lambda: coordinator.upload_file_list(request, cancel_token))

    def upload_directory(self, request: TransferRequest,
                         cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        coordinator = self._coordinator(request.client_config)
        return self._tracked("upload_directory", request,
                             lambda: coordinator.upload_directory(request, cancel_token))

    def copy_file(self, request: CopyRequest,
                  cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        coordinator = self._coordinator(request.client_config)
        job_id = self.tracker.start_job("copy_file", request.target_bucket, request.key)
        result = coordinator.copy_file(request, cancel_token)
        self.tracker.log_result(job_id, result)
        return result

    def delete_file(self, request: TransferRequest) -> None:
        self._coordinator(request.client_config).delete_file(request)

    def delete_file_list(self, request: TransferRequest) -> None:
        self._coordinator(request.client_config).delete_file_list(request)

    def delete_directory(self, request: TransferRequest) -> None:
        self._coordinator(request.client_config).delete_directory(request)

    def download_file(self, request: TransferRequest,
                      cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        coordinator = self._coordinator(request.client_config)
        return self._tracked("download_file", request,
                             lambda: coordinator.download_file(request, cancel_token))

    def download_directory(self, request: TransferRequest,
                           cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        coordinator = self._coordinator(request.client_config)
        return self._tracked("download_directory", request,
                             lambda: coordinator.download_directory(request, cancel_token))

    def abort_stale_multipart_uploads(self, request: TransferRequest, threshold: datetime) -> int:
        reaper = StaleUploadReaper(self.client_for(request.client_config), request.retry)
        return reaper.abort_stale_multipart_uploads(request.bucket, threshold)

    def get_object(self, bucket: str, key: str, request: TransferRequest,
                   byte_range: Optional[Tuple[int, int]] = None) -> BinaryIO:
        """Open an object body for reading.

        Raises:
            NotFoundError: If the bucket or key does not exist
            AccessDeniedError: If access to the object is denied
        """
        client = self.client_for(request.client_config)
        return call_with_retry(
            lambda: client.get_object(bucket, key, byte_range),
            request.retry,
            description=f"Opening s3://{bucket}/{key}"
        )

    def get_properties(self, bucket: str, key: str, request: TransferRequest) -> Dict[str, str]:
        """Fetch an object and parse it as ``key=value`` properties text."""
        body = self.get_object(bucket, key, request)
        try:
            text = body.read().decode('utf-8')
        finally:
            body.close()
        return parse_properties(text)

    def generate_presigned_get_url(self, bucket: str, key: str, expiration: datetime,
                                   request: TransferRequest) -> str:
        """Build a GET URL for one object that stops working at ``expiration``.

        Raises:
            ValueError: If the expiration is not in the future
        """
        spec = PresignedUrlSpec(bucket=bucket, key=key, expiration=expiration)
        if spec.expires_in(datetime.now(timezone.utc)) <= 0:
            raise ValueError(f"Expiration {expiration.isoformat()} is not in the future")
        client = self.client_for(request.client_config)
        return client.presign(spec.bucket, spec.key, spec.expiration, spec.method)
