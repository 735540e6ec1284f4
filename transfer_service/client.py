"""
Object store client abstraction and its boto3 implementation.

The client performs exactly one network call per method and never retries;
retry decisions belong to the callers, which know whether an operation is
idempotent.
"""
import base64
import io
import logging
import threading
from datetime import datetime, timezone
from typing import Any, BinaryIO, Dict, List, Optional, Protocol, Sequence, Tuple

import boto3
from botocore import UNSIGNED
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from .cancellation import CancellationToken
from .errors import (
    AccessDeniedError,
    ConfigurationError,
    NotFoundError,
    ObjectStoreError,
    TransferError,
    TransientNetworkError,
)
from .models import (
    ClientConfig,
    CompletedPart,
    DeleteFailure,
    MultipartSession,
    ObjectListing,
    ObjectMetadata,
    ObjectSummary,
)

logger = logging.getLogger(__name__)

# S3 accepts at most this many keys per DeleteObjects request
MAX_DELETE_BATCH = 1000

SIGNERS = {
    's3v4': 's3v4',
    'v4': 's3v4',
    'AWSS3V4SignerType': 's3v4',
    's3': 's3',
    'S3SignerType': 's3',
    'unsigned': UNSIGNED,
}

RETRYABLE_ERROR_CODES = {
    'RequestTimeout',
    'RequestTimeoutException',
    'PriorRequestNotComplete',
    'ConnectionError',
    'ThrottlingException',
    'ThrottledException',
    'ServiceUnavailable',
    'Throttling',
    'SlowDown',
    'InternalError',
    'BadDigest',
    '5XX'
}

NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NoSuchBucket', 'NoSuchUpload', 'NotFound'}
ACCESS_DENIED_CODES = {'403', 'AccessDenied', 'Forbidden', 'AllAccessDisabled'}


def is_transient_botocore_error(exception: Exception) -> bool:
    """Check if a botocore exception describes a transient failure.

    Args:
        exception: The exception to check

    Returns:
        True if the error is retryable, False otherwise
    """
    if isinstance(exception, ClientError):
        error_code = exception.response.get('Error', {}).get('Code', '')
        status = exception.response.get('ResponseMetadata', {}).get('HTTPStatusCode') or 0
        return error_code in RETRYABLE_ERROR_CODES or status >= 500
    return isinstance(exception, (ConnectTimeoutError, ReadTimeoutError,
                                  EndpointConnectionError, ConnectionClosedError))


def translate_error(exception: Exception, bucket: Optional[str] = None,
                    key: Optional[str] = None) -> TransferError:
    """Map a botocore failure onto the transfer error taxonomy."""
    if isinstance(exception, ClientError):
        error = exception.response.get('Error', {})
        code = str(error.get('Code', ''))
        message = error.get('Message') or str(exception)
        if code in NOT_FOUND_CODES:
            return NotFoundError(message, bucket=bucket, key=key)
        if code in ACCESS_DENIED_CODES:
            return AccessDeniedError(message, bucket=bucket, key=key)
        if is_transient_botocore_error(exception):
            return TransientNetworkError(message, bucket=bucket, key=key)
        return ObjectStoreError(f"{code}: {message}", bucket=bucket, key=key)
    if isinstance(exception, (NoCredentialsError, PartialCredentialsError)):
        return ConfigurationError(str(exception), bucket=bucket, key=key)
    if is_transient_botocore_error(exception):
        return TransientNetworkError(str(exception), bucket=bucket, key=key)
    return ObjectStoreError(str(exception), bucket=bucket, key=key)


def build_botocore_config(config: ClientConfig) -> Config:
    """Translate a ClientConfig into botocore settings.

    Raises:
        ConfigurationError: If the proxy or signer setup is invalid
    """
    options: Dict[str, Any] = {
        'connect_timeout': config.connect_timeout,
        'read_timeout': config.read_timeout,
        'retries': {'total_max_attempts': 1, 'mode': 'standard'},
    }

    if config.proxy_host or config.proxy_port:
        if not config.proxy_host or not config.proxy_port:
            raise ConfigurationError("proxy_host and proxy_port must be set together")
        proxy = f"http://{config.proxy_host}:{config.proxy_port}"
        options['proxies'] = {'http': proxy, 'https': proxy}

    if config.signer_override:
        if config.signer_override not in SIGNERS:
            raise ConfigurationError(f"Unsupported signer override: {config.signer_override}")
        options['signature_version'] = SIGNERS[config.signer_override]

    return Config(**options)


class ObjectStoreClient(Protocol):
    """Capabilities the transfer engine needs from a remote object store."""

    def head_object(self, bucket: str, key: str) -> Optional[ObjectMetadata]:
        """Return object metadata, or None if the object does not exist."""
        ...

    def list_objects(self, bucket: str, prefix: str,
                     continuation_token: Optional[str] = None) -> ObjectListing:
        ...

    def put_object(self, bucket: str, key: str, body: Any, size: int) -> Optional[str]:
        ...

    def get_object(self, bucket: str, key: str,
                   byte_range: Optional[Tuple[int, int]] = None) -> BinaryIO:
        """Open an object body. ``byte_range`` is inclusive on both ends."""
        ...

    def copy_object(self, source_bucket: str, source_key: str,
                    target_bucket: str, target_key: str) -> None:
        ...

    def initiate_multipart(self, bucket: str, key: str) -> str:
        ...

    def upload_part(self, bucket: str, key: str, upload_id: str, part_number: int,
                    data: bytes, content_md5: Optional[str] = None) -> str:
        ...

    def complete_multipart(self, bucket: str, key: str, upload_id: str,
                           parts: Sequence[CompletedPart]) -> None:
        ...

    def abort_multipart(self, bucket: str, key: str, upload_id: str) -> None:
        ...

    def list_multipart_sessions(self, bucket: str) -> List[MultipartSession]:
        ...

    def delete_object(self, bucket: str, key: str) -> None:
        ...

    def delete_objects(self, bucket: str, keys: Sequence[str]) -> List[DeleteFailure]:
        ...

    def presign(self, bucket: str, key: str, expiration: datetime,
                method: str = 'get_object') -> str:
        ...


class S3ObjectStoreClient:
    """S3-compatible object store client backed by boto3."""

    def __init__(self, config: Optional[ClientConfig] = None, s3_client: Any = None):
        """Initialize the S3 client.

        Args:
            config: Connection settings; defaults resolve credentials the
                usual boto3 way
            s3_client: Prebuilt boto3 client, mostly for tests

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self.config = config or ClientConfig()
        self.s3_client = s3_client or self._build_client(self.config)

    @classmethod
    def from_config(cls, config: ClientConfig) -> "S3ObjectStoreClient":
        return cls(config)

    @staticmethod
    def _build_client(config: ClientConfig) -> Any:
        if bool(config.access_key_id) != bool(config.secret_access_key):
            raise ConfigurationError("access_key_id and secret_access_key must be set together")

        session = boto3.session.Session(
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            aws_session_token=config.session_token,
            region_name=config.region_name,
        )
        return session.client(
            's3',
            endpoint_url=config.endpoint_url,
            config=build_botocore_config(config)
        )

    def head_object(self, bucket: str, key: str) -> Optional[ObjectMetadata]:
        try:
            response = self.s3_client.head_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            error = translate_error(e, bucket, key)
            if isinstance(error, NotFoundError):
                return None
            raise error from e

        return ObjectMetadata(
            size_bytes=int(response.get('ContentLength') or 0),
            etag=response.get('ETag'),
            last_modified=response.get('LastModified'),
            content_type=response.get('ContentType')
        )

    def list_objects(self, bucket: str, prefix: str,
                     continuation_token: Optional[str] = None) -> ObjectListing:
        params: Dict[str, Any] = {'Bucket': bucket, 'Prefix': prefix}
        if continuation_token:
            params['ContinuationToken'] = continuation_token

        try:
            response = self.s3_client.list_objects_v2(**params)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket, prefix) from e

        items = [
            ObjectSummary(
                key=obj['Key'],
                size_bytes=int(obj.get('Size', 0)),
                etag=obj.get('ETag'),
                last_modified=obj.get('LastModified')
            )
            for obj in response.get('Contents', [])
        ]
        next_token = response.get('NextContinuationToken') if response.get('IsTruncated') else None
        return ObjectListing(items=items, next_token=next_token)

    def put_object(self, bucket: str, key: str, body: Any, size: int) -> Optional[str]:
        try:
            response = self.s3_client.put_object(
                Bucket=bucket,
                Key=key,
                Body=body,
                ContentLength=size
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket, key) from e
        return response.get('ETag')

    def get_object(self, bucket: str, key: str,
                   byte_range: Optional[Tuple[int, int]] = None) -> BinaryIO:
        params: Dict[str, Any] = {'Bucket': bucket, 'Key': key}
        if byte_range is not None:
            params['Range'] = f"bytes={byte_range[0]}-{byte_range[1]}"

        try:
            response = self.s3_client.get_object(**params)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket, key) from e
        return response['Body']

    def copy_object(self, source_bucket: str, source_key: str,
                    target_bucket: str, target_key: str) -> None:
        try:
            self.s3_client.copy_object(
                Bucket=target_bucket,
                Key=target_key,
                CopySource={'Bucket': source_bucket, 'Key': source_key}
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, target_bucket, target_key) from e

    def initiate_multipart(self, bucket: str, key: str) -> str:
        try:
            response = self.s3_client.create_multipart_upload(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket, key) from e

        upload_id = response.get('UploadId')
        if not upload_id:
            raise ObjectStoreError("S3 response missing UploadId", bucket=bucket, key=key)
        return str(upload_id)

    def upload_part(self, bucket: str, key: str, upload_id: str, part_number: int,
                    data: bytes, content_md5: Optional[str] = None) -> str:
        params: Dict[str, Any] = {
            'Bucket': bucket,
            'Key': key,
            'UploadId': upload_id,
            'PartNumber': part_number,
            'Body': data,
        }
        if content_md5:
            params['ContentMD5'] = base64.b64encode(bytes.fromhex(content_md5)).decode('ascii')

        try:
            response = self.s3_client.upload_part(**params)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket, key) from e
        return response['ETag']

    def complete_multipart(self, bucket: str, key: str, upload_id: str,
                           parts: Sequence[CompletedPart]) -> None:
        payload = {
            'Parts': [
                {'ETag': part.etag, 'PartNumber': part.part_number}
                for part in sorted(parts, key=lambda p: p.part_number)
            ]
        }
        try:
            self.s3_client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload=payload
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket, key) from e

    def abort_multipart(self, bucket: str, key: str, upload_id: str) -> None:
        try:
            self.s3_client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket, key) from e

    def list_multipart_sessions(self, bucket: str) -> List[MultipartSession]:
        sessions = []
        try:
            paginator = self.s3_client.get_paginator('list_multipart_uploads')
            for page in paginator.paginate(Bucket=bucket):
                for upload in page.get('Uploads', []):
                    sessions.append(MultipartSession(
                        bucket=bucket,
                        key=upload['Key'],
                        upload_id=upload['UploadId'],
                        initiated_at=upload.get('Initiated') or datetime.now(timezone.utc)
                    ))
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket) from e
        return sessions

    def delete_object(self, bucket: str, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket, key) from e

    def delete_objects(self, bucket: str, keys: Sequence[str]) -> List[DeleteFailure]:
        if len(keys) > MAX_DELETE_BATCH:
            raise ValueError(f"At most {MAX_DELETE_BATCH} keys can be deleted per request")
        if not keys:
            return []

        try:
            response = self.s3_client.delete_objects(
                Bucket=bucket,
                Delete={'Objects': [{'Key': key} for key in keys], 'Quiet': True}
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket) from e

        return [
            DeleteFailure(key=error['Key'], code=error.get('Code', ''),
                          message=error.get('Message', ''))
            for error in response.get('Errors', [])
        ]

    def presign(self, bucket: str, key: str, expiration: datetime,
                method: str = 'get_object') -> str:
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        expires_in = int((expiration - datetime.now(timezone.utc)).total_seconds())

        try:
            url = self.s3_client.generate_presigned_url(
                method,
                Params={'Bucket': bucket, 'Key': key},
                ExpiresIn=max(expires_in, 1)
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, bucket, key) from e

        if not url:
            raise ObjectStoreError("Generated presigned URL is empty", bucket=bucket, key=key)
        return str(url)


class BoundedClient:
    """Client wrapper enforcing one invocation's concurrency and cancellation.

    Every call holds one slot of a shared semaphore while it runs, so the
    number of in-flight calls across all units of a job never exceeds the
    semaphore's size. Cancellation is checked before waiting for a slot and
    again once the slot is held.
    """

    def __init__(self, client: ObjectStoreClient, max_in_flight: int,
                 cancel_token: CancellationToken):
        self._client = client
        self._slots = threading.BoundedSemaphore(max_in_flight)
        self.cancel_token = cancel_token

    def _call(self, name: str, *args, bucket: Optional[str] = None,
              key: Optional[str] = None, check_cancel: bool = True):
        if check_cancel:
            self.cancel_token.raise_if_cancelled(bucket, key)
        with self._slots:
            if check_cancel:
                self.cancel_token.raise_if_cancelled(bucket, key)
            return getattr(self._client, name)(*args)

    def head_object(self, bucket: str, key: str) -> Optional[ObjectMetadata]:
        return self._call('head_object', bucket, key, bucket=bucket, key=key)

    def list_objects(self, bucket: str, prefix: str,
                     continuation_token: Optional[str] = None) -> ObjectListing:
        return self._call('list_objects', bucket, prefix, continuation_token,
                          bucket=bucket, key=prefix)

    def put_object(self, bucket: str, key: str, body: Any, size: int) -> Optional[str]:
        return self._call('put_object', bucket, key, body, size, bucket=bucket, key=key)

    def get_object(self, bucket: str, key: str,
                   byte_range: Optional[Tuple[int, int]] = None) -> BinaryIO:
        # The body is read while the slot is held; callers bound its size
        # through byte ranges.
        def fetch() -> BinaryIO:
            body = self._client.get_object(bucket, key, byte_range)
            try:
                return io.BytesIO(body.read())
            finally:
                body.close()

        self.cancel_token.raise_if_cancelled(bucket, key)
        with self._slots:
            self.cancel_token.raise_if_cancelled(bucket, key)
            return fetch()

    def copy_object(self, source_bucket: str, source_key: str,
                    target_bucket: str, target_key: str) -> None:
        return self._call('copy_object', source_bucket, source_key, target_bucket,
                          target_key, bucket=target_bucket, key=target_key)

    def initiate_multipart(self, bucket: str, key: str) -> str:
        return self._call('initiate_multipart', bucket, key, bucket=bucket, key=key)

    def upload_part(self, bucket: str, key: str, upload_id: str, part_number: int,
                    data: bytes, content_md5: Optional[str] = None) -> str:
        return self._call('upload_part', bucket, key, upload_id, part_number, data,
                          content_md5, bucket=bucket, key=key)

    def complete_multipart(self, bucket: str, key: str, upload_id: str,
                           parts: Sequence[CompletedPart]) -> None:
        return self._call('complete_multipart', bucket, key, upload_id, parts,
                          bucket=bucket, key=key)

    def abort_multipart(self, bucket: str, key: str, upload_id: str) -> None:
        # Aborts run even after cancellation so no session is left open.
        return self._call('abort_multipart', bucket, key, upload_id,
                          bucket=bucket, key=key, check_cancel=False)

    def list_multipart_sessions(self, bucket: str) -> List[MultipartSession]:
        return self._call('list_multipart_sessions', bucket, bucket=bucket)

    def delete_object(self, bucket: str, key: str) -> None:
        return self._call('delete_object', bucket, key, bucket=bucket, key=key)

    def delete_objects(self, bucket: str, keys: Sequence[str]) -> List[DeleteFailure]:
        return self._call('delete_objects', bucket, keys, bucket=bucket)

    def presign(self, bucket: str, key: str, expiration: datetime,
                method: str = 'get_object') -> str:
        return self._call('presign', bucket, key, expiration, method, bucket=bucket, key=key)
