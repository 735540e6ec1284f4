"""
Error taxonomy for the transfer engine.
"""
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .models import DeleteFailure


class TransferError(Exception):
    """Base class for every failure raised by the transfer engine.

    Carries the bucket, key and attempt count so the caller can decide
    whether to retry the whole job.
    """

    def __init__(self, message: str, *, bucket: Optional[str] = None,
                 key: Optional[str] = None, attempts: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.bucket = bucket
        self.key = key
        self.attempts = attempts

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        context = []
        if self.bucket:
            context.append(f"bucket={self.bucket}")
        if self.key:
            context.append(f"key={self.key}")
        if self.attempts:
            context.append(f"attempts={self.attempts}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ObjectStoreError(TransferError):
    """The store rejected a request for a reason that retrying will not fix."""


class NotFoundError(ObjectStoreError):
    """Object, bucket or multipart session does not exist."""


class AccessDeniedError(ObjectStoreError):
    """Credentials are not allowed to perform the operation."""


class TransientNetworkError(ObjectStoreError):
    """Timeouts, throttling, 5xx responses and connection resets."""


class IntegrityMismatchError(TransferError):
    """Size or checksum of a transferred object disagrees with expectations."""


class PathScopeError(TransferError):
    """A local path or remote key escapes the configured root."""


class PartUploadError(TransferError):
    """A multipart upload failed after a part exhausted its retries."""

    def __init__(self, message: str, *, bucket: Optional[str] = None,
                 key: Optional[str] = None, attempts: Optional[int] = None,
                 part_number: Optional[int] = None,
                 upload_id: Optional[str] = None):
        super().__init__(message, bucket=bucket, key=key, attempts=attempts)
        self.part_number = part_number
        self.upload_id = upload_id


class TransferCancelledError(TransferError):
    """Cooperative cancellation was observed mid-transfer."""


class ConfigurationError(TransferError):
    """Invalid proxy, signer or credentials setup."""


class ListingError(TransferError):
    """A listing page could not be fetched."""


class PartialDeleteError(TransferError):
    """Some keys of a batch delete could not be removed."""

    def __init__(self, message: str, failures: List["DeleteFailure"], *,
                 bucket: Optional[str] = None):
        super().__init__(message, bucket=bucket)
        self.failures = failures

    @property
    def failed_keys(self) -> List[str]:
        return [failure.key for failure in self.failures]


# Errors that stop a whole multi-file job instead of a single unit
FATAL_ERRORS = (TransferCancelledError, ConfigurationError, ListingError)


def is_fatal(error: BaseException) -> bool:
    return isinstance(error, FATAL_ERRORS)

