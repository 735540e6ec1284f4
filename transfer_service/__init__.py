from .cancellation import CancellationToken
from .client import ObjectStoreClient, S3ObjectStoreClient
from .coordinator import TransferCoordinator
from .errors import (
    AccessDeniedError,
    ConfigurationError,
    IntegrityMismatchError,
    ListingError,
    NotFoundError,
    ObjectStoreError,
    PartialDeleteError,
    PartUploadError,
    PathScopeError,
    TransferCancelledError,
    TransferError,
    TransientNetworkError,
)
from .lister import DirectoryLister
from .models import (
    ClientConfig,
    CopyRequest,
    ObjectMetadata,
    RetryPolicy,
    StorageFile,
    TransferRequest,
    TransferResult,
)
from .reaper import ReaperDaemon, StaleUploadReaper
from .service import TransferService
from .uploader import MultipartUploader

__version__ = "0.1.0"

__all__ = [
    "AccessDeniedError",
    "CancellationToken",
    "ClientConfig",
    "ConfigurationError",
    "CopyRequest",
    "DirectoryLister",
    "IntegrityMismatchError",
    "ListingError",
    "MultipartUploader",
    "NotFoundError",
    "ObjectMetadata",
    "ObjectStoreClient",
    "ObjectStoreError",
    "PartialDeleteError",
    "PartUploadError",
    "PathScopeError",
    "ReaperDaemon",
    "RetryPolicy",
    "S3ObjectStoreClient",
    "StaleUploadReaper",
    "StorageFile",
    "TransferCancelledError",
    "TransferCoordinator",
    "TransferError",
    "TransferRequest",
    "TransferResult",
    "TransferService",
    "TransientNetworkError",
]
