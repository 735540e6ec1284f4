"""
Module containing data models for the transfer service.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

MiB = 1024 * 1024

DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_MULTIPART_THRESHOLD = 8 * MiB
DEFAULT_PART_SIZE = 8 * MiB


@dataclass(frozen=True)
class ClientConfig:
    """Connection settings for one object store client.

    Passed explicitly with every request; two requests with equal
    configurations share a client.
    """
    endpoint_url: Optional[str] = None
    region_name: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    proxy_host: Optional[str] = None
    proxy_port: Optional[int] = None
    signer_override: Optional[str] = None
    connect_timeout: float = 50.0
    read_timeout: float = 50.0


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for a single network operation."""
    max_attempts: int = 3
    backoff_multiplier: float = 1.0
    backoff_min: float = 4.0
    backoff_max: float = 10.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


@dataclass(frozen=True)
class TransferRequest:
    """Represents a transfer between a local path and a bucket/key prefix."""
    bucket: str
    key_prefix: str = ""
    local_path: Optional[Path] = None
    files: Optional[Tuple[Path, ...]] = None
    client_config: ClientConfig = field(default_factory=ClientConfig)
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    multipart_threshold: int = DEFAULT_MULTIPART_THRESHOLD
    part_size: int = DEFAULT_PART_SIZE

    def __post_init__(self):
        """Validate the transfer request."""
        if not self.bucket:
            raise ValueError("bucket cannot be empty")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.multipart_threshold < 1:
            raise ValueError("multipart_threshold must be positive")
        if self.part_size < 1:
            raise ValueError("part_size must be positive")
        if self.local_path is not None and not isinstance(self.local_path, Path):
            object.__setattr__(self, 'local_path', Path(self.local_path))
        if self.files is not None:
            object.__setattr__(self, 'files', tuple(Path(f) for f in self.files))


@dataclass(frozen=True)
class CopyRequest:
    """Server-side copy of one key between buckets."""
    source_bucket: str
    target_bucket: str
    key: str
    client_config: ClientConfig = field(default_factory=ClientConfig)
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        if not self.source_bucket or not self.target_bucket:
            raise ValueError("source_bucket and target_bucket cannot be empty")
        if not self.key:
            raise ValueError("key cannot be empty")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")


@dataclass(frozen=True)
class StorageFile:
    """A file known to the store or found on the local disk."""
    file_path: str
    file_size_bytes: int
    row_count: Optional[int] = None


@dataclass(frozen=True)
class ObjectSummary:
    """One entry of a listing page."""
    key: str
    size_bytes: int
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None


@dataclass(frozen=True)
class ObjectListing:
    items: List[ObjectSummary]
    next_token: Optional[str] = None


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata from a HEAD object request."""
    size_bytes: int
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    content_type: Optional[str] = None


@dataclass(frozen=True)
class DeleteFailure:
    """A key that a batch delete did not remove."""
    key: str
    code: str
    message: str


@dataclass(frozen=True)
class CompletedPart:
    """Represents a completed part in a multipart upload."""
    part_number: int
    etag: str
    md5: Optional[str] = None


class SessionState(Enum):
    INITIATED = "initiated"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ABORTED = "aborted"


_ALLOWED_TRANSITIONS = {
    SessionState.INITIATED: {SessionState.UPLOADING},
    SessionState.UPLOADING: {SessionState.COMPLETED, SessionState.ABORTED},
    SessionState.COMPLETED: set(),
    SessionState.ABORTED: set(),
}


class InvalidSessionTransition(RuntimeError):
    """Raised when a multipart session is moved along an illegal edge."""


@dataclass
class MultipartSession:
    """State of one multipart upload.

    Sessions created by an uploader belong to it for their whole lifetime.
    Sessions returned by a store listing are read-only snapshots.
    """
    bucket: str
    key: str
    upload_id: str
    initiated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    parts: List[CompletedPart] = field(default_factory=list)
    state: SessionState = SessionState.INITIATED
    abort_confirmed: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.ABORTED)

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidSessionTransition(
                f"Multipart session {self.upload_id} cannot move from "
                f"{self.state.name} to {new_state.name}"
            )
        self.state = new_state

    def add_part(self, part: CompletedPart) -> None:
        if self.state is not SessionState.UPLOADING:
            raise InvalidSessionTransition(
                f"Cannot add part {part.part_number} to session {self.upload_id} "
                f"in state {self.state.name}"
            )
        self.parts.append(part)

    def ordered_parts(self) -> List[CompletedPart]:
        return sorted(self.parts, key=lambda p: p.part_number)


@dataclass(frozen=True)
class TransferOutcome:
    """Result of transferring a single item."""
    local_path: Optional[Path]
    key: str
    success: bool
    size_bytes: int = 0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class TransferResult:
    """Summary of one coordinator invocation."""
    total_files: int
    total_bytes: int
    elapsed_seconds: float
    outcomes: Tuple[TransferOutcome, ...]

    @property
    def succeeded(self) -> List[TransferOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[TransferOutcome]:
        return [o for o in self.outcomes if not o.success]


@dataclass(frozen=True)
class PresignedUrlSpec:
    """Time-bounded read access to one object."""
    bucket: str
    key: str
    expiration: datetime
    method: str = field(default="get_object", init=False)

    def expires_in(self, now: Optional[datetime] = None) -> int:
        """Seconds from now until the expiration instant."""
        now = now or datetime.now(timezone.utc)
        expiration = self.expiration
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return int((expiration - now).total_seconds())
