"""
Module for enumerating remote keys under a prefix.
"""
import logging
from typing import List, Optional, Set

from .cancellation import CancellationToken
from .client import ObjectStoreClient
from .errors import ListingError, TransferCancelledError, TransferError
from .models import ObjectListing, RetryPolicy, StorageFile
from .paths import SEPARATOR
from .retry import call_with_retry

logger = logging.getLogger(__name__)


def is_directory_marker(key: str, size_bytes: int) -> bool:
    """Zero-byte objects whose key ends in '/' stand in for empty directories."""
    return size_bytes == 0 and key.endswith(SEPARATOR)


class DirectoryLister:
    """Lists every object under a prefix across paginated responses."""

    def __init__(self, client: ObjectStoreClient, retry_policy: Optional[RetryPolicy] = None,
                 cancel_token: Optional[CancellationToken] = None):
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel_token = cancel_token

    def list(self, bucket: str, prefix: str,
             ignore_zero_byte_markers: bool = False) -> List[StorageFile]:
        """List all objects whose key starts with the prefix.

        Pages are concatenated in the order the store returns them. A key
        repeated by a later page is kept only once.

        Args:
            bucket: Bucket name
            prefix: Key prefix to list
            ignore_zero_byte_markers: Skip zero-byte keys ending in '/'

        Returns:
            StorageFile records carrying the full object keys

        Raises:
            ListingError: If a page cannot be fetched within the retry budget
        """
        files: List[StorageFile] = []
        seen: Set[str] = set()
        token: Optional[str] = None
        pages = 0

        while True:
            page = self._fetch_page(bucket, prefix, token)
            pages += 1
            for item in page.items:
                if item.key in seen:
                    logger.debug(f"Skipping duplicate key {item.key} on page {pages}")
                    continue
                seen.add(item.key)
                if ignore_zero_byte_markers and is_directory_marker(item.key, item.size_bytes):
                    continue
                files.append(StorageFile(file_path=item.key, file_size_bytes=item.size_bytes))

            token = page.next_token
            if not token:
                break

        logger.debug(f"Listed {len(files)} objects under s3://{bucket}/{prefix} in {pages} pages")
        return files

    def _fetch_page(self, bucket: str, prefix: str, token: Optional[str]) -> ObjectListing:
        try:
            return call_with_retry(
                lambda: self.client.list_objects(bucket, prefix, token),
                self.retry_policy,
                cancel_token=self.cancel_token,
                description=f"Listing s3://{bucket}/{prefix}"
            )
        except TransferCancelledError:
            raise
        except TransferError as e:
            raise ListingError(
                f"Failed to list objects: {e.message}",
                bucket=bucket,
                key=prefix,
                attempts=e.attempts
            ) from e
