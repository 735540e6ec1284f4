"""
Module for reclaiming abandoned multipart uploads.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from .client import ObjectStoreClient
from .errors import NotFoundError
from .models import RetryPolicy
from .retry import call_with_retry

logger = logging.getLogger(__name__)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class StaleUploadReaper:
    """Aborts multipart uploads that were started before a threshold."""

    def __init__(self, client: ObjectStoreClient, retry_policy: Optional[RetryPolicy] = None):
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()

    def abort_stale_multipart_uploads(self, bucket: str, threshold: datetime) -> int:
        """Abort every open session initiated strictly before the threshold.

        Sessions that disappear between the listing and the abort (completed
        or aborted elsewhere) are skipped without counting them.

        Args:
            bucket: Bucket to sweep
            threshold: Sessions initiated before this instant are aborted;
                naive datetimes are taken as UTC

        Returns:
            Number of sessions aborted
        """
        threshold = _as_utc(threshold)
        sessions = call_with_retry(
            lambda: self.client.list_multipart_sessions(bucket),
            self.retry_policy,
            description=f"Listing multipart uploads in s3://{bucket}"
        )

        aborted = 0
        for session in sessions:
            if _as_utc(session.initiated_at) >= threshold:
                continue
            try:
                call_with_retry(
                    lambda: self.client.abort_multipart(bucket, session.key, session.upload_id),
                    self.retry_policy,
                    description=f"Aborting multipart upload {session.upload_id}"
                )
            except NotFoundError:
                logger.debug(f"Multipart upload {session.upload_id} for {session.key} is already gone")
                continue
            aborted += 1
            logger.info(
                f"Aborted stale multipart upload {session.upload_id} for s3://{bucket}/{session.key} "
                f"initiated at {session.initiated_at.isoformat()}"
            )

        logger.info(f"Aborted {aborted} of {len(sessions)} multipart uploads in s3://{bucket}")
        return aborted


@dataclass
class SweepTarget:
    bucket: str
    max_age: timedelta
    last_count: int = 0


class ReaperDaemon:
    """Runs the stale upload sweep periodically in a background thread."""

    def __init__(self, reaper: StaleUploadReaper, sweep_interval: float = 3600,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.reaper = reaper
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._targets: Dict[str, SweepTarget] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register_bucket(self, bucket: str, max_age: timedelta) -> None:
        """Sweep a bucket for sessions older than max_age.

        Args:
            bucket: Bucket name
            max_age: Age after which an open session is considered abandoned
        """
        with self._lock:
            self._targets[bucket] = SweepTarget(bucket=bucket, max_age=max_age)
        logger.info(f"Registered s3://{bucket} for stale upload sweeps older than {max_age}")

    def unregister_bucket(self, bucket: str) -> None:
        with self._lock:
            if self._targets.pop(bucket, None) is None:
                logger.warning(f"Bucket {bucket} is not registered for sweeps")

    def last_count(self, bucket: str) -> int:
        with self._lock:
            target = self._targets.get(bucket)
            return target.last_count if target else 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="stale-upload-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def sweep_once(self) -> Dict[str, int]:
        """Sweep every registered bucket once.

        Returns:
            Number of sessions aborted per bucket
        """
        with self._lock:
            targets = list(self._targets.values())

        counts = {}
        for target in targets:
            try:
                count = self.reaper.abort_stale_multipart_uploads(
                    target.bucket, self._clock() - target.max_age
                )
            except Exception as e:
                logger.error(f"Error sweeping multipart uploads in {target.bucket}: {e}")
                continue
            target.last_count = count
            counts[target.bucket] = count
        return counts

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.sweep_once()
            self._stop_event.wait(self._sweep_interval)
