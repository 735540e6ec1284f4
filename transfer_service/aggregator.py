"""
Module for collecting per-item outcomes of a transfer job.
"""
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from .errors import TransferCancelledError, TransferError, is_fatal
from .models import TransferOutcome, TransferResult


class ResultAggregator:
    """Thread-safe accumulator of outcomes, reported in submission order."""

    def __init__(self):
        self._lock = threading.Lock()
        self._outcomes: Dict[int, TransferOutcome] = {}
        self._errors: Dict[int, BaseException] = {}
        self._started = time.monotonic()

    def record_success(self, index: int, local_path: Optional[Path], key: str,
                       size_bytes: int) -> None:
        outcome = TransferOutcome(local_path=local_path, key=key, success=True,
                                  size_bytes=size_bytes)
        with self._lock:
            self._outcomes[index] = outcome

    def record_failure(self, index: int, local_path: Optional[Path], key: str,
                       error: BaseException) -> None:
        kind = error.kind if isinstance(error, TransferError) else type(error).__name__
        outcome = TransferOutcome(
            local_path=local_path,
            key=key,
            success=False,
            error_kind=kind,
            error_message=str(error)
        )
        with self._lock:
            self._outcomes[index] = outcome
            self._errors[index] = error

    def errors(self) -> List[BaseException]:
        """Recorded errors in submission order."""
        with self._lock:
            return [self._errors[i] for i in sorted(self._errors)]

    def first_fatal_error(self) -> Optional[BaseException]:
        """The error that should abort the job, if any.

        Cancellations caused by another unit's fatal error are skipped in
        favor of that error.
        """
        fatal = [error for error in self.errors() if is_fatal(error)]
        for error in fatal:
            if not isinstance(error, TransferCancelledError):
                return error
        return fatal[0] if fatal else None

    def result(self) -> TransferResult:
        with self._lock:
            outcomes = tuple(self._outcomes[i] for i in sorted(self._outcomes))
        succeeded = [o for o in outcomes if o.success]
        return TransferResult(
            total_files=len(succeeded),
            total_bytes=sum(o.size_bytes for o in succeeded),
            elapsed_seconds=time.monotonic() - self._started,
            outcomes=outcomes
        )
