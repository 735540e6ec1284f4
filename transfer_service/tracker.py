"""
Module for keeping a JSON log of transfer requests and results.
"""
import json
import logging
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .models import TransferResult

logger = logging.getLogger(__name__)


class TransferTracker:
    """Writes one JSON log file per transfer job."""

    def __init__(self, log_dir: Optional[Path] = None):
        """Initialize the transfer tracker.

        Args:
            log_dir: Directory to store log files. If None, logs to the logger only.
        """
        self.log_dir = log_dir
        if log_dir:
            log_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._paths: Dict[str, Path] = {}

    def _get_log_path(self, job_id: str) -> Optional[Path]:
        """Get the path for the log file of a specific job.

        Args:
            job_id: Unique identifier for the job

        Returns:
            Path to the log file, or None if not logging to disk
        """
        if not self.log_dir:
            return None

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.log_dir / f"transfer_{job_id}_{timestamp}.json"

    def start_job(self, operation: str, bucket: str, key_prefix: str = "",
                  local_path: Optional[Path] = None) -> str:
        """Log the start of a transfer job.

        Returns:
            The job id used for the matching log_result call
        """
        job_id = str(uuid.uuid4())
        log_data = {
            "timestamp": datetime.now().isoformat(),
            "job_id": job_id,
            "operation": operation,
            "bucket": bucket,
            "key_prefix": key_prefix,
            "local_path": str(local_path) if local_path else None,
        }
        self._write(job_id, log_data)
        logger.info(f"Starting {operation} {job_id} for s3://{bucket}/{key_prefix}")
        return job_id

    def log_result(self, job_id: str, result: TransferResult) -> None:
        """Log the outcome of a transfer job.

        Args:
            job_id: Id returned by start_job
            result: TransferResult of the job
        """
        log_data = {
            "timestamp": datetime.now().isoformat(),
            "job_id": job_id,
            "total_files": result.total_files,
            "total_bytes": result.total_bytes,
            "elapsed_seconds": result.elapsed_seconds,
            "failed_files": len(result.failed),
            "outcomes": [
                {
                    "local_path": str(o.local_path) if o.local_path else None,
                    "key": o.key,
                    "success": o.success,
                    "size_bytes": o.size_bytes,
                    "error_kind": o.error_kind,
                    "error_message": o.error_message
                }
                for o in result.outcomes
            ]
        }
        self._write(job_id, log_data)
        logger.info(
            f"Completed job {job_id}: "
            f"{len(result.succeeded)}/{len(result.outcomes)} files transferred successfully"
        )

    def _write(self, job_id: str, log_data: Dict[str, Any]) -> None:
        with self._lock:
            log_path = self._paths.get(job_id)
            if log_path is None:
                log_path = self._get_log_path(job_id)
                if log_path is None:
                    return
                self._paths[job_id] = log_path
            with open(log_path, 'a') as f:
                json.dump(log_data, f)
                f.write("\n")
