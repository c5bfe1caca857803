"""In-memory job store with background conversion and TTL cleanup.

WHY: The HTTP API accepts an upload, returns immediately, and converts in
the background so clients can poll for progress (large collections take
seconds to minutes). An in-memory store is enough for a single-process
service with no persistence requirements.

HOW: Three components work together:
  JobStatus  — enum of job states (pending → running → completed | failed | cancelled)
  Job        — dataclass holding the job's options, progress, error,
               cancellation token and work directory
  JobStore   — thread-safe dict-based store with create/get/list/update/
               delete and TTL cleanup of finished jobs

RULES:
- All store mutations are protected by threading.Lock
- Each job gets a dedicated temp directory for the upload and the result
- Job IDs are uuid4 hex strings generated at creation time
- delete_job() cancels a running conversion before removing the job
- Only terminal jobs (completed, failed, cancelled) expire; TTL counts
  from completed_at
- create_job() raises ValueError when max_jobs is reached
"""

from __future__ import annotations

import enum
import logging
import shutil
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from anki_converter.core.pipeline import CancellationToken

logger = logging.getLogger(__name__)

# Default time-to-live for finished jobs (seconds)
DEFAULT_TTL_SECONDS = 3600


class JobStatus(str, enum.Enum):
    """Valid states for a conversion job.

    RULES:
    - pending: job created, upload stored, conversion not started
    - running: pipeline executing; Job.progress carries the stage
    - completed: result JSON is on disk
    - failed: Job.error carries the ConversionError dict
    - cancelled: the pipeline stopped on request
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class Job:
    """Metadata and state for a single conversion job.

    RULES:
    - filename: the uploaded file's base name (no directories)
    - work_dir: temp directory holding the upload and result.json
    - options: ConversionOptions fields as submitted
    - progress: last ProgressEvent as a dict, or None before the first one
    - error: ConversionError.to_dict() when failed or cancelled
    - result_file: name of the result inside work_dir once completed
    - download_name: sanitized file name offered to the client
    """

    id: str
    status: JobStatus
    filename: str
    work_dir: Path
    created_at: float
    updated_at: float
    completed_at: Optional[float] = None
    options: Dict[str, Any] = field(default_factory=dict)
    progress: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    result_file: Optional[str] = None
    download_name: Optional[str] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)

    @property
    def input_path(self) -> Path:
        return self.work_dir / self.filename

    @property
    def result_path(self) -> Optional[Path]:
        if self.result_file is None:
            return None
        return self.work_dir / self.result_file


class JobStore:
    """Thread-safe in-memory store for conversion jobs.

    HOW: Jobs live in a plain dict keyed by job ID. All mutations acquire
    a threading.Lock; filesystem cleanup happens outside the lock.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_jobs: int = 100,
    ) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._ttl_seconds = ttl_seconds
        self.max_jobs = max_jobs

    def create_job(
        self,
        filename: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Create a PENDING job with a dedicated temp directory.

        Raises:
            ValueError: If max_jobs jobs already exist.
        """
        with self._lock:
            if len(self._jobs) >= self.max_jobs:
                raise ValueError(
                    "Maximum number of concurrent jobs ({}) reached".format(
                        self.max_jobs
                    )
                )

            job_id = uuid.uuid4().hex
            now = time.time()
            work_dir = Path(tempfile.mkdtemp(prefix="anki_job_"))

            job = Job(
                id=job_id,
                status=JobStatus.PENDING,
                filename=filename,
                work_dir=work_dir,
                created_at=now,
                updated_at=now,
                options=options or {},
            )

            self._jobs[job_id] = job

        logger.info("Created job %s for file %s", job_id, filename)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Return the live Job, or None for unknown IDs."""
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> List[Job]:
        """Snapshot of all jobs, oldest first."""
        with self._lock:
            return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def update_job(
        self,
        job_id: str,
        status: Optional[JobStatus] = None,
        progress: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
        result_file: Optional[str] = None,
        download_name: Optional[str] = None,
    ) -> Optional[Job]:
        """Apply non-None updates; returns the Job or None if it is gone.

        RULES:
        - updated_at is bumped on every call
        - completed_at is set when the job reaches a terminal status
        - a terminal status is never replaced
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None

            now = time.time()

            if status is not None and job.status not in TERMINAL_STATUSES:
                job.status = status
            if progress is not None:
                job.progress = progress
            if error is not None:
                job.error = error
            if result_file is not None:
                job.result_file = result_file
            if download_name is not None:
                job.download_name = download_name

            job.updated_at = now

            if job.status in TERMINAL_STATUSES and job.completed_at is None:
                job.completed_at = now

            return job

    def delete_job(self, job_id: str) -> bool:
        """Cancel (if running) and delete a job and its temp directory.

        Returns True if the job existed.
        """
        with self._lock:
            job = self._jobs.pop(job_id, None)

        if job is None:
            return False

        job.cancel_token.cancel()
        self._cleanup_work_dir(job.work_dir)
        logger.info("Deleted job %s", job_id)
        return True

    def cleanup_expired(self) -> int:
        """Remove finished jobs older than the TTL; returns how many."""
        now = time.time()
        expired_jobs: List[Job] = []

        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if job.status not in TERMINAL_STATUSES or job.completed_at is None:
                    continue
                if now - job.completed_at > self._ttl_seconds:
                    expired_jobs.append(self._jobs.pop(job_id))

        for job in expired_jobs:
            self._cleanup_work_dir(job.work_dir)
            logger.info("Expired job %s (finished %.0fs ago)", job.id, now - job.completed_at)

        return len(expired_jobs)

    @staticmethod
    def _cleanup_work_dir(work_dir: Path) -> None:
        """Remove a job's temp directory; logs instead of raising."""
        if work_dir.exists():
            try:
                shutil.rmtree(work_dir)
            except OSError:
                logger.warning("Failed to clean up temp dir: %s", work_dir)
