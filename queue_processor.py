"""
Background job queue for collection runs.

Collection runs take minutes for thousands of tokens, so they execute on
worker threads instead of Flask request threads. Each job carries its own
progress snapshot and cancellation token; results expire after a TTL and
their archives are removed from disk.
"""

import logging
import threading
import time
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable, Dict, Optional

from batch_renderer import CancellationToken
from errors import PfpForgeError


class JobStatus(Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class ProcessingJob:
    job_id: str
    job_type: str  # 'collection' or 'placeholders'
    params: Dict[str, Any]
    status: JobStatus = JobStatus.QUEUED
    result: Optional[Any] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_token_id: Optional[int] = None
    progress_current: int = 0
    progress_total: int = 0
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None


class JobContext:
    """Handle given to processors for progress reporting and cancellation."""

    def __init__(self, processor: 'ImageProcessor', job: ProcessingJob):
        self._processor = processor
        self._job = job

    @property
    def job_id(self) -> str:
        return self._job.job_id

    @property
    def cancel_token(self) -> CancellationToken:
        return self._job.cancel_token

    def report_progress(self, current: int, total: int) -> None:
        with self._processor.jobs_lock:
            # Ignore stale or out-of-range reports so progress never goes backwards.
            if current >= self._job.progress_current and current <= total:
                self._job.progress_current = current
                self._job.progress_total = total


class ImageProcessor:
    """
    Worker-based processing queue.

    Jobs are picked up by background worker threads that run independently
    of Flask request threads.
    """

    def __init__(self, num_workers: int = 2, result_ttl: int = 3600, cleanup_interval: float = 300):
        """
        Initialize the processor with worker threads.

        Args:
            num_workers: Number of background worker threads
            result_ttl: Time to live for job results in seconds (default 1 hour)
            cleanup_interval: Seconds between expiry sweeps
        """
        self.logger = logging.getLogger(__name__)

        self.num_workers = num_workers
        self.result_ttl = result_ttl
        self.cleanup_interval = cleanup_interval

        # Thread-safe queue for jobs
        self.job_queue: Queue = Queue()

        # Thread-safe storage for job results and status
        self.jobs_lock = threading.RLock()
        self.jobs: Dict[str, ProcessingJob] = {}

        self.workers = []
        self.shutdown_event = threading.Event()

        # Job processors mapping
        self.job_processors: Dict[str, Callable[[Dict[str, Any], JobContext], Any]] = {}

        self._start_workers()
        self._start_cleanup_thread()

    def _start_workers(self):
        """Start background worker threads."""
        for i in range(self.num_workers):
            worker = threading.Thread(
                target=self._worker_loop,
                name=f'CollectionWorker-{i}',
                daemon=True
            )
            worker.start()
            self.workers.append(worker)
            self.logger.info(f"Started worker thread: CollectionWorker-{i}")

    def _start_cleanup_thread(self):
        """Start cleanup thread for expired job results."""
        cleanup_thread = threading.Thread(
            target=self._cleanup_loop,
            name='JobCleanup',
            daemon=True
        )
        cleanup_thread.start()
        self.logger.info("Started job cleanup thread")

    def register_processor(self, job_type: str, processor_func: Callable[[Dict[str, Any], JobContext], Any]):
        """
        Register a job processor function for a specific job type.

        Args:
            job_type: Type of job (e.g., 'collection')
            processor_func: Called as ``processor_func(params, context)``; returning
                None for a cancelled job marks it cancelled
        """
        self.job_processors[job_type] = processor_func
        self.logger.info(f"Registered processor for job type: {job_type}")

    def submit_job(self, job_type: str, params: Dict[str, Any]) -> str:
        """
        Submit a new job to the processing queue.

        Returns:
            Unique job ID for tracking
        """
        job_id = uuid.uuid4().hex
        job = ProcessingJob(job_id=job_id, job_type=job_type, params=params)
        job.progress_total = int(params.get('size', 0) or 0)

        with self.jobs_lock:
            self.jobs[job_id] = job

        self.job_queue.put(job)

        self.logger.info(f"Submitted job {job_id} of type {job_type}")
        return job_id

    def cancel_job(self, job_id: str) -> bool:
        """
        Request cancellation. Queued jobs are cancelled immediately; running
        jobs stop at their next yield point.

        Returns:
            False if the job is unknown or already finished
        """
        with self.jobs_lock:
            job = self.jobs.get(job_id)
            if not job or job.status in FINISHED_STATUSES:
                return False
            job.cancel_token.cancel()
            if job.status == JobStatus.QUEUED:
                job.status = JobStatus.CANCELLED
                job.completed_at = time.time()
        self.logger.info(f"Cancellation requested for job {job_id}")
        return True

    def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        with self.jobs_lock:
            return self.jobs.get(job_id)

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get the current status of a job.

        Returns:
            Dictionary with job status information or None if not found
        """
        with self.jobs_lock:
            job = self.jobs.get(job_id)
            if not job:
                return None

            result = None
            if job.status == JobStatus.COMPLETED and job.result is not None:
                if hasattr(job.result, 'to_dict'):
                    result = job.result.to_dict()
                elif isinstance(job.result, dict):
                    result = job.result
                else:
                    result = str(job.result)

            total = job.progress_total
            return {
                'job_id': job.job_id,
                'type': job.job_type,
                'status': job.status.value,
                'created_at': job.created_at,
                'started_at': job.started_at,
                'completed_at': job.completed_at,
                'progress': {
                    'current': job.progress_current,
                    'total': total,
                    'percentage': round(job.progress_current / total * 100, 2) if total else 0.0,
                },
                'result': result,
                'error': job.error,
                'error_kind': job.error_kind,
                'error_token_id': job.error_token_id,
                'position': self.get_queue_position(job_id)
            }

    def get_queue_position(self, job_id: str) -> int:
        """
        Get the position of a job in the queue.

        Returns:
            Position in queue (1-based), or 0 if not queued, or -1 if not found
        """
        with self.jobs_lock:
            job = self.jobs.get(job_id)
            if not job:
                return -1

            if job.status != JobStatus.QUEUED:
                return 0

            position = 1
            for other_job in self.jobs.values():
                if (other_job.status == JobStatus.QUEUED and
                        other_job.created_at < job.created_at):
                    position += 1

            return position

    def _set_status(self, job: ProcessingJob, status: JobStatus, **fields):
        with self.jobs_lock:
            if job.job_id not in self.jobs:
                return
            job.status = status
            for name, value in fields.items():
                setattr(job, name, value)

    def _run_job(self, job: ProcessingJob, worker_name: str):
        self.logger.info(f"Worker {worker_name} processing job {job.job_id}")

        with self.jobs_lock:
            if job.status == JobStatus.CANCELLED:
                self.logger.info(f"Skipping cancelled job {job.job_id}")
                return
            job.status = JobStatus.PROCESSING
            job.started_at = time.time()

        try:
            processor = self.job_processors.get(job.job_type)
            if not processor:
                raise ValueError(f"No processor registered for job type: {job.job_type}")

            result = processor(job.params, JobContext(self, job))

            if result is None and job.cancel_token.cancelled:
                self._set_status(job, JobStatus.CANCELLED, completed_at=time.time())
                self.logger.info(f"Job {job.job_id} cancelled")
            else:
                self._set_status(job, JobStatus.COMPLETED, result=result, completed_at=time.time())
                self.logger.info(f"Job {job.job_id} completed successfully")

        except PfpForgeError as e:
            self.logger.error(f"Job {job.job_id} failed: {e.kind}: {e}")
            self._set_status(job, JobStatus.FAILED, error=str(e), error_kind=e.kind,
                             error_token_id=e.token_id, completed_at=time.time())
        except Exception as e:
            error_msg = f"Job processing failed: {str(e)}"
            self.logger.error(f"Job {job.job_id} failed: {error_msg}")
            self.logger.error(traceback.format_exc())
            self._set_status(job, JobStatus.FAILED, error=error_msg, error_kind=type(e).__name__,
                             completed_at=time.time())

    def _worker_loop(self):
        """Main worker loop that processes jobs from the queue."""
        worker_name = threading.current_thread().name
        self.logger.info(f"Worker {worker_name} started")

        while not self.shutdown_event.is_set():
            try:
                job = self.job_queue.get(timeout=1)
            except Empty:
                continue

            try:
                self._run_job(job, worker_name)
            finally:
                self.job_queue.task_done()

        self.logger.info(f"Worker {worker_name} stopped")

    def cleanup_expired(self, now: Optional[float] = None) -> int:
        """Remove finished jobs older than the TTL and delete their archives."""
        current_time = now if now is not None else time.time()
        expired = []

        with self.jobs_lock:
            for job_id, job in self.jobs.items():
                if job.status in FINISHED_STATUSES:
                    if job.completed_at and (current_time - job.completed_at) > self.result_ttl:
                        expired.append(job)
            for job in expired:
                del self.jobs[job.job_id]

        for job in expired:
            archive_path = getattr(job.result, 'archive_path', None)
            if archive_path:
                try:
                    Path(archive_path).unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    self.logger.warning(f"Could not remove archive for job {job.job_id}: {e}")
            self.logger.info(f"Cleaned up expired job: {job.job_id}")

        return len(expired)

    def _cleanup_loop(self):
        """Cleanup loop that removes expired job results."""
        self.logger.info("Job cleanup thread started")

        while not self.shutdown_event.wait(self.cleanup_interval):
            try:
                self.cleanup_expired()
            except Exception as e:
                self.logger.error(f"Cleanup thread error: {e}")

        self.logger.info("Job cleanup thread stopped")

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the queue system.

        Returns:
            Dictionary with queue statistics
        """
        with self.jobs_lock:
            counts = {status: 0 for status in JobStatus}
            pending_jobs = []
            for job in self.jobs.values():
                counts[job.status] += 1
                if job.status in (JobStatus.QUEUED, JobStatus.PROCESSING):
                    pending_jobs.append({
                        'job_id': job.job_id,
                        'type': job.job_type,
                        'status': job.status.value,
                        'progress': job.progress_current,
                        'total': job.progress_total,
                        'created_at': job.created_at
                    })

            return {
                'workers': len(self.workers),
                'queue_size': self.job_queue.qsize(),
                'total_jobs': len(self.jobs),
                'queued': counts[JobStatus.QUEUED],
                'processing': counts[JobStatus.PROCESSING],
                'completed': counts[JobStatus.COMPLETED],
                'failed': counts[JobStatus.FAILED],
                'cancelled': counts[JobStatus.CANCELLED],
                'pending_jobs': pending_jobs
            }

    def shutdown(self):
        """Cancel running jobs and stop all worker threads."""
        self.logger.info("Shutting down image processor...")
        with self.jobs_lock:
            for job in self.jobs.values():
                if job.status in (JobStatus.QUEUED, JobStatus.PROCESSING):
                    job.cancel_token.cancel()
        self.shutdown_event.set()

        for worker in self.workers:
            worker.join(timeout=5.0)

        self.logger.info("Image processor shutdown complete")


# Global processor instance
_processor: Optional[ImageProcessor] = None


def get_processor() -> ImageProcessor:
    """Get the global processor instance."""
    global _processor
    if _processor is None:
        _processor = ImageProcessor(num_workers=2)
    return _processor


def initialize_processor(num_workers: int = 2, result_ttl: int = 3600) -> ImageProcessor:
    """
    Initialize the global processor with custom settings.

    Returns:
        The initialized processor instance
    """
    global _processor
    if _processor is not None:
        _processor.shutdown()

    _processor = ImageProcessor(num_workers=num_workers, result_ttl=result_ttl)
    return _processor
