"""
Ordered, observable queue of generation jobs.

The queue owns the canonical copy of every Job. All mutations go through the
transition methods below and are serialized by one RLock; readers get deep
copies so nothing outside can race with a writer. Every transition fires a
QueueEvent to the registered subscribers (WS hub, UI, tests).

State machine:
    pending -> processing -> completed | failed | cancelled
    pending -> cancelled
    failed  -> pending            (retry, while retry_count < 3)
    processing -> pending         (connectivity reset, retry_count untouched)
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from backends.latent_families import LatentFamily
from backends.tensor_codec import TensorCodecError, decode_tensor_to_png
from backends.utils import gen_seed
from invokers.jobs import FINISHED_STATUSES, Job, JobProgress, JobStatus

logger = logging.getLogger(__name__)

NO_IMAGES_MESSAGE = "No images returned from generation"

FamilyResolver = Callable[[Optional[str]], Optional[LatentFamily]]


@dataclass
class QueueEvent:
    type: str  # "job:added", "job:progress", "queue:paused", ...
    job_id: Optional[str] = None
    job: Optional[Job] = None
    error: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        """JSON envelope for WS clients. Image payloads are left out."""
        msg: Dict[str, Any] = {"type": self.type}
        if self.job_id is not None:
            msg["jobId"] = self.job_id
        if self.job is not None:
            msg["status"] = self.job.status.value
            p = self.job.progress
            msg["progress"] = (
                {
                    "currentStep": p.current_step,
                    "totalSteps": p.total_steps,
                    "stage": p.stage,
                    "fraction": p.fraction,
                    "hasPreview": p.preview_image is not None,
                }
                if p is not None
                else None
            )
            msg["retryCount"] = self.job.retry_count
            msg["resultCount"] = len(self.job.result_images)
        if self.error is not None:
            msg["error"] = self.error
        return msg


class JobQueue:
    """
    Job queue with pause/resume and single-current-job tracking.

    Args:
        storage: object with load_jobs()/save_jobs(jobs); None disables persistence
        family_resolver: optional callable mapping a model name to a LatentFamily,
            used to pick the preview calibration. Falls back to name detection.
        start_paused: start in the paused state (default: run as soon as possible)
    """

    def __init__(
        self,
        storage=None,
        family_resolver: Optional[FamilyResolver] = None,
        start_paused: bool = False,
    ):
        self._lock = threading.RLock()
        self._storage = storage
        self._family_resolver = family_resolver

        self._jobs: List[Job] = []
        self._current_job_id: Optional[str] = None
        self._paused = bool(start_paused)
        self._last_error: Optional[str] = None

        self._subscribers: List[Callable[[QueueEvent], None]] = []
        self._cancel_handler: Optional[Callable[[], None]] = None
        self._cancel_handler_job_id: Optional[str] = None

        self._load()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[QueueEvent], None]) -> Callable[[], None]:
        """Register a callback for every queue event. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _emit(
        self,
        event_type: str,
        job: Optional[Job] = None,
        job_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        event = QueueEvent(
            type=event_type,
            job_id=job.id if job is not None else job_id,
            job=copy.deepcopy(job) if job is not None else None,
            error=error,
        )
        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception:
                # a broken subscriber must not break job logic
                logger.exception(f"[Queue] Subscriber failed on {event_type}")

    # ------------------------------------------------------------------
    # Read access (snapshots)
    # ------------------------------------------------------------------

    @property
    def jobs(self) -> List[Job]:
        with self._lock:
            return copy.deepcopy(self._jobs)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._find(job_id)
            return copy.deepcopy(job) if job is not None else None

    def _by_status(self, *statuses: JobStatus) -> List[Job]:
        with self._lock:
            return [copy.deepcopy(j) for j in self._jobs if j.status in statuses]

    @property
    def pending_jobs(self) -> List[Job]:
        return self._by_status(JobStatus.PENDING)

    @property
    def completed_jobs(self) -> List[Job]:
        return self._by_status(JobStatus.COMPLETED)

    @property
    def failed_jobs(self) -> List[Job]:
        return self._by_status(JobStatus.FAILED)

    def _count(self, *statuses: JobStatus) -> int:
        with self._lock:
            return sum(1 for j in self._jobs if j.status in statuses)

    @property
    def pending_count(self) -> int:
        return self._count(JobStatus.PENDING)

    @property
    def processing_count(self) -> int:
        return self._count(JobStatus.PROCESSING)

    @property
    def active_count(self) -> int:
        """Pending + processing, e.g. for a badge."""
        return self._count(JobStatus.PENDING, JobStatus.PROCESSING)

    @property
    def has_pending_jobs(self) -> bool:
        return self.pending_count > 0

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not self._jobs

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    @property
    def current_job_id(self) -> Optional[str]:
        with self._lock:
            return self._current_job_id

    @property
    def current_job(self) -> Optional[Job]:
        with self._lock:
            if self._current_job_id is None:
                return None
            return self.get(self._current_job_id)

    @property
    def current_progress(self) -> Optional[JobProgress]:
        with self._lock:
            job = self._find(self._current_job_id) if self._current_job_id else None
            if job is None or job.progress is None:
                return None
            return copy.deepcopy(job.progress)

    @property
    def current_preview(self) -> Optional[bytes]:
        """PNG of the latest decoded preview of the current job."""
        progress = self.current_progress
        return progress.preview_image if progress else None

    def next_pending_job(self) -> Optional[Job]:
        """First pending job in queue order."""
        with self._lock:
            for j in self._jobs:
                if j.status == JobStatus.PENDING:
                    return copy.deepcopy(j)
            return None

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(self, job: Job) -> Job:
        """
        Append a job as pending. Returns the stored snapshot.

        A missing or negative seed in the configuration is replaced by a
        concrete random seed so the value used can be shown and reused.
        """
        with self._lock:
            new_job = self._prepare_new(job)
            self._jobs.append(new_job)
            logger.info(f"[Queue] Enqueued job {new_job.id} ({new_job.name!r})")
            self._save()
            self._emit("job:added", new_job)
            return copy.deepcopy(new_job)

    def enqueue_many(self, jobs: Iterable[Job]) -> List[Job]:
        with self._lock:
            added = []
            for job in jobs:
                new_job = self._prepare_new(job)
                self._jobs.append(new_job)
                added.append(new_job)
                self._emit("job:added", new_job)
            self._save()
            logger.info(f"[Queue] Enqueued {len(added)} jobs")
            return copy.deepcopy(added)

    def _prepare_new(self, job: Job) -> Job:
        if self._find(job.id) is not None:
            raise ValueError(f"Job {job.id} is already queued")
        new_job = copy.deepcopy(job)
        new_job.status = JobStatus.PENDING
        new_job.progress = None
        new_job.result_images = []
        new_job.error_message = None
        new_job.retry_count = 0
        new_job.created_at = time.time()
        new_job.started_at = None
        new_job.completed_at = None
        self._assign_seed_if_needed(new_job)
        return new_job

    def _assign_seed_if_needed(self, job: Job) -> None:
        try:
            config = job.config()
        except ValueError as e:
            logger.warning(f"[Queue] Job {job.id} has unreadable configuration, seed left as-is: {e}")
            return

        seed = config.get("seed")
        try:
            needs_seed = seed is None or int(seed) < 0
        except (TypeError, ValueError):
            needs_seed = True
        if not needs_seed:
            return

        config["seed"] = gen_seed()
        job.set_config(config)
        logger.debug(f"[Queue] Assigned random seed {config['seed']} to job {job.id}")

    def remove(self, job_id: str) -> bool:
        """Drop a job. Refused for the job currently being processed."""
        with self._lock:
            if job_id == self._current_job_id:
                logger.debug(f"[Queue] Refusing to remove current job {job_id}")
                return False
            idx = self._index(job_id)
            if idx is None:
                return False
            del self._jobs[idx]
            self._save()
            self._emit("job:removed", job_id=job_id)
            return True

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a pending or processing job. Cancelling the current job also
        aborts the in-flight generation through the processor's cancel handler.
        """
        with self._lock:
            job = self._find(job_id)
            if job is None:
                return False

            if job.status == JobStatus.PROCESSING:
                if job_id == self._current_job_id:
                    self._abort_in_flight(job_id)
                    self._current_job_id = None
                job.progress = None
            elif job.status != JobStatus.PENDING:
                logger.debug(f"[Queue] Cannot cancel job {job_id} in status {job.status.value}")
                return False

            job.status = JobStatus.CANCELLED
            job.completed_at = time.time()
            logger.info(f"[Queue] Cancelled job {job_id}")
            self._save()
            self._emit("job:cancelled", job)
            return True

    def move(self, job_id: str, to_index: int) -> bool:
        """Move a job to a new position (clamped to the queue bounds)."""
        with self._lock:
            idx = self._index(job_id)
            if idx is None:
                return False
            job = self._jobs.pop(idx)
            to_index = max(0, min(int(to_index), len(self._jobs)))
            self._jobs.insert(to_index, job)
            self._save()
            self._emit("queue:reordered", job)
            return True

    def retry(self, job_id: str) -> bool:
        """failed -> pending. No-op once the job has used up its retries."""
        with self._lock:
            job = self._find(job_id)
            if job is None or not job.can_retry:
                return self._reject("retry", job_id)
            job.status = JobStatus.PENDING
            job.error_message = None
            job.retry_count += 1
            job.started_at = None
            job.completed_at = None
            job.progress = None
            job.result_images = []
            logger.info(f"[Queue] Retrying job {job_id} (attempt {job.retry_count})")
            self._save()
            self._emit("job:retried", job)
            return True

    def _clear_where(self, pred: Callable[[Job], bool], label: str) -> int:
        with self._lock:
            before = len(self._jobs)
            self._jobs = [
                j for j in self._jobs if j.id == self._current_job_id or not pred(j)
            ]
            removed = before - len(self._jobs)
            if removed:
                self._save()
                self._emit("queue:cleared")
                logger.info(f"[Queue] Cleared {removed} {label} jobs")
            return removed

    def clear_completed(self) -> int:
        return self._clear_where(lambda j: j.status == JobStatus.COMPLETED, "completed")

    def clear_failed(self) -> int:
        """Removes failed and cancelled jobs."""
        return self._clear_where(
            lambda j: j.status in (JobStatus.FAILED, JobStatus.CANCELLED), "failed"
        )

    def clear_finished(self) -> int:
        return self._clear_where(lambda j: j.status in FINISHED_STATUSES, "finished")

    def clear_all(self) -> int:
        """Pause, abort the current job and drop everything."""
        with self._lock:
            self._paused = True
            if self._current_job_id is not None:
                self._abort_in_flight(self._current_job_id)
                self._current_job_id = None
            removed = len(self._jobs)
            self._jobs = []
            self._save()
            self._emit("queue:paused")
            self._emit("queue:cleared")
            logger.info(f"[Queue] Cleared all {removed} jobs")
            return removed

    # ------------------------------------------------------------------
    # Queue control
    # ------------------------------------------------------------------

    def pause(self) -> None:
        with self._lock:
            self._paused = True
            logger.info("[Queue] Paused")
            self._emit("queue:paused")

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            self._last_error = None
            logger.info("[Queue] Resumed")
            self._emit("queue:resumed")

    def pause_for_reconnection(self, error: str) -> None:
        """Pause after a connectivity failure; resume() clears the error."""
        with self._lock:
            self._paused = True
            self._last_error = error
            logger.warning(f"[Queue] Paused for reconnection: {error}")
            self._emit("queue:paused", error=error)

    # ------------------------------------------------------------------
    # Processor transitions
    # ------------------------------------------------------------------

    def set_cancel_handler(self, job_id: str, handler: Callable[[], None]) -> None:
        """Processor hook: called when the given job is cancelled mid-flight."""
        with self._lock:
            self._cancel_handler = handler
            self._cancel_handler_job_id = job_id

    def clear_cancel_handler(self, job_id: str) -> None:
        with self._lock:
            if self._cancel_handler_job_id == job_id:
                self._cancel_handler = None
                self._cancel_handler_job_id = None

    def _abort_in_flight(self, job_id: str) -> None:
        handler = self._cancel_handler
        if handler is None or self._cancel_handler_job_id != job_id:
            return
        self._cancel_handler = None
        self._cancel_handler_job_id = None
        try:
            handler()
        except Exception:
            logger.exception(f"[Queue] Cancel handler failed for job {job_id}")

    def start(self, job_id: str) -> bool:
        """pending -> processing; the job becomes current."""
        with self._lock:
            job = self._find(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return self._reject("start", job_id)
            if self._current_job_id is not None or any(
                j.status == JobStatus.PROCESSING for j in self._jobs
            ):
                logger.warning(f"[Queue] Cannot start {job_id}: another job is processing")
                return False
            job.status = JobStatus.PROCESSING
            job.started_at = time.time()
            job.completed_at = None
            job.progress = JobProgress()
            self._current_job_id = job_id
            logger.info(f"[Queue] Started job {job_id}")
            self._save()
            self._emit("job:started", job)
            return True

    def update_progress(
        self,
        job_id: str,
        progress: JobProgress,
        preview_tensor: Optional[bytes] = None,
    ) -> bool:
        """
        Replace the progress of the processing job. A preview tensor, if given,
        is decoded here with the calibration of the job's model family, without
        holding the queue lock.
        """
        preview_image = None
        if preview_tensor is not None:
            preview_image = self._decode_preview(job_id, preview_tensor)

        with self._lock:
            job = self._find(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return self._reject("progress update", job_id)

            updated = copy.deepcopy(progress)
            if preview_image is not None:
                updated.preview_image = preview_image
            if updated.preview_image is None and job.progress is not None:
                updated.preview_image = job.progress.preview_image

            job.progress = updated
            self._emit("job:progress", job)
            return True

    def _decode_preview(self, job_id: str, tensor: bytes) -> Optional[bytes]:
        with self._lock:
            job = self._find(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return None
            model = job.model_name
        try:
            return decode_tensor_to_png(tensor, self._family_for(model))
        except TensorCodecError as e:
            logger.debug(f"[Queue] Preview decode failed for job {job_id}: {e}")
            return None

    def _family_for(self, model: Optional[str]) -> Optional[LatentFamily]:
        if self._family_resolver is not None:
            try:
                family = self._family_resolver(model)
            except Exception:
                logger.exception(f"[Queue] Family resolver failed for model {model!r}")
                family = None
            if family is not None:
                return family
        return LatentFamily.detect(model)

    def complete(self, job_id: str, results: List[bytes]) -> bool:
        """processing -> completed, or -> failed when there are no results."""
        with self._lock:
            job = self._find(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return self._reject("complete", job_id)
            if not results:
                return self.fail(job_id, NO_IMAGES_MESSAGE)

            job.status = JobStatus.COMPLETED
            job.completed_at = time.time()
            job.result_images = list(results)
            job.error_message = None
            job.progress = None
            self._release_current(job_id)
            logger.info(f"[Queue] Completed job {job_id} with {len(results)} images")
            self._save()
            self._emit("job:completed", job)
            return True

    def fail(self, job_id: str, message: str) -> bool:
        with self._lock:
            job = self._find(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return self._reject("fail", job_id)
            job.status = JobStatus.FAILED
            job.completed_at = time.time()
            job.error_message = message
            job.progress = None
            self._release_current(job_id)
            logger.warning(f"[Queue] Job {job_id} failed: {message}")
            self._save()
            self._emit("job:failed", job, error=message)
            return True

    def reset_to_pending(self, job_id: str) -> bool:
        """processing -> pending after a connectivity failure. retry_count is kept."""
        with self._lock:
            job = self._find(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return self._reject("reset", job_id)
            job.status = JobStatus.PENDING
            job.started_at = None
            job.progress = None
            self._release_current(job_id)
            logger.info(f"[Queue] Reset job {job_id} to pending")
            self._save()
            self._emit("job:reset", job)
            return True

    def _release_current(self, job_id: str) -> None:
        if self._current_job_id == job_id:
            self._current_job_id = None
        self.clear_cancel_handler(job_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reject(self, action: str, job_id: Optional[str]) -> bool:
        logger.debug(f"[Queue] Rejected {action} for job {job_id}")
        return False

    def _index(self, job_id: Optional[str]) -> Optional[int]:
        for i, j in enumerate(self._jobs):
            if j.id == job_id:
                return i
        return None

    def _find(self, job_id: Optional[str]) -> Optional[Job]:
        idx = self._index(job_id)
        return self._jobs[idx] if idx is not None else None

    def _load(self) -> None:
        if self._storage is None:
            return
        jobs = self._storage.load_jobs()
        for j in jobs:
            # nothing can be mid-flight across a restart
            if j.status == JobStatus.PROCESSING:
                j.status = JobStatus.PENDING
                j.started_at = None
                j.progress = None
        self._jobs = jobs

    def _save(self) -> None:
        if self._storage is None:
            return
        self._storage.save_jobs(self._jobs)
