"""
Single worker that drives the JobQueue, one job at a time.

The loop polls at short fixed intervals: it waits while the queue is paused,
while no service is connected, and while nothing is pending. A job is then
started, its inputs encoded, and the service's event stream applied back onto
the queue. Failures are sorted into connectivity problems (queue pauses, job
goes back to pending) and generation failures (job fails).

Nothing raised while processing a job escapes the loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, List, Optional, Set, Tuple

from backends.tensor_codec import (
    TensorCodecError,
    decode_tensor_to_png,
    encode_png,
    encode_tensor,
)
from invokers.generation import (
    CompletedEvent,
    ConnectionProvider,
    ErrorEvent,
    GenerationError,
    GenerationRequest,
    GenerationService,
    ImageEvent,
    PreviewEvent,
    ProgressEvent,
    error_message,
    is_connectivity_error,
)
from invokers.job_queue import JobQueue, QueueEvent
from invokers.jobs import Job, JobProgress

logger = logging.getLogger(__name__)


class ResultCollector:
    """Lock-guarded buffer for result images; appends may come from worker threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._results: List[bytes] = []

    def add(self, data: bytes) -> None:
        with self._lock:
            self._results.append(data)

    def results(self) -> List[bytes]:
        with self._lock:
            return list(self._results)

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)


class QueueProcessor:
    """
    Processes queued jobs sequentially against the connected service.

    Usage (inside a running event loop):
        processor = QueueProcessor(queue, connection)
        processor.start()
        ...
        await processor.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        connection: ConnectionProvider,
        paused_interval_s: float = 0.5,
        disconnected_interval_s: float = 1.0,
        idle_interval_s: float = 0.5,
        dedupe_interval_s: float = 0.1,
    ):
        self.queue = queue
        self.connection = connection
        self.paused_interval_s = float(paused_interval_s)
        self.disconnected_interval_s = float(disconnected_interval_s)
        self.idle_interval_s = float(idle_interval_s)
        self.dedupe_interval_s = float(dedupe_interval_s)

        self._task: Optional[asyncio.Task] = None
        self._running = False
        # ids already picked up in this processor's lifetime; guards against
        # re-scanning a job whose state change hasn't landed yet
        self._processed_job_ids: Set[str] = set()
        self._unsubscribe = queue.subscribe(self._on_queue_event)

    def _on_queue_event(self, event: QueueEvent) -> None:
        # a user retry hands the same id back for another run
        if event.type == "job:retried" and event.job_id is not None:
            self._processed_job_ids.discard(event.job_id)

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Spawn the processing loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._processing_loop())

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._processed_job_ids.clear()
        logger.info("[Processor] Stopped")

    def clear_processed_job_ids(self) -> None:
        self._processed_job_ids.clear()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _processing_loop(self) -> None:
        logger.info("[Processor] Started")
        try:
            while self._running:
                try:
                    delay = await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("[Processor] Unexpected error in processing loop")
                    delay = self.idle_interval_s
                if delay > 0:
                    await asyncio.sleep(delay)
                else:
                    await asyncio.sleep(0)
        finally:
            self._running = False

    async def run_once(self) -> float:
        """
        One scheduling step. Processes at most one job and returns how long the
        loop should wait before the next step.
        """
        if self.queue.is_paused:
            return self.paused_interval_s

        service = self.connection.active_service if self.connection.is_connected else None
        if service is None:
            return self.disconnected_interval_s

        job = self.queue.next_pending_job()
        if job is None:
            return self.idle_interval_s

        if job.id in self._processed_job_ids:
            return self.dedupe_interval_s

        self._processed_job_ids.add(job.id)
        await self.process_job(job.id, service)
        return 0.0

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------

    async def process_job(self, job_id: str, service: GenerationService) -> None:
        if not self.queue.start(job_id):
            logger.warning(f"[Processor] Could not start job {job_id}")
            return

        loop = asyncio.get_running_loop()
        collector = ResultCollector()
        task: Optional[asyncio.Task] = None

        try:
            job = self.queue.get(job_id)
            if job is None:
                return
            request = await loop.run_in_executor(None, self._build_request, job)

            # cancelled while inputs were being encoded
            if self.queue.current_job_id != job_id:
                return

            task = asyncio.ensure_future(self._stream(job_id, service, request, collector))
            self.queue.set_cancel_handler(job_id, lambda: loop.call_soon_threadsafe(task.cancel))
            await asyncio.wait({task})
        except asyncio.CancelledError:
            # processor stopped mid-job: abort and hand the job back
            if task is not None:
                task.cancel()
            self._processed_job_ids.discard(job_id)
            self.queue.reset_to_pending(job_id)
            raise
        except Exception as e:
            self._handle_failure(job_id, e)
            return
        finally:
            self.queue.clear_cancel_handler(job_id)

        if task.cancelled():
            logger.info(f"[Processor] Generation for job {job_id} was cancelled")
            return

        exc = task.exception()
        if exc is not None:
            self._handle_failure(job_id, exc)
            return

        self.queue.complete(job_id, collector.results())

    def _handle_failure(self, job_id: str, exc: BaseException) -> None:
        message = error_message(exc)
        if is_connectivity_error(exc):
            self.queue.pause_for_reconnection(f"Connection lost: {message}")
            # let it run again after reconnection
            self._processed_job_ids.discard(job_id)
            self.queue.reset_to_pending(job_id)
        else:
            logger.error(f"[Processor] Job {job_id} failed: {message}")
            self.queue.fail(job_id, message)

    async def _stream(
        self,
        job_id: str,
        service: GenerationService,
        request: GenerationRequest,
        collector: ResultCollector,
    ) -> None:
        loop = asyncio.get_running_loop()
        stream = service.generate(request)
        try:
            async for event in stream:
                if isinstance(event, ProgressEvent):
                    self.queue.update_progress(
                        job_id,
                        JobProgress(
                            current_step=event.step,
                            total_steps=event.total,
                            stage=event.stage,
                        ),
                    )
                elif isinstance(event, PreviewEvent):
                    progress = self.queue.current_progress or JobProgress()
                    await loop.run_in_executor(
                        None, self._apply_preview, job_id, progress, event.tensor
                    )
                elif isinstance(event, ImageEvent):
                    await loop.run_in_executor(
                        None, self._collect_result, job_id, event.tensor, collector
                    )
                elif isinstance(event, ErrorEvent):
                    raise GenerationError(event.message)
                elif isinstance(event, CompletedEvent):
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _apply_preview(self, job_id: str, progress: JobProgress, tensor: bytes) -> None:
        # decoding a latent preview is numpy work; keep it off the event loop
        self.queue.update_progress(job_id, progress, preview_tensor=tensor)

    @staticmethod
    def _collect_result(job_id: str, tensor: bytes, collector: ResultCollector) -> None:
        try:
            collector.add(decode_tensor_to_png(tensor))
        except TensorCodecError as e:
            logger.warning(f"[Processor] Dropping unconvertible result for job {job_id}: {e}")

    @staticmethod
    def _build_request(job: Job) -> GenerationRequest:
        """Encode job inputs. Inputs that cannot be converted are skipped."""
        canvas: Optional[bytes] = None
        if job.canvas_image is not None:
            try:
                canvas = encode_tensor(job.canvas_image, force_rgb=True)
            except TensorCodecError as e:
                logger.warning(f"[Processor] Skipping canvas of job {job.id}: {e}")

        mask: Optional[bytes] = None
        if job.mask_image is not None:
            try:
                mask = encode_png(job.mask_image)
            except TensorCodecError as e:
                logger.warning(f"[Processor] Skipping mask of job {job.id}: {e}")

        hints: Dict[str, List[Tuple[bytes, float]]] = {}
        for hint in job.hints:
            try:
                tensor = encode_tensor(hint.image_data, force_rgb=True)
            except TensorCodecError as e:
                logger.warning(f"[Processor] Skipping {hint.type} hint of job {job.id}: {e}")
                continue
            hints.setdefault(hint.type, []).append((tensor, float(hint.weight)))

        return GenerationRequest(
            prompt=job.prompt,
            negative_prompt=job.negative_prompt,
            configuration=job.configuration,
            canvas=canvas,
            mask=mask,
            hints=hints,
        )
