"""
Tests for invokers/queue_processor.py: the single-worker processing loop.

Uses StubService/StubConnection from conftest instead of a real server.
"""

import asyncio
import io
import threading
from unittest.mock import patch

import pytest
from PIL import Image

from backends.tensor_codec import decode_tensor_to_png, read_header
from invokers.generation import (
    CompletedEvent,
    ErrorEvent,
    ImageEvent,
    PreviewEvent,
    ProgressEvent,
    is_connectivity_error,
)
from invokers.job_queue import NO_IMAGES_MESSAGE
from invokers.jobs import HintData, Job, JobStatus
from invokers.queue_processor import QueueProcessor, ResultCollector
from conftest import StubConnection, StubService, make_tensor

FAST = dict(
    paused_interval_s=0.01,
    disconnected_interval_s=0.01,
    idle_interval_s=0.01,
    dedupe_interval_s=0.01,
)


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Single job
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_happy_path(queue, happy_service):
    job = queue.enqueue(Job(prompt="a cat", negative_prompt="blurry"))
    processor = QueueProcessor(queue, StubConnection(happy_service))

    assert await processor.run_once() == 0.0

    stored = queue.get(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert len(stored.result_images) == 1
    assert stored.result_images[0].startswith(b"\x89PNG")
    assert queue.current_job_id is None

    request = happy_service.requests[0]
    assert request.prompt == "a cat"
    assert request.negative_prompt == "blurry"
    assert request.configuration == stored.configuration


@pytest.mark.asyncio
async def test_no_images_fails_job(queue):
    job = queue.enqueue(Job(prompt="a cat"))
    service = StubService(events=[ProgressEvent(1, 1), CompletedEvent()])
    await QueueProcessor(queue, StubConnection(service)).run_once()

    stored = queue.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_message == NO_IMAGES_MESSAGE


@pytest.mark.asyncio
async def test_unconvertible_result_is_dropped(queue, result_tensor):
    job = queue.enqueue(Job(prompt="a cat"))
    service = StubService(
        events=[ImageEvent(b"\x00" * 12), ImageEvent(result_tensor), CompletedEvent()]
    )
    await QueueProcessor(queue, StubConnection(service)).run_once()

    stored = queue.get(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert len(stored.result_images) == 1


@pytest.mark.asyncio
async def test_multiple_results_in_order(queue):
    red = make_tensor(1, 1, 3, [1.0, -1.0, -1.0])
    blue = make_tensor(1, 1, 3, [-1.0, -1.0, 1.0])
    job = queue.enqueue(Job(prompt="x"))
    service = StubService(events=[ImageEvent(red), ImageEvent(blue), CompletedEvent()])
    await QueueProcessor(queue, StubConnection(service)).run_once()

    results = queue.get(job.id).result_images
    pixels = [Image.open(io.BytesIO(r)).getpixel((0, 0)) for r in results]
    assert pixels == [(255, 0, 0), (0, 0, 255)]


@pytest.mark.asyncio
async def test_error_event_fails_job(queue):
    job = queue.enqueue(Job(prompt="a cat"))
    service = StubService(events=[ProgressEvent(1, 4), ErrorEvent("Model not found")])
    await QueueProcessor(queue, StubConnection(service)).run_once()

    stored = queue.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_message == "Model not found"
    assert not queue.is_paused


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        RuntimeError("Request timeout after 30s"),
        RuntimeError("Service unavailable"),
        OSError("Network is unreachable"),
        ConnectionResetError(),
        asyncio.TimeoutError(),
    ],
)
async def test_connectivity_failure_pauses_and_resets(queue, error):
    job = queue.enqueue(Job(prompt="a cat"))
    service = StubService(events=[ProgressEvent(1, 4)], error=error)
    processor = QueueProcessor(queue, StubConnection(service))

    await processor.run_once()

    stored = queue.get(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.retry_count == 0
    assert stored.progress is None
    assert queue.is_paused
    assert queue.last_error.startswith("Connection lost: ")
    assert queue.current_job_id is None
    assert job.id not in processor._processed_job_ids


@pytest.mark.asyncio
async def test_job_runs_again_after_reconnect(queue, result_tensor):
    job = queue.enqueue(Job(prompt="a cat"))
    service = StubService(error=RuntimeError("connection refused"))
    processor = QueueProcessor(queue, StubConnection(service))
    await processor.run_once()
    assert queue.is_paused

    service.error = None
    service.events = [ImageEvent(result_tensor), CompletedEvent()]
    queue.resume()
    assert queue.last_error is None

    assert await processor.run_once() == 0.0
    assert queue.get(job.id).status == JobStatus.COMPLETED
    assert len(service.requests) == 2


@pytest.mark.asyncio
async def test_other_exception_fails_job(queue):
    job = queue.enqueue(Job(prompt="a cat"))
    service = StubService(error=ValueError("CUDA out of memory"))
    await QueueProcessor(queue, StubConnection(service)).run_once()

    stored = queue.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_message == "CUDA out of memory"
    assert not queue.is_paused


@pytest.mark.asyncio
async def test_retried_job_is_processed_again(queue, result_tensor):
    job = queue.enqueue(Job(prompt="a cat"))
    service = StubService(events=[ErrorEvent("sampler crashed")])
    processor = QueueProcessor(queue, StubConnection(service))
    await processor.run_once()
    assert queue.get(job.id).status == JobStatus.FAILED

    service.events = [ImageEvent(result_tensor), CompletedEvent()]
    assert queue.retry(job.id)

    assert await processor.run_once() == 0.0
    stored = queue.get(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.retry_count == 1


# ---------------------------------------------------------------------------
# Progress + previews
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_progress_and_preview_applied(queue, result_tensor):
    job = queue.enqueue(Job(prompt="x", configuration={"model": "flux1-schnell"}))
    observed = []

    def snapshot(event):
        progress = queue.current_progress
        observed.append(
            (type(event).__name__, progress.current_step, progress.stage, progress.preview_image is not None)
        )

    service = StubService(
        events=[
            ProgressEvent(1, 4, "sampling"),
            PreviewEvent(make_tensor(2, 2, 16)),
            ProgressEvent(2, 4, "sampling"),
            ImageEvent(result_tensor),
        ],
        on_event=snapshot,
    )
    await QueueProcessor(queue, StubConnection(service)).run_once()

    assert observed == [
        ("ProgressEvent", 1, "sampling", False),
        ("PreviewEvent", 1, "sampling", True),
        ("ProgressEvent", 2, "sampling", True),
        ("ImageEvent", 2, "sampling", True),
    ]
    # stream ended without CompletedEvent: still completes with what arrived
    stored = queue.get(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress is None


@pytest.mark.asyncio
async def test_preview_decoded_off_event_loop(queue, result_tensor):
    queue.enqueue(Job(prompt="x"))
    decode_threads = []

    def decode(tensor, family):
        decode_threads.append(threading.get_ident())
        return decode_tensor_to_png(tensor, family)

    service = StubService(events=[PreviewEvent(make_tensor(2, 2, 4)), ImageEvent(result_tensor)])
    with patch("invokers.job_queue.decode_tensor_to_png", side_effect=decode):
        await QueueProcessor(queue, StubConnection(service)).run_once()

    assert len(decode_threads) == 1
    assert decode_threads[0] != threading.get_ident()


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------

def test_build_request_encodes_inputs(test_image_bytes, transparent_image_bytes):
    job = Job(
        prompt="x",
        canvas_image=transparent_image_bytes,
        mask_image=test_image_bytes,
        hints=[
            HintData("depth", test_image_bytes, 0.5),
            HintData("depth", transparent_image_bytes, 1.0),
            HintData("pose", b"not an image"),
        ],
    )
    request = QueueProcessor._build_request(job)

    canvas = read_header(request.canvas)
    assert canvas.channels == 3
    assert (canvas.height, canvas.width) == (3, 4)

    assert request.mask.startswith(b"\x89PNG")

    assert list(request.hints) == ["depth"]
    weights = [w for _, w in request.hints["depth"]]
    assert weights == [0.5, 1.0]
    assert all(read_header(t).channels == 3 for t, _ in request.hints["depth"])


def test_build_request_skips_bad_canvas():
    request = QueueProcessor._build_request(Job(prompt="x", canvas_image=b"junk", mask_image=b"junk"))
    assert request.canvas is None
    assert request.mask is None
    assert request.hints == {}


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_run_once_intervals(queue, happy_service):
    processor = QueueProcessor(
        queue,
        StubConnection(happy_service),
        paused_interval_s=0.5,
        disconnected_interval_s=1.0,
        idle_interval_s=0.25,
        dedupe_interval_s=0.1,
    )
    assert await processor.run_once() == 0.25

    queue.pause()
    assert await processor.run_once() == 0.5
    queue.resume()

    processor.connection.is_connected = False
    assert await processor.run_once() == 1.0
    processor.connection.is_connected = True

    job = queue.enqueue(Job(prompt="x"))
    processor._processed_job_ids.add(job.id)
    assert await processor.run_once() == 0.1
    assert queue.get(job.id).status == JobStatus.PENDING

    processor.clear_processed_job_ids()
    assert await processor.run_once() == 0.0
    assert queue.get(job.id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_disconnected_waits_without_pausing(queue, happy_service):
    job = queue.enqueue(Job(prompt="x"))
    for connection in (StubConnection(happy_service, connected=False), StubConnection(None)):
        processor = QueueProcessor(queue, connection)
        assert await processor.run_once() == processor.disconnected_interval_s

    assert not queue.is_paused
    assert queue.get(job.id).status == JobStatus.PENDING
    assert happy_service.requests == []


@pytest.mark.asyncio
async def test_loop_processes_in_queue_order(queue, happy_service):
    max_processing = []
    queue.subscribe(lambda event: max_processing.append(queue.processing_count))

    for prompt in ("first", "second", "third"):
        queue.enqueue(Job(prompt=prompt))
    last = queue.jobs[-1]
    queue.move(last.id, 0)

    processor = QueueProcessor(queue, StubConnection(happy_service), **FAST)
    processor.start()
    assert processor.is_running
    try:
        await _wait_for(lambda: len(queue.completed_jobs) == 3)
    finally:
        await processor.stop()

    assert [r.prompt for r in happy_service.requests] == ["third", "first", "second"]
    assert max(max_processing) <= 1
    assert not processor.is_running


@pytest.mark.asyncio
async def test_loop_survives_unexpected_errors(queue, happy_service):
    class FlakyConnection:
        calls = 0

        @property
        def is_connected(self):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("provider glitch")
            return True

        active_service = happy_service

    job = queue.enqueue(Job(prompt="x"))
    processor = QueueProcessor(queue, FlakyConnection(), **FAST)
    processor.start()
    try:
        await _wait_for(lambda: queue.get(job.id).status == JobStatus.COMPLETED)
    finally:
        await processor.stop()


@pytest.mark.asyncio
async def test_start_twice_keeps_one_loop(queue, happy_service):
    processor = QueueProcessor(queue, StubConnection(happy_service), **FAST)
    processor.start()
    first = processor._task
    processor.start()
    assert processor._task is first
    await processor.stop()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_in_flight(queue):
    job = queue.enqueue(Job(prompt="x"))
    service = StubService(events=[ProgressEvent(1, 10)], block=True)
    processor = QueueProcessor(queue, StubConnection(service))

    run = asyncio.ensure_future(processor.run_once())
    await asyncio.wait_for(service.started.wait(), 2)
    await _wait_for(lambda: queue.current_progress is not None and queue.current_progress.current_step == 1)

    assert queue.cancel(job.id)
    assert await asyncio.wait_for(run, 2) == 0.0

    assert service.cancelled
    stored = queue.get(job.id)
    assert stored.status == JobStatus.CANCELLED
    assert stored.result_images == []
    assert queue.current_job_id is None


@pytest.mark.asyncio
async def test_stop_mid_job_resets_to_pending(queue):
    job = queue.enqueue(Job(prompt="x"))
    service = StubService(block=True)
    processor = QueueProcessor(queue, StubConnection(service), **FAST)

    processor.start()
    await asyncio.wait_for(service.started.wait(), 2)
    await processor.stop()
    await asyncio.sleep(0.05)

    stored = queue.get(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.retry_count == 0
    assert queue.current_job_id is None
    assert service.cancelled
    assert processor._processed_job_ids == set()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_result_collector_is_thread_safe():
    collector = ResultCollector()

    def add_many():
        for _ in range(200):
            collector.add(b"x")

    threads = [threading.Thread(target=add_many) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(collector) == 1600
    assert len(collector.results()) == 1600


@pytest.mark.parametrize(
    "error,expected",
    [
        (RuntimeError("Connection reset by peer"), True),
        (RuntimeError("server REFUSED the request"), True),
        (TimeoutError(), True),
        (ConnectionAbortedError(), True),
        (RuntimeError("Invalid prompt"), False),
        (ValueError(""), False),
    ],
)
def test_is_connectivity_error(error, expected):
    assert is_connectivity_error(error) is expected
