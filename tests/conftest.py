"""
Shared pytest fixtures: test images, tensors, stub generation services.
"""

import asyncio
import io
import os
import sys

import numpy as np
import pytest
from PIL import Image

# Add project root to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from backends.tensor_codec import HEADER_FIELDS, encode_tensor
from invokers.generation import CompletedEvent, ImageEvent
from invokers.job_queue import JobQueue
from invokers.queue_storage import MemoryQueueStorage


def png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_tensor(height, width, channels, values=None, compression=0) -> bytes:
    """Build a raw wire tensor from float values (defaults to zeros)."""
    header = np.zeros(HEADER_FIELDS, dtype="<u4")
    header[0] = compression
    header[1] = 0x1
    header[2] = 0x02
    header[3] = 0x20000
    header[5] = 1
    header[6] = height
    header[7] = width
    header[8] = channels
    if values is None:
        values = np.zeros(height * width * channels, dtype=np.float32)
    payload = np.asarray(values, dtype="<f2").reshape(-1)
    return header.tobytes() + payload.tobytes()


class StubConnection:
    """ConnectionProvider with settable state."""

    def __init__(self, service=None, connected=True):
        self.active_service = service
        self.is_connected = connected


class StubService:
    """
    GenerationService replaying a fixed list of events.

    error: raised after the events are exhausted
    block: wait forever after the events (until cancelled)
    """

    def __init__(self, events=None, error=None, block=False, on_event=None):
        self.events = list(events or [])
        self.error = error
        self.block = block
        self.on_event = on_event
        self.requests = []
        self.started = asyncio.Event()
        self.cancelled = False

    async def generate(self, request):
        self.requests.append(request)
        self.started.set()
        for event in self.events:
            yield event
            if self.on_event is not None:
                self.on_event(event)
        if self.error is not None:
            raise self.error
        if self.block:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise


@pytest.fixture
def test_image():
    """8x8 opaque RGB image."""
    return Image.new("RGB", (8, 8), color=(100, 150, 200))


@pytest.fixture
def test_image_bytes(test_image):
    return png_bytes(test_image)


@pytest.fixture
def transparent_image_bytes():
    img = Image.new("RGBA", (4, 3), color=(10, 20, 30, 255))
    img.putpixel((1, 1), (10, 20, 30, 0))
    return png_bytes(img)


@pytest.fixture
def result_tensor(test_image):
    return encode_tensor(test_image, force_rgb=True)


@pytest.fixture
def storage():
    return MemoryQueueStorage()


@pytest.fixture
def queue(storage):
    return JobQueue(storage=storage)


@pytest.fixture
def happy_service(result_tensor):
    return StubService(events=[ImageEvent(result_tensor), CompletedEvent()])


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: mark test as slow")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "ws: mark test as WebSocket test")


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)
        elif "test_" in item.nodeid:
            item.add_marker(pytest.mark.unit)

        mod = getattr(item, "module", None)
        modfile = getattr(mod, "__file__", "") or ""
        if os.path.basename(modfile).startswith("test_ws_"):
            item.add_marker(pytest.mark.ws)
