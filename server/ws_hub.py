"""
ws_hub.py: WebSocket client registry + queue event fan-out.

The hub subscribes to a JobQueue and pushes every QueueEvent to all connected
clients as a JSON envelope: {"type": "job:progress", "jobId": ..., ...}.
Queue events may fire from any thread; they are marshalled onto the hub's
event loop before sending.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, Optional, Tuple

from fastapi import WebSocket

from invokers.job_queue import JobQueue, QueueEvent

logger = logging.getLogger(__name__)


class WSHub:
    """Sockets keyed by client id. A socket that fails a send is dropped."""

    def __init__(self):
        self._sockets: Dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def client_count(self) -> int:
        return len(self._sockets)

    async def connect(self, ws: WebSocket, client_id: str) -> None:
        """Register an accepted socket. Reusing a client_id replaces the old socket."""
        async with self._lock:
            self._sockets[client_id] = ws
            total = len(self._sockets)
        logger.info(f"[WS] Client {client_id} connected ({total} total)")

    async def disconnect(self, client_id: str) -> None:
        async with self._lock:
            if self._sockets.pop(client_id, None) is None:
                return
            total = len(self._sockets)
        logger.info(f"[WS] Client {client_id} disconnected ({total} total)")

    async def send(self, client_id: str, msg: dict) -> bool:
        """Deliver to one client. False if it is unknown or was dropped."""
        async with self._lock:
            ws = self._sockets.get(client_id)
        if ws is None:
            return False
        return await self._deliver([(client_id, ws)], msg) == 1

    async def broadcast(self, msg: dict) -> int:
        """Deliver to every client; returns how many received it."""
        async with self._lock:
            targets = list(self._sockets.items())
        return await self._deliver(targets, msg)

    async def _deliver(self, targets: Iterable[Tuple[str, WebSocket]], msg: dict) -> int:
        delivered = 0
        for client_id, ws in targets:
            try:
                await ws.send_json(msg)
            except Exception as e:
                logger.warning(f"[WS] {msg.get('type')} to {client_id} failed ({e}), dropping client")
                await self.disconnect(client_id)
            else:
                delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Queue bridge
    # ------------------------------------------------------------------

    def attach(self, queue: JobQueue, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Forward queue events to clients. Call from the loop that owns the sockets."""
        self.detach()
        self._loop = loop or asyncio.get_running_loop()
        self._unsubscribe = queue.subscribe(self.publish)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def publish(self, event: QueueEvent) -> None:
        """Queue subscriber: schedule a broadcast of the event on the hub's loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        msg = event.to_message()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            loop.create_task(self.broadcast(msg))
        else:
            # from a worker thread
            asyncio.run_coroutine_threadsafe(self.broadcast(msg), loop)
