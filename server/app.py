"""
FastAPI application wiring: queue + processor + WS hub.

The generation service client is supplied by the host application through a
ConnectionProvider; this module only owns queue lifecycle.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from invokers.generation import ConnectionProvider
from invokers.job_queue import JobQueue
from invokers.queue_processor import QueueProcessor
from invokers.queue_storage import QueueStorage
from server.logging_config import configure_logging
from server.queue_config import QueueSettings, get_queue_settings
from server.queue_routes import router
from server.ws_hub import WSHub

logger = logging.getLogger(__name__)


def create_app(
    connection: ConnectionProvider,
    settings: Optional[QueueSettings] = None,
    queue: Optional[JobQueue] = None,
) -> FastAPI:
    """
    Build the queue API.

    Args:
        connection: reports connectivity and hands out the active generation service
        settings: queue settings; loaded from conf/queue.yml + env (and logging
            configured from them) when omitted
        queue: pre-built queue; by default one persisted at settings.storage_path
    """
    if settings is None:
        settings = get_queue_settings()
        configure_logging(settings.log_level)

    if queue is None:
        queue = JobQueue(
            storage=QueueStorage(settings.storage_path),
            start_paused=settings.start_paused,
        )

    processor = QueueProcessor(queue, connection, **settings.processor_kwargs())
    hub = WSHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        hub.attach(queue)
        processor.start()
        logger.info(f"[App] Queue processor running ({queue.pending_count} pending)")
        try:
            yield
        finally:
            await processor.stop()
            hub.detach()

    app = FastAPI(title="Generation Queue", lifespan=lifespan)
    app.state.settings = settings
    app.state.queue = queue
    app.state.processor = processor
    app.state.hub = hub
    app.include_router(router)
    return app
