# server/run.py
import uvicorn

from invokers.generation import ConnectionProvider
from server.app import create_app
from server.logging_config import build_logging_config
from server.queue_config import get_queue_settings


def serve(connection: ConnectionProvider, host: str = "0.0.0.0", port: int = 4200) -> None:
    """Run the queue API for the given connection (blocks until shutdown)."""
    settings = get_queue_settings()
    app = create_app(connection, settings=settings)
    uvicorn.run(
        app,
        host=host,
        port=port,
        reload=False,
        log_config=build_logging_config(settings.log_level),
        log_level=None,
        access_log=True,
    )
