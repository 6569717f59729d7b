"""FastAPI application entry point for the Tool Gateway."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tool_gateway import __version__
from tool_gateway.api.routes import (
    router,
    get_event_bus,
    get_session_manager,
    get_supervisor,
)
from tool_gateway.config import get_settings, load_launch_specs

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info(f"Starting Tool Gateway v{__version__}")

    specs = load_launch_specs(settings.providers_file)
    if not specs:
        logger.warning("No providers configured (set PROVIDERS_FILE to a launch spec file)")

    supervisor = get_supervisor()
    sessions = get_session_manager()
    background = [
        asyncio.create_task(sessions.run_heartbeats(), name="session-heartbeats"),
        asyncio.create_task(sessions.run_event_pump(get_event_bus()), name="session-events"),
    ]

    await supervisor.start_all(specs)
    logger.info(
        f"Gateway ready on http://{settings.host}:{settings.port} "
        f"(SSE: /sse, JSON-RPC: /mcp, health: /health)"
    )

    yield

    # Shutdown
    closed = sessions.close_all()
    logger.info(f"Closed {closed} SSE sessions")
    for task in background:
        task.cancel()
    for task in background:
        try:
            await task
        except asyncio.CancelledError:
            pass
    await supervisor.shutdown()
    logger.info("Shutting down Tool Gateway")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Tool Gateway",
        description="Local tool-invocation gateway for MCP clients",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )

    # The browser extension connects from its own origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Authorization", "Cache-Control"],
    )

    app.include_router(router)

    return app


# Create app instance for uvicorn
app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "tool_gateway.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
