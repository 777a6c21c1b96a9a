"""FastAPI application entry point for the execution tracker backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_tracker as set_routes_tracker
from api.websocket import set_tracker as set_websocket_tracker
from api.websocket import websocket_router
from config import configure_logging, settings
from events import get_state_bus
from models.database import ExecutionStore
from orchestrator_client import OrchestratorClient
from tracker import build_tracker

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Opens durable storage and the orchestrator client, wires the tracker,
    and starts the push channel listener.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        orchestrator_base_url=settings.orchestrator_base_url,
    )

    execution_store = ExecutionStore(settings.database_path)
    try:
        await execution_store.init()
    except Exception as e:
        # Keep the live view available even if persistence initialization fails.
        logger.warning("execution_store_init_failed", error=str(e))

    orchestrator = OrchestratorClient(
        settings.orchestrator_base_url,
        events_path=settings.orchestrator_events_path,
        timeout=settings.orchestrator_request_timeout_seconds,
    )
    tracker = build_tracker(settings, execution_store, orchestrator, get_state_bus())

    set_routes_tracker(tracker)
    set_websocket_tracker(tracker)

    app.state.tracker = tracker
    app.state.execution_store = execution_store
    app.state.orchestrator = orchestrator

    await tracker.load_history()
    await tracker.start_channel_listener(orchestrator.stream_events)

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")

    await app.state.tracker.cleanup_all()
    await app.state.orchestrator.close()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Swarm Execution Tracker",
    description="Live view, history, and tool approvals for agent swarm executions.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["executions"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Swarm Execution Tracker API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
