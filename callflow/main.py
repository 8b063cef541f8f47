"""
FastAPI server for the callflow service.

This module builds the orchestrator and the FastAPI application around it:
the call-stream WebSocket at ``/ws/calls`` for media gateways, the REST API
for routing, conversations and workflows, and the health endpoints. The
workflow scheduler runs for the lifetime of the application.
"""

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path

import dotenv
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from callflow.api import router as api_router
from callflow.config.constants import DEFAULT_BUSINESS_ID, DEFAULT_BUSINESS_NAME, WILDCARD
from callflow.config.logging_config import configure_logging
from callflow.core.orchestrator import CallflowOrchestrator
from callflow.errors import (
    CallflowError,
    ConversationClosedError,
    InvalidInputError,
    InvalidStateTransitionError,
    NoRouteAvailableError,
    NotFoundError,
)
from callflow.models.call import PhoneAgentConfig, Route
from callflow.services.business_data import InMemoryBusinessDataProvider
from callflow.services.messaging import HttpMessagingProvider, LoggingMessagingProvider
from callflow.websocket_manager import WebSocketManager

# Load environment variables from .env file if it exists
env_path = Path(".") / ".env"
if env_path.exists():
    dotenv.load_dotenv(env_path)

# Configure logging
logger = configure_logging()

# Get configuration from environment variables
PORT = int(os.getenv("PORT", "8000"))
HOST = os.getenv("HOST", "0.0.0.0")
BUSINESS_DATA_FILE = os.getenv("BUSINESS_DATA_FILE")


def load_business_data(path=BUSINESS_DATA_FILE) -> InMemoryBusinessDataProvider:
    """Build the data provider from a JSON file, or seed a demo business.

    Args:
        path: JSON file mapping business ids to business data; optional

    Returns:
        InMemoryBusinessDataProvider: The provider backing the orchestrator
    """
    if path:
        with open(path, encoding="utf-8") as f:
            businesses = json.load(f)
        logger.info(f"Loaded {len(businesses)} business(es) from {path}")
        return InMemoryBusinessDataProvider(businesses)

    logger.info(f"No BUSINESS_DATA_FILE set; seeding demo business '{DEFAULT_BUSINESS_ID}'")
    return InMemoryBusinessDataProvider(
        {DEFAULT_BUSINESS_ID: {"profile": {"name": DEFAULT_BUSINESS_NAME}}}
    )


def build_orchestrator() -> CallflowOrchestrator:
    messaging = HttpMessagingProvider() if os.getenv("MESSAGING_RELAY_URL") else LoggingMessagingProvider()
    orchestrator = CallflowOrchestrator(load_business_data(), messaging=messaging)
    orchestrator.register_route(
        Route(
            business_id=WILDCARD,
            pattern=WILDCARD,
            agent_config=PhoneAgentConfig(business_id=DEFAULT_BUSINESS_ID),
            is_default=True,
        )
    )
    return orchestrator


orchestrator = build_orchestrator()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the workflow scheduler while the application is up."""
    orchestrator.start()
    try:
        yield
    finally:
        orchestrator.stop()
        logger.info("Callflow service stopped")


# Create FastAPI application
app = FastAPI(
    title="Callflow",
    description="Call routing, conversational agents and workflow automation for service businesses",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.orchestrator = orchestrator
app.include_router(api_router, prefix="/api")

# Create WebSocket manager
websocket_manager = WebSocketManager(orchestrator)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    if isinstance(exc, (InvalidStateTransitionError, ConversationClosedError)):
        return _error(409, exc)
    return _error(400, exc)


@app.exception_handler(NoRouteAvailableError)
async def no_route_handler(request: Request, exc: NoRouteAvailableError):
    return _error(503, exc)


@app.exception_handler(CallflowError)
async def callflow_error_handler(request: Request, exc: CallflowError):
    logger.error(f"Unhandled callflow error on {request.url.path}: {exc}")
    return _error(500, exc)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(422, exc)


@app.websocket("/ws/calls")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for media gateways.

    A gateway answers routed calls, streams caller utterances as base64
    audio and ends calls over this connection. Calls still open when the
    connection drops are ended automatically.
    """
    await websocket_manager.handle_websocket(websocket)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring system status.

    Returns:
        dict: Status information with route, call, conversation and workflow counts.
    """
    details = orchestrator.health()
    return {"status": "healthy" if details["agents_healthy"] else "degraded", **details}


@app.get("/")
async def root():
    """Root endpoint to display basic information about the API.

    Returns:
        dict: Basic information about the API and its endpoints.
    """
    return {
        "name": "Callflow",
        "description": "Call routing, conversational agents and workflow automation for service businesses",
        "version": "1.0.0",
        "endpoints": {
            "/ws/calls": "WebSocket endpoint for media gateways",
            "/api": "REST API for calls, routing, conversations and workflows",
            "/health": "Health check endpoint",
        },
    }


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting server on http://{HOST}:{PORT}")
    uvicorn.run(app, host=HOST, port=PORT, websocket_max_size=16777216, http="h11")
