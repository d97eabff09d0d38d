"""FastAPI server for CodeSense realtime collaboration."""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__
from .config import settings
from .models import (
    BroadcastEvent,
    ChannelsResponse,
    Collaborator,
    CursorMessage,
    CursorRecord,
    EventMessage,
    HealthResponse,
)
from .pubsub import close_transport, get_transport
from .services.channels import ChannelAcquireError, ChannelRegistry
from .services.debug_session import DebugSession, session_channel_name
from .services.presence import roster_from_presence

logger = logging.getLogger(__name__)


# ============ SECURITY MIDDLEWARE ============


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid4())

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"

        if not settings.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info(f"Starting CodeSense collaboration server v{__version__}")

    if not settings.debug and settings.cors_allowed_origins == "*":
        logger.warning(
            "SECURITY WARNING: CORS is configured to allow all origins ('*'). "
            "Set CORS_ALLOWED_ORIGINS to specific domains in production."
        )

    transport = await get_transport()
    registry = ChannelRegistry(transport)
    registry.start()
    app.state.registry = registry
    yield
    await registry.close()
    await close_transport()


app = FastAPI(
    title="CodeSense Collaboration Server",
    description="Realtime collaboration for CodeSense debug sessions",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


def get_registry(request: Request) -> ChannelRegistry:
    return request.app.state.registry


# ============ EXCEPTION HANDLERS ============


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent response format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions with a generic message."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "An internal server error occurred. Please try again."},
    )


# ============ HEALTH ENDPOINTS ============


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        transport=get_registry(request).transport.name,
    )


@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with API info."""
    return {
        "name": "CodeSense Collaboration Server",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ============ CHANNEL ENDPOINTS ============


@app.get("/v1/channels", response_model=ChannelsResponse, tags=["Channels"])
async def list_channels(request: Request) -> ChannelsResponse:
    """Snapshot of the channel registry of this server process."""
    channels = get_registry(request).snapshot()
    return ChannelsResponse(channels=channels, total=len(channels))


@app.get("/v1/sessions/{session_id}/collaborators", response_model=list[Collaborator], tags=["Sessions"])
async def list_collaborators(session_id: str, request: Request) -> list[Collaborator]:
    """Current presence roster of a debug session."""
    registry = get_registry(request)
    try:
        async with await registry.acquire(session_channel_name(session_id)) as lease:
            state = await lease.channel.presence_state()
    except ChannelAcquireError:
        raise HTTPException(status_code=503, detail="Session channel unavailable")
    return roster_from_presence(state)


# ============ SESSION WEBSOCKET ============


def _cursor_json(cursors: list[CursorRecord]) -> list[dict]:
    return [asdict(c) for c in cursors]


async def handle_client_message(session: DebugSession, websocket: WebSocket, raw: str) -> None:
    """Apply one message from the browser to the session."""
    if len(raw) > settings.max_ws_message_size:
        await websocket.send_json({"type": "error", "error": "Message too large"})
        return

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        await websocket.send_json({"type": "error", "error": "Invalid JSON"})
        return

    message_type = data.get("type") if isinstance(data, dict) else None
    try:
        if message_type == "cursor":
            message = CursorMessage.model_validate(data)
            await session.move_cursor(message.x, message.y)
        elif message_type == "event":
            message = EventMessage.model_validate(data)
            await session.broadcast(message.event_type, message.payload)
        else:
            await websocket.send_json({"type": "error", "error": f"Unknown message type: {message_type}"})
    except ValidationError as e:
        await websocket.send_json({"type": "error", "error": f"Invalid {message_type} message: {e.errors()[0]['msg']}"})


@app.websocket("/v1/sessions/{session_id}/ws")
async def session_websocket(
    websocket: WebSocket,
    session_id: str,
    user_id: str = Query(..., min_length=1),
    email: str | None = Query(default=None),
):
    """Join a debug session and stream roster, cursor and event updates."""
    registry: ChannelRegistry = websocket.app.state.registry
    await websocket.accept()

    async def send_roster(collaborators: list[Collaborator]) -> None:
        await websocket.send_json(
            {"type": "roster", "collaborators": [c.model_dump(mode="json") for c in collaborators]}
        )

    async def send_cursors(cursors: list[CursorRecord]) -> None:
        await websocket.send_json({"type": "cursors", "cursors": _cursor_json(cursors)})

    async def send_event(event: BroadcastEvent) -> None:
        await websocket.send_json({"type": "event", "event": event.model_dump(mode="json")})

    session = DebugSession(
        registry,
        session_id,
        user_id,
        email,
        on_event=send_event,
        on_roster=send_roster,
        on_cursors=send_cursors,
    )

    try:
        await session.join()
        while True:
            raw = await websocket.receive_text()
            await handle_client_message(session, websocket, raw)
    except ChannelAcquireError as e:
        logger.error(f"Could not join debug session {session_id}: {e}")
        await websocket.send_json({"type": "error", "error": "Session channel unavailable"})
        await websocket.close(code=1011)
    except WebSocketDisconnect:
        logger.debug(f"WebSocket closed for {user_id} in session {session_id}")
    finally:
        await session.leave()


# ============ MAIN ============


def main():
    """Run the server with uvicorn."""
    import uvicorn

    uvicorn.run(
        "codesense.server:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
