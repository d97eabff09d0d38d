"""Pydantic models and records for the CodeSense collaboration server."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


# ============ ENUMS ============


class EventType(str, Enum):
    """Debug session broadcast event types."""

    CURSOR_UPDATE = "CURSOR_UPDATE"
    CODE_UPDATE = "CODE_UPDATE"
    EXECUTION_RESULT = "EXECUTION_RESULT"


# ============ RECORDS ============


@dataclass(frozen=True)
class CursorRecord:
    """Last known pointer position of one collaborator."""

    collaborator_id: str
    x: float
    y: float
    label: str


# ============ WIRE MODELS ============


class CursorPayload(BaseModel):
    """Payload of a CURSOR_UPDATE event."""

    x: float
    y: float


class BroadcastEvent(BaseModel):
    """Event fanned out to every subscriber of a debug session channel."""

    type: EventType
    payload: Any = None
    sender: str | None = Field(default=None, description="User ID of the sender")


class Collaborator(BaseModel):
    """Presence entry for a user in a debug session."""

    user_id: str
    email: str | None = None
    joined_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============ CLIENT MESSAGES (WebSocket) ============


class CursorMessage(BaseModel):
    """Local pointer movement sent by a browser client."""

    type: Literal["cursor"]
    x: float
    y: float


class EventMessage(BaseModel):
    """Debug event a browser client wants to broadcast."""

    type: Literal["event"]
    event_type: EventType
    payload: Any = None


# ============ RESPONSE MODELS ============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(default="healthy")
    version: str = Field(default="1.0.0")
    transport: str = Field(default="local", description="Active pub/sub transport")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChannelInfo(BaseModel):
    """Registry entry as reported by the status endpoint."""

    name: str
    ref_count: int
    idle_seconds: float


class ChannelsResponse(BaseModel):
    """Channel registry snapshot."""

    channels: list[ChannelInfo] = Field(default_factory=list)
    total: int = 0
