"""Collaborative debug session on top of the channel registry.

Each participant view:
- acquires the shared `debug_session:<id>` channel through the registry
- tracks itself in channel presence (key = user id)
- broadcasts `debug_event` messages stamped with its user id as sender
- ignores its own events, applies remote CURSOR_UPDATEs from collaborators
  on the roster, and hands every other event to `on_event`
- prunes remote cursors whenever the roster changes
"""

from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any, Callable

from pydantic import ValidationError

from ..models import BroadcastEvent, Collaborator, CursorPayload, CursorRecord, EventType
from ..pubsub import PRESENCE_EVENT
from .cursors import CursorStore
from .presence import render_cursors, roster_from_presence

if TYPE_CHECKING:
    from .channels import ChannelLease, ChannelRegistry

logger = logging.getLogger(__name__)

DEBUG_EVENT = "debug_event"


def session_channel_name(session_id: str) -> str:
    return f"debug_session:{session_id}"


async def _notify(callback: Callable | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class DebugSession:
    """One participant's view of a collaborative debug session."""

    def __init__(
        self,
        registry: ChannelRegistry,
        session_id: str,
        user_id: str,
        email: str | None = None,
        *,
        cursor_store: CursorStore | None = None,
        on_event: Callable[[BroadcastEvent], Any] | None = None,
        on_roster: Callable[[list[Collaborator]], Any] | None = None,
        on_cursors: Callable[[list[CursorRecord]], Any] | None = None,
    ) -> None:
        self.registry = registry
        self.session_id = session_id
        self.user_id = user_id
        self.email = email
        self.cursor_store = cursor_store or CursorStore()
        self.on_event = on_event
        self.on_roster = on_roster
        self.on_cursors = on_cursors

        self.collaborators: list[Collaborator] = []
        self.last_event: BroadcastEvent | None = None
        self._lease: ChannelLease | None = None
        self._removers: list[Callable[[], None]] = []

    @property
    def channel_name(self) -> str:
        return session_channel_name(self.session_id)

    @property
    def joined(self) -> bool:
        return self._lease is not None

    async def join(self) -> None:
        """Join the session channel and announce presence.

        Raises:
            ChannelAcquireError: the channel could not be subscribed
        """
        if self._lease is not None:
            return

        lease = await self.registry.acquire(self.channel_name, {"presence": {"key": self.user_id}})
        channel = lease.channel
        self._lease = lease
        self._removers = [
            channel.on(PRESENCE_EVENT, self._on_presence),
            channel.on(DEBUG_EVENT, self._on_debug_event),
        ]

        me = Collaborator(user_id=self.user_id, email=self.email)
        try:
            await channel.track(self.user_id, me.model_dump(mode="json"))
        except Exception:
            self._detach()
            raise

        await self.sync_presence()
        logger.info(f"User {self.user_id} joined debug session {self.session_id}")

    async def leave(self) -> None:
        """Leave the session. Safe to call more than once."""
        if self._lease is None:
            return

        channel = self._lease.channel
        self._detach_handlers()
        try:
            await channel.untrack(self.user_id)
        except Exception as e:
            logger.warning(f"Failed to untrack {self.user_id} from {self.channel_name}: {e}")
        finally:
            self._detach()
            self.cursor_store.clear()
            logger.info(f"User {self.user_id} left debug session {self.session_id}")

    def _detach_handlers(self) -> None:
        for remove in self._removers:
            remove()
        self._removers = []

    def _detach(self) -> None:
        self._detach_handlers()
        if self._lease is not None:
            self._lease.release()
            self._lease = None

    async def broadcast(self, event_type: EventType, payload: Any = None) -> BroadcastEvent | None:
        """Send an event to every participant, stamped with the local user."""
        if self._lease is None:
            logger.debug(f"Broadcast on {self.channel_name} skipped: session not joined")
            return None

        event = BroadcastEvent(type=event_type, payload=payload, sender=self.user_id)
        await self._lease.channel.send(DEBUG_EVENT, event.model_dump(mode="json"))
        return event

    async def move_cursor(self, x: float, y: float) -> bool:
        """Throttle and broadcast a local pointer movement.

        Returns:
            True if the movement was broadcast, False if throttled
        """
        event = self.cursor_store.record_local_movement(x, y)
        if event is None:
            return False
        await self.broadcast(event.type, event.payload)
        return True

    def cursors(self) -> list[CursorRecord]:
        """Remote cursors to draw for the local user."""
        return render_cursors(self.cursor_store.records, self.user_id)

    def find_collaborator(self, user_id: str | None) -> Collaborator | None:
        for collaborator in self.collaborators:
            if collaborator.user_id == user_id:
                return collaborator
        return None

    async def sync_presence(self) -> None:
        """Reload the roster from channel presence and prune stale cursors."""
        if self._lease is None:
            return

        state = await self._lease.channel.presence_state()
        self.collaborators = roster_from_presence(state)
        removed = self.cursor_store.prune({c.user_id for c in self.collaborators})

        await _notify(self.on_roster, list(self.collaborators))
        if removed:
            await _notify(self.on_cursors, self.cursors())

    async def _on_presence(self, payload: Any) -> None:
        await self.sync_presence()

    async def _on_debug_event(self, payload: Any) -> None:
        try:
            event = BroadcastEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed debug event on {self.channel_name}: {e}")
            return

        if event.sender == self.user_id:
            return

        self.last_event = event

        if event.type == EventType.CURSOR_UPDATE:
            collaborator = self.find_collaborator(event.sender)
            if collaborator is None:
                return
            try:
                position = CursorPayload.model_validate(event.payload)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed cursor update from {event.sender}: {e}")
                return
            self.cursor_store.apply_remote_update(
                event.sender,
                position.x,
                position.y,
                collaborator.email or event.sender,
            )
            await _notify(self.on_cursors, self.cursors())
            return

        await _notify(self.on_event, event)
