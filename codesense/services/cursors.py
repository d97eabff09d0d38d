"""Per-view cursor state for a debug session."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from ..config import settings
from ..models import BroadcastEvent, CursorPayload, CursorRecord, EventType

logger = logging.getLogger(__name__)


class CursorStore:
    """Last known pointer position of every remote collaborator.

    Local movements pass through a fixed-interval leading-edge throttle:
    the first movement of a window is emitted, the rest of the window is
    dropped (not queued, not sent at window end).
    """

    def __init__(
        self,
        throttle_ms: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.throttle_seconds = (throttle_ms if throttle_ms is not None else settings.cursor_throttle_ms) / 1000
        self._clock = clock
        self._window_opened_at: float | None = None
        self._records: dict[str, CursorRecord] = {}

    @property
    def records(self) -> dict[str, CursorRecord]:
        """Snapshot of the current records keyed by collaborator id."""
        return dict(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def record_local_movement(self, x: float, y: float) -> BroadcastEvent | None:
        """Throttle a local pointer movement.

        Returns:
            The CURSOR_UPDATE event to broadcast, or None if dropped
        """
        now = self._clock()
        if self._window_opened_at is not None and now - self._window_opened_at < self.throttle_seconds:
            return None

        self._window_opened_at = now
        return BroadcastEvent(
            type=EventType.CURSOR_UPDATE,
            payload=CursorPayload(x=x, y=y).model_dump(),
        )

    def apply_remote_update(self, collaborator_id: str, x: float, y: float, label: str) -> CursorRecord:
        """Upsert the cursor of a remote collaborator."""
        record = CursorRecord(collaborator_id=collaborator_id, x=x, y=y, label=label)
        self._records[collaborator_id] = record
        return record

    def prune(self, active_ids: Iterable[str]) -> list[str]:
        """Keep only records of active collaborators.

        An empty active set clears every record.

        Returns:
            Collaborator ids that were removed
        """
        active = set(active_ids)
        removed = [cid for cid in self._records if cid not in active]
        for cid in removed:
            del self._records[cid]
        if removed:
            logger.debug(f"Pruned cursors for {len(removed)} inactive collaborator(s)")
        return removed

    def clear(self) -> None:
        self._records.clear()
        self._window_opened_at = None
