"""Presence roster and cursor rendering."""

from __future__ import annotations

import logging
from typing import Mapping

from pydantic import ValidationError

from ..models import Collaborator, CursorRecord

logger = logging.getLogger(__name__)


def render_cursors(records: Mapping[str, CursorRecord], local_id: str | None) -> list[CursorRecord]:
    """Return the cursors to draw for the local user, sorted by collaborator id.

    The local user's own cursor is never included.
    """
    return [records[cid] for cid in sorted(records) if cid != local_id]


def roster_from_presence(state: Mapping[str, list[dict]]) -> list[Collaborator]:
    """Flatten a presence state into one collaborator per presence key.

    Only the first meta of each key is used; malformed metas are skipped.
    """
    roster: list[Collaborator] = []
    for key, metas in state.items():
        if not metas:
            continue
        meta = dict(metas[0])
        meta.setdefault("user_id", key)
        try:
            roster.append(Collaborator.model_validate(meta))
        except ValidationError as e:
            logger.warning(f"Skipping malformed presence entry {key}: {e}")
    return roster
