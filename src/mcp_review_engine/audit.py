"""Audit event recording helper for the MCP Review Engine."""

from __future__ import annotations

import json
from typing import Any

import aiosqlite


async def record_event(
    db: aiosqlite.Connection,
    subject_id: str | None,
    event_type: str,
    actor: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Record an audit event within the current transaction.

    ``subject_id`` is a session id for session events and a run id for run
    events. Must be called INSIDE an existing BEGIN IMMEDIATE...COMMIT block.
    """
    metadata_json = json.dumps(metadata, default=str) if metadata else None
    await db.execute(
        """INSERT INTO audit_events
           (subject_id, event_type, actor, metadata, created_at)
           VALUES (?, ?, ?, ?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))""",
        (subject_id, event_type, actor, metadata_json),
    )
