"""Append-only event journal backed by SQLite.

The journal is an ordinary notifier subscriber: a background task drains
its subscription and appends each event under the sequence number the
notifier stamped. The WebSocket replay frame reads from it so a client can
catch up after reconnecting. Because it is a subscriber, a stalled disk
only costs journal entries, never core progress.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiosqlite

from hwsigner.events.notifier import Subscription
from hwsigner.models import Event

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    source_id TEXT,
    created_at TEXT NOT NULL
)
"""


class EventJournal:
    """Persistent, append-only event journal.

    Parameters
    ----------
    db:
        An open ``aiosqlite.Connection``. ``create_schema()`` must be called
        before the first append.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db
        self._task: asyncio.Task[None] | None = None

    @classmethod
    async def open(cls, path: str) -> EventJournal:
        db = await aiosqlite.connect(path)
        journal = cls(db)
        await journal.create_schema()
        return journal

    async def create_schema(self) -> None:
        await self._db.execute(_SCHEMA)
        await self._db.commit()

    async def append(self, event: Event) -> None:
        await self._db.execute(
            "INSERT OR IGNORE INTO events (seq, event_type, payload, source_id, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                event.seq,
                event.event_type,
                json.dumps(event.payload),
                event.source_id,
                event.created_at.isoformat(),
            ),
        )
        await self._db.commit()

    async def replay(self, since_seq: int) -> list[dict[str, Any]]:
        """Return all events with seq > since_seq, ordered by seq ascending."""
        cursor = await self._db.execute(
            "SELECT seq, event_type, payload, source_id, created_at "
            "FROM events WHERE seq > ? ORDER BY seq ASC",
            (since_seq,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "seq": row[0],
                "event_type": row[1],
                "payload": json.loads(row[2]),
                "source_id": row[3],
                "created_at": row[4],
            }
            for row in rows
        ]

    async def get_latest_seq(self) -> int:
        """Return the highest sequence number, or 0 if the journal is empty."""
        cursor = await self._db.execute("SELECT MAX(seq) FROM events")
        row = await cursor.fetchone()
        return row[0] if row and row[0] is not None else 0

    # ------------------------------------------------------------------
    # Background writer
    # ------------------------------------------------------------------

    def attach(self, subscription: Subscription) -> None:
        """Start draining *subscription* into the journal."""
        self._task = asyncio.create_task(self._drain(subscription))

    async def _drain(self, subscription: Subscription) -> None:
        async for event in subscription:
            try:
                await self.append(event)
            except aiosqlite.Error:
                logger.exception("Failed to journal event seq=%d", event.seq)
        if subscription.dropped:
            logger.warning(
                "Event journal fell behind and skipped %d events", subscription.dropped
            )

    async def close(self) -> None:
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                logger.warning("Event journal writer did not drain in time")
                self._task.cancel()
            self._task = None
        await self._db.close()
