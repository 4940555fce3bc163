"""SessionRegistry — per-session in-memory state and single-flight region."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Iterator

from taskpulse.core.schedule.types import ScheduleConfig


@dataclass
class SessionEntry:
    """Live state for one session.

    ``generation`` changes on every arm/disarm so a cycle queued behind an
    edit can tell that the schedule it was fired for no longer exists.
    """

    session_id: str
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    config: ScheduleConfig | None = None
    generation: int = 0
    in_flight: bool = False
    pending_persist: bool = False
    dropped_fires: int = 0
    users: int = 0


class SessionRegistry:
    """Explicitly owned map of session id -> SessionEntry.

    Shared by the engine and the controller. All state transitions for a
    session happen inside ``exclusive(session_id)``. Entries are dropped
    once nobody holds or waits for them and they carry no schedule.
    """

    def __init__(self) -> None:
        self._entries: dict[str, SessionEntry] = {}

    def get(self, session_id: str) -> SessionEntry | None:
        return self._entries.get(session_id)

    def entry(self, session_id: str) -> SessionEntry:
        """Get or create the entry for a session."""
        entry = self._entries.get(session_id)
        if entry is None:
            entry = SessionEntry(session_id)
            self._entries[session_id] = entry
        return entry

    @asynccontextmanager
    async def exclusive(self, session_id: str) -> AsyncIterator[SessionEntry]:
        """Single-flight region for a session (FIFO across waiters)."""
        entry = self.entry(session_id)
        entry.users += 1
        try:
            async with entry.lock:
                yield entry
        finally:
            entry.users -= 1
            self.release(entry)

    def release(self, entry: SessionEntry) -> None:
        """Drop an entry that is idle and unarmed."""
        if entry.users or entry.in_flight or entry.config is not None:
            return
        if self._entries.get(entry.session_id) is entry:
            del self._entries[entry.session_id]

    def __iter__(self) -> Iterator[SessionEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)
