"""Persistence — SQLite schedule store."""

from taskpulse.storage.store import ScheduleStore

__all__ = ["ScheduleStore"]
