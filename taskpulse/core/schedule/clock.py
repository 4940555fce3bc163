"""ScheduleClock — one APScheduler interval job per session."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

FireCallback = Callable[[str], None]


class ScheduleClock:
    """Per-session timers on a shared AsyncIOScheduler.

    Each session gets an ``IntervalTrigger`` job whose id is the session id.
    The first fire happens one full interval after ``start`` and later fires
    keep the nominal cadence. Late fires are coalesced into one and never
    run early. Callbacks are invoked on the event loop, never in a thread.
    """

    def __init__(self, scheduler: AsyncIOScheduler | None = None):
        self._scheduler = scheduler or AsyncIOScheduler(
            timezone=timezone.utc,
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
        )
        self._callbacks: dict[str, FireCallback] = {}
        self._intervals: dict[str, int] = {}

    # ── Lifecycle ─────────────────────────────────────────────

    def startup(self) -> None:
        """Start the underlying scheduler (needs a running event loop)."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.debug("ScheduleClock started")

    def shutdown(self) -> None:
        for session_id in list(self._callbacks):
            self.stop(session_id)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.debug("ScheduleClock stopped")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    # ── Timers ────────────────────────────────────────────────

    def start(self, session_id: str, interval_ms: int, callback: FireCallback) -> None:
        """(Re)start a session's timer with a fresh window beginning now."""
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive (got {interval_ms})")
        self._callbacks[session_id] = callback
        self._intervals[session_id] = interval_ms
        # A stopped scheduler queues duplicates instead of replacing them
        self._remove_job(session_id)
        self._scheduler.add_job(
            self._dispatch,
            trigger=IntervalTrigger(seconds=interval_ms / 1000, timezone=timezone.utc),
            id=session_id,
            args=[session_id],
            replace_existing=True,
        )
        logger.debug(f"Timer started: {session_id} every {interval_ms}ms")

    def stop(self, session_id: str) -> bool:
        """Cancel a session's timer. Returns True if one was running."""
        existed = self._callbacks.pop(session_id, None) is not None
        self._intervals.pop(session_id, None)
        self._remove_job(session_id)
        if existed:
            logger.debug(f"Timer stopped: {session_id}")
        return existed

    def reset(self, session_id: str, new_interval_ms: int) -> None:
        """Stop + start with a new interval, keeping the callback."""
        callback = self._callbacks.get(session_id)
        if callback is None:
            raise KeyError(f"No timer for session {session_id}")
        self.start(session_id, new_interval_ms, callback)

    def is_running(self, session_id: str) -> bool:
        return session_id in self._callbacks

    def interval_ms(self, session_id: str) -> int | None:
        return self._intervals.get(session_id)

    def next_fire_time(self, session_id: str) -> datetime | None:
        """Next nominal fire time, or None if stopped or the clock is not started."""
        job = self._scheduler.get_job(session_id)
        if job is None:
            return None
        # Pending jobs (scheduler not started) have no next_run_time yet
        return getattr(job, "next_run_time", None)

    def __len__(self) -> int:
        return len(self._callbacks)

    def _remove_job(self, session_id: str) -> None:
        try:
            self._scheduler.remove_job(session_id)
        except JobLookupError:
            pass  # Never registered or already removed

    async def _dispatch(self, session_id: str) -> None:
        callback = self._callbacks.get(session_id)
        if callback is None:
            return
        callback(session_id)
