"""ScheduleEngine — runs recurring agent cycles per session."""

from __future__ import annotations

import asyncio
import inspect
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from taskpulse.agent.permissions import AuthorizationMode, PermissionGate
from taskpulse.core.schedule.clock import ScheduleClock
from taskpulse.core.schedule.registry import SessionEntry, SessionRegistry
from taskpulse.core.schedule.types import (
    ENGINE_OWNED_FIELDS,
    CycleFailure,
    CycleResult,
    DisablementEvent,
    ErrorInfo,
    ScheduleConfig,
    StoreUnavailable,
    utcnow,
    validate_config,
)

if TYPE_CHECKING:
    from taskpulse.agent.invoker import AgentInvoker
    from taskpulse.core.config.schema import Config
    from taskpulse.storage.store import ScheduleStore

DisableListener = Callable[[DisablementEvent], Any]

DISABLED_EVENT = "schedule_disabled"


class ScheduleEngine:
    """Bridge between persisted schedules, timers and the agent invoker.

    Schedules are persisted in SQLite (source of truth) and armed on the
    ScheduleClock. On fire, one cycle runs through the AgentInvoker under the
    schedule's permission policy. Consecutive failures are counted and the
    schedule is disabled once ``max_errors`` is reached.

    Per session, arm/disarm and cycle execution are serialized through the
    SessionRegistry's single-flight region. A fire that arrives while a
    cycle is in flight is dropped, not queued.
    """

    def __init__(
        self,
        store: ScheduleStore,
        invoker: AgentInvoker,
        config: Config | None = None,
        gate: PermissionGate | None = None,
        clock: ScheduleClock | None = None,
        registry: SessionRegistry | None = None,
    ):
        self.store = store
        self.invoker = invoker
        self.gate = gate or (PermissionGate.from_config(config) if config else PermissionGate())
        self.clock = clock or ScheduleClock()
        self.registry = registry or SessionRegistry()

        if config is not None:
            settings = config.scheduler
            self.cycle_timeout_s = settings.cycle_timeout_s
            self.persist_retries = settings.persist_retries
            self.persist_retry_delay_s = settings.persist_retry_delay_s
        else:
            self.cycle_timeout_s = 600.0
            self.persist_retries = 3
            self.persist_retry_delay_s = 0.2

        self._tasks: dict[str, asyncio.Task] = {}
        self._listeners: list[DisableListener] = []

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> int:
        """Start the clock and re-arm every enabled schedule with a fresh window.

        Missed fires while the process was down are not replayed. Returns
        the number of schedules armed.
        """
        self.clock.startup()
        schedules = self.store.list_schedules(enabled_only=True)
        armed = 0
        for session_id, config in schedules.items():
            try:
                await self.arm(session_id, config)
                armed += 1
            except ValueError as e:
                logger.error(f"Skipping invalid persisted schedule {session_id}: {e}")
        logger.info(f"ScheduleEngine started with {armed} scheduled sessions")
        return armed

    async def shutdown(self, wait: bool = True) -> None:
        """Stop all timers, finish or cancel in-flight cycles, flush pending writes.

        Cancelled cycles do not count as failures.
        """
        logger.info("Shutting down ScheduleEngine")
        for entry in self.registry:
            self.clock.stop(entry.session_id)
            entry.generation += 1

        tasks = list(self._tasks.values())
        if tasks:
            if wait:
                logger.info(f"Waiting for {len(tasks)} in-flight cycles to finish")
            else:
                for task in tasks:
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.reconcile()
        self.clock.shutdown()

    # ── Arm / disarm ──────────────────────────────────────────

    def exclusive(self, session_id: str):
        """Single-flight region for a session (async context manager)."""
        return self.registry.exclusive(session_id)

    async def arm(self, session_id: str, config: ScheduleConfig) -> None:
        """Validate and install a schedule; (re)starts its timer if enabled."""
        validate_config(config)
        async with self.registry.exclusive(session_id):
            self.arm_nowait(session_id, config)

    def arm_nowait(self, session_id: str, config: ScheduleConfig) -> None:
        """Like ``arm`` but the caller must already hold ``exclusive(session_id)``."""
        validate_config(config)
        entry = self.registry.entry(session_id)
        entry.config = config.model_copy()
        entry.generation += 1
        if config.enabled:
            self.clock.start(session_id, config.interval_ms, self.on_fire)
            logger.info(
                f"Schedule armed: {session_id} interval={config.interval_ms}ms "
                f"policy={config.permission_policy.value} "
                f"errors={config.error_count}/{config.max_errors}"
            )
        else:
            self.clock.stop(session_id)
            logger.info(f"Schedule installed disabled: {session_id}")

    async def disarm(self, session_id: str) -> None:
        """Cancel the timer and drop in-memory state.

        The timer stops immediately. Dropping state waits for an in-flight
        cycle, whose result is still persisted. A write that failed earlier
        is retried first. The store record is otherwise left to the caller.
        """
        self.stop_timer(session_id)
        async with self.registry.exclusive(session_id) as entry:
            if entry.pending_persist and entry.config is not None:
                await self._persist(session_id, entry)
            self.disarm_nowait(session_id)

    def disarm_nowait(self, session_id: str) -> None:
        """Like ``disarm`` but the caller must already hold ``exclusive(session_id)``.

        Does not retry pending writes; use ``disarm`` to keep them.
        """
        self.stop_timer(session_id)
        entry = self.registry.get(session_id)
        if entry is not None:
            if entry.pending_persist and entry.config is not None:
                logger.error(
                    f"Dropping unpersisted state for {session_id} "
                    f"(error_count={entry.config.error_count})"
                )
            entry.config = None
            entry.pending_persist = False
        logger.info(f"Schedule disarmed: {session_id}")

    def stop_timer(self, session_id: str) -> None:
        """Stop a session's timer at once, without waiting for its region."""
        self.clock.stop(session_id)
        entry = self.registry.get(session_id)
        if entry is not None:
            entry.generation += 1

    # ── Events ────────────────────────────────────────────────

    def subscribe(self, listener: DisableListener) -> Callable[[], None]:
        """Register a sync or async callback for DisablementEvents.

        Returns a function that unsubscribes it.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ── Introspection ─────────────────────────────────────────

    @property
    def active_count(self) -> int:
        """Number of sessions with a cycle in flight."""
        return sum(1 for entry in self.registry if entry.in_flight)

    @property
    def scheduled_count(self) -> int:
        """Number of live timers."""
        return len(self.clock)

    def is_executing(self, session_id: str) -> bool:
        entry = self.registry.get(session_id)
        return bool(entry and entry.in_flight)

    def snapshot(self, session_id: str) -> ScheduleConfig | None:
        """Copy of the engine's current view of a schedule (may be ahead of the store)."""
        entry = self.registry.get(session_id)
        if entry is None or entry.config is None:
            return None
        return entry.config.model_copy()

    def has_pending_writes(self, session_id: str) -> bool:
        entry = self.registry.get(session_id)
        return bool(entry and entry.pending_persist)

    # ── Execution ─────────────────────────────────────────────

    def on_fire(self, session_id: str) -> None:
        """Clock callback: start one cycle unless one is already in flight."""
        entry = self.registry.get(session_id)
        if entry is None or entry.config is None or not entry.config.enabled:
            logger.debug(f"Fire ignored for {session_id}: not armed")
            return
        if entry.in_flight:
            entry.dropped_fires += 1
            logger.warning(
                f"Fire dropped for {session_id}: previous cycle still running "
                f"({entry.dropped_fires} dropped so far)"
            )
            return

        entry.in_flight = True
        task = asyncio.create_task(self._run_cycle(session_id, entry.generation))
        self._tasks[session_id] = task
        task.add_done_callback(lambda t: self._on_cycle_done(session_id, t))

    async def run_now(self, session_id: str) -> None:
        """Trigger a cycle immediately and wait for it, or for the one already in flight."""
        self.on_fire(session_id)
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait until no cycle is in flight."""
        while any(not task.done() for task in self._tasks.values()):
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def _run_cycle(self, session_id: str, generation: int) -> None:
        entry = self.registry.entry(session_id)
        try:
            async with self.registry.exclusive(session_id) as locked:
                config = locked.config
                if config is None or not config.enabled or locked.generation != generation:
                    logger.debug(f"Skipping stale fire for {session_id}")
                    return
                # Another process (e.g. the CLI) may have edited or removed the record
                if not self._sync_with_store(session_id, locked, config):
                    return
                config = locked.config
                if not config.enabled:
                    return
                await self._execute(session_id, locked, config)
        finally:
            entry.in_flight = False
            self.registry.release(entry)

    def _on_cycle_done(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]
        if task.cancelled():
            logger.warning(f"Cycle for {session_id} was cancelled; error count unchanged")
        elif task.exception() is not None:
            logger.error(f"Cycle for {session_id} crashed: {task.exception()!r}")

    async def _execute(self, session_id: str, entry: SessionEntry, config: ScheduleConfig) -> None:
        started = utcnow()
        config = config.model_copy(update={"last_executed_at": started})
        entry.config = config
        mode = self.gate.authorize(config.permission_policy)
        logger.info(f"Cycle start: {session_id} (policy={mode.policy.value})")

        start = time.monotonic()
        disabled = False
        rejected: list[str] = []
        try:
            result = await self._invoke(config.prompt, mode)
        except CycleFailure as failure:
            count = config.error_count + 1
            disabled = count >= config.max_errors
            update: dict[str, Any] = {"error_count": count, "last_error": failure.info.message}
            if disabled:
                update["enabled"] = False
            entry.config = config.model_copy(update=update)
            status, error = "error", str(failure)
            logger.error(
                f"Cycle failed: {session_id} ({failure}) "
                f"errors={count}/{config.max_errors}"
            )
        else:
            rejected = list(result.rejected_actions)
            entry.config = config.model_copy(update={"error_count": 0, "last_error": None})
            status, error = "success", None
            if rejected:
                logger.info(f"Cycle for {session_id} had {len(rejected)} rejected actions: {rejected}")
            logger.info(f"Cycle completed: {session_id}")
        duration_ms = int((time.monotonic() - start) * 1000)

        if disabled:
            self.stop_timer(session_id)

        if not self._sync_with_store(session_id, entry, config):
            return
        await self._persist(session_id, entry)
        self._log_execution(session_id, started, status, error, rejected, duration_ms, entry)

        if disabled:
            await self._emit_disabled(session_id, entry.config)

    async def _invoke(self, prompt: str, mode: AuthorizationMode) -> CycleResult:
        """Run the agent once. Raises CycleFailure for every kind of failure."""
        try:
            if self.cycle_timeout_s:
                result = await asyncio.wait_for(
                    self.invoker.run(prompt, mode), timeout=self.cycle_timeout_s
                )
            else:
                result = await self.invoker.run(prompt, mode)
        except asyncio.TimeoutError:
            raise CycleFailure(
                ErrorInfo(kind="timeout", message=f"agent run timed out after {self.cycle_timeout_s}s")
            ) from None
        except Exception as e:
            raise CycleFailure(
                ErrorInfo(kind="invoker_error", message=str(e) or type(e).__name__)
            ) from e

        if not isinstance(result, CycleResult):
            raise CycleFailure(
                ErrorInfo(
                    kind="invoker_error",
                    message=f"invoker returned {type(result).__name__}, expected CycleResult",
                )
            )
        if not result.success:
            raise CycleFailure(
                result.error or ErrorInfo(kind="agent_error", message="agent reported failure")
            )
        return result

    # ── Persistence ───────────────────────────────────────────

    def _sync_with_store(self, session_id: str, entry: SessionEntry, armed: ScheduleConfig) -> bool:
        """Fold edits written to the store by another process into the entry.

        ``armed`` is the config this process last saw. If the stored record
        has different editor fields, they win and only the engine-owned
        fields are carried over; the timer is re-armed or stopped to match.
        Returns False if the record was deleted, after disarming.
        """
        try:
            stored = self.store.get(session_id)
        except StoreUnavailable as e:
            logger.warning(f"Could not re-read {session_id}, keeping in-memory state: {e}")
            return True

        if stored is None:
            logger.info(f"Schedule {session_id} was removed elsewhere; dropping its state")
            self.stop_timer(session_id)
            entry.config = None
            entry.pending_persist = False
            return False

        if _editor_fields(stored) == _editor_fields(armed):
            return True

        current = entry.config
        update: dict[str, Any] = {name: getattr(current, name) for name in ENGINE_OWNED_FIELDS}
        if armed.enabled and not current.enabled:
            update["enabled"] = False  # auto-disabled by this cycle
        merged = stored.model_copy(update=update)
        logger.info(f"Schedule {session_id} was edited elsewhere; applying (enabled={merged.enabled})")
        self.arm_nowait(session_id, merged)
        return True

    async def _persist(self, session_id: str, entry: SessionEntry) -> bool:
        """Write the entry's full record, retrying on StoreUnavailable.

        If every attempt fails the record stays in memory marked pending,
        so failure counts are never lost.
        """
        attempts = self.persist_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self.store.put(session_id, entry.config)
            except StoreUnavailable as e:
                logger.warning(f"Persist failed for {session_id} (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.persist_retry_delay_s * attempt)
            else:
                if entry.pending_persist:
                    logger.info(f"Pending state for {session_id} reconciled")
                entry.pending_persist = False
                return True

        entry.pending_persist = True
        logger.error(
            f"Keeping unpersisted state for {session_id} in memory "
            f"(error_count={entry.config.error_count}, enabled={entry.config.enabled})"
        )
        return False

    async def reconcile(self) -> int:
        """Retry writes that failed earlier. Returns how many are still pending."""
        pending = 0
        for entry in self.registry:
            if not entry.pending_persist:
                continue
            async with self.registry.exclusive(entry.session_id) as locked:
                if locked.pending_persist and locked.config is not None:
                    if not await self._persist(locked.session_id, locked):
                        pending += 1
        return pending

    def _log_execution(
        self,
        session_id: str,
        started: datetime,
        status: str,
        error: str | None,
        rejected: list[str],
        duration_ms: int,
        entry: SessionEntry,
    ) -> None:
        try:
            self.store.log_execution(
                session_id, started, status,
                error=error,
                rejected_actions=rejected,
                duration_ms=duration_ms,
                error_count=entry.config.error_count,
            )
        except StoreUnavailable as e:
            logger.warning(f"Execution log write failed for {session_id}: {e}")

    async def _emit_disabled(self, session_id: str, config: ScheduleConfig) -> None:
        event = DisablementEvent(
            session_id=session_id,
            error_count=config.error_count,
            max_errors=config.max_errors,
            last_error=config.last_error,
        )
        logger.warning(
            f"Schedule {session_id} disabled after {config.error_count} consecutive "
            f"failures (max_errors={config.max_errors})"
        )
        try:
            self.store.add_event(session_id, DISABLED_EVENT, event.model_dump(mode="json"))
        except StoreUnavailable as e:
            logger.error(f"Could not record disablement event for {session_id}: {e}")

        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Disablement listener failed for {session_id}: {e}")


def _editor_fields(config: ScheduleConfig) -> dict[str, Any]:
    return config.model_dump(exclude=set(ENGINE_OWNED_FIELDS))
