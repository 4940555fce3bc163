"""ScheduleController — the only schedule API exposed to the editor layer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

import pydantic
from loguru import logger

from taskpulse.core.schedule.types import (
    ENGINE_OWNED_FIELDS,
    ScheduleConfig,
    ValidationError,
    validate_config,
)

if TYPE_CHECKING:
    from taskpulse.core.schedule.engine import DisableListener, ScheduleEngine
    from taskpulse.storage.store import ScheduleStore


class ScheduleController:
    """Persist schedule edits, then arm or disarm the engine.

    Every edit runs inside the engine's single-flight region for the
    session, so it queues behind an in-flight cycle instead of racing its
    counter update.
    """

    def __init__(self, store: ScheduleStore, engine: ScheduleEngine):
        self.store = store
        self.engine = engine

    def get_schedule(self, session_id: str) -> ScheduleConfig | None:
        return self.store.get(session_id)

    def list_schedules(self, enabled_only: bool = False) -> dict[str, ScheduleConfig]:
        return self.store.list_schedules(enabled_only=enabled_only)

    async def set_schedule(
        self, session_id: str, config: ScheduleConfig | dict[str, Any]
    ) -> ScheduleConfig:
        """Validate, persist and arm a schedule. Returns the stored record.

        For an existing schedule the engine-owned fields (error count, last
        run, last error) are kept from the current state; the caller's
        values only seed a new schedule.

        Raises
        ------
        ValidationError
            Empty prompt, non-positive interval or max_errors. Nothing is
            persisted or armed.
        """
        config = _coerce(config)
        validate_config(config)

        async with self.engine.exclusive(session_id):
            current = self._current(session_id)
            if current is not None:
                config = config.model_copy(
                    update={name: getattr(current, name) for name in ENGINE_OWNED_FIELDS}
                )
            self.store.put(session_id, config)
            self.engine.arm_nowait(session_id, config)

        logger.info(f"Schedule saved: {session_id} (enabled={config.enabled})")
        return config

    async def remove_schedule(self, session_id: str) -> bool:
        """Disarm and delete a schedule. Returns True if a record existed.

        The timer stops at once. Deletion waits for an in-flight cycle to
        finish so its result cannot recreate the record afterwards.
        """
        self.engine.stop_timer(session_id)
        async with self.engine.exclusive(session_id):
            self.engine.disarm_nowait(session_id)
            existed = self.store.delete(session_id)
        logger.info(f"Schedule removed: {session_id} (existed={existed})")
        return existed

    async def pause(self, session_id: str) -> ScheduleConfig:
        """Disable a schedule, keeping its counters."""
        return await self._set_enabled(session_id, enabled=False)

    async def resume(self, session_id: str, reset_errors: bool = False) -> ScheduleConfig:
        """Re-enable a schedule with a fresh interval window starting now.

        The error count is preserved unless ``reset_errors`` is set, so a
        schedule resumed near its threshold can be disabled again quickly.
        """
        return await self._set_enabled(session_id, enabled=True, reset_errors=reset_errors)

    def on_disabled(self, listener: DisableListener) -> Callable[[], None]:
        """Subscribe to auto-disable events. Returns an unsubscribe function."""
        return self.engine.subscribe(listener)

    async def _set_enabled(
        self, session_id: str, enabled: bool, reset_errors: bool = False
    ) -> ScheduleConfig:
        async with self.engine.exclusive(session_id):
            current = self._current(session_id)
            if current is None:
                raise KeyError(f"No schedule for session {session_id}")
            update: dict[str, Any] = {"enabled": enabled}
            if reset_errors:
                update.update(error_count=0, last_error=None)
            config = current.model_copy(update=update)
            self.store.put(session_id, config)
            self.engine.arm_nowait(session_id, config)

        logger.info(f"Schedule {'resumed' if enabled else 'paused'}: {session_id}")
        return config

    def _current(self, session_id: str) -> ScheduleConfig | None:
        """Engine state if armed (may hold unpersisted counters), else the store."""
        return self.engine.snapshot(session_id) or self.store.get(session_id)


def _coerce(config: ScheduleConfig | dict[str, Any]) -> ScheduleConfig:
    if isinstance(config, ScheduleConfig):
        return config
    try:
        return ScheduleConfig.model_validate(config)
    except pydantic.ValidationError as e:
        raise ValidationError(
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        ) from e
