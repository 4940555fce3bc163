"""Recurring schedules — clock, engine and controller."""

from taskpulse.core.schedule.clock import ScheduleClock
from taskpulse.core.schedule.controller import ScheduleController
from taskpulse.core.schedule.engine import ScheduleEngine
from taskpulse.core.schedule.registry import SessionRegistry
from taskpulse.core.schedule.types import (
    CycleResult,
    DisablementEvent,
    ErrorInfo,
    PermissionPolicy,
    ScheduleConfig,
    ValidationError,
)

__all__ = [
    "CycleResult",
    "DisablementEvent",
    "ErrorInfo",
    "PermissionPolicy",
    "ScheduleClock",
    "ScheduleConfig",
    "ScheduleController",
    "ScheduleEngine",
    "SessionRegistry",
    "ValidationError",
]
