"""Schedule types — config record, cycle results, events, errors."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

# Editor presets. The engine accepts any positive value.
INTERVAL_PRESETS: dict[str, int] = {
    "15 minutes": 900_000,
    "30 minutes": 1_800_000,
    "1 hour": 3_600_000,
    "4 hours": 14_400_000,
    "12 hours": 43_200_000,
    "Daily": 86_400_000,
}
MAX_ERROR_PRESETS: tuple[int, ...] = (3, 5, 10, 20)

DEFAULT_INTERVAL_MS = 1_800_000
DEFAULT_MAX_ERRORS = 5

# Fields written by the engine, not by the editor
ENGINE_OWNED_FIELDS = frozenset({"error_count", "last_executed_at", "last_error"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PermissionPolicy(str, Enum):
    """Authorization policy bound to every cycle of a schedule."""

    DENY_ALL = "deny-all"
    ALLOW_SAFE = "allow-safe"
    ALLOW_ALL = "allow-all"


class ScheduleConfig(BaseModel):
    """Recurring schedule for one session — mirrors SQLite schedules table.

    Structural validation is left to :func:`validate_config` so that the
    controller can report every problem at once as a ``ValidationError``.
    """

    enabled: bool = True
    interval_ms: int = DEFAULT_INTERVAL_MS
    prompt: str = ""
    permission_policy: PermissionPolicy = PermissionPolicy.ALLOW_SAFE
    max_errors: int = DEFAULT_MAX_ERRORS

    # Engine-owned
    error_count: int = 0
    last_executed_at: datetime | None = None
    last_error: str | None = None

    @property
    def threshold_reached(self) -> bool:
        return self.error_count >= self.max_errors


class ErrorInfo(BaseModel):
    """Why a cycle failed."""

    kind: str = "agent_error"  # 'timeout' | 'agent_error' | 'invoker_error'
    message: str = ""


class CycleResult(BaseModel):
    """Outcome of one agent invocation.

    ``rejected_actions`` lists actions refused by the permission gate during
    the run. Rejections alone do not make a cycle fail.
    """

    success: bool
    error: ErrorInfo | None = None
    rejected_actions: list[str] = Field(default_factory=list)
    output: str | None = None


class DisablementEvent(BaseModel):
    """Emitted once when a schedule is auto-disabled after too many failures."""

    session_id: str
    error_count: int
    max_errors: int
    last_error: str | None = None
    disabled_at: datetime = Field(default_factory=utcnow)


# ════════════════════════════════════════════════════════════
# ERRORS
# ════════════════════════════════════════════════════════════


class ScheduleError(Exception):
    """Base class for scheduler errors."""


class ValidationError(ScheduleError, ValueError):
    """Config rejected before anything is persisted or armed."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class CycleFailure(ScheduleError):
    """An agent cycle failed. Recorded by the engine, never propagated."""

    def __init__(self, info: ErrorInfo):
        self.info = info
        super().__init__(f"{info.kind}: {info.message}")


class StoreUnavailable(ScheduleError):
    """Persistence layer could not complete a read or write."""


def validate_config(config: ScheduleConfig) -> None:
    """Raise ValidationError if config cannot be persisted or armed."""
    errors: list[str] = []
    if not config.prompt or not config.prompt.strip():
        errors.append("prompt must not be empty")
    if config.interval_ms <= 0:
        errors.append(f"interval_ms must be positive (got {config.interval_ms})")
    if config.max_errors <= 0:
        errors.append(f"max_errors must be positive (got {config.max_errors})")
    if config.error_count < 0:
        errors.append(f"error_count must not be negative (got {config.error_count})")
    if errors:
        raise ValidationError(errors)
