"""taskpulse configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskpulse.core.schedule.types import (
    DEFAULT_INTERVAL_MS,
    DEFAULT_MAX_ERRORS,
    PermissionPolicy,
)


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class SchedulerConfig(BaseModel):
    """Engine behaviour (scheduler.*)."""

    enabled: bool = True
    default_interval_ms: int = DEFAULT_INTERVAL_MS
    default_max_errors: int = DEFAULT_MAX_ERRORS
    default_policy: PermissionPolicy = PermissionPolicy.ALLOW_SAFE
    cycle_timeout_s: float | None = 600.0  # None = no timeout
    persist_retries: int = 3
    persist_retry_delay_s: float = 0.2
    shutdown_wait: bool = True


# Default risk rules, adapted from the shell tool's destructive-command filter
_DEFAULT_RISKY_ACTIONS = [
    "exec_command",
    "delete_file",
    "move_file",
    "write_file",
    "http_request",
    "send_message",
]

_DEFAULT_RISKY_PATTERNS = [
    r"\brm\s+(-[rR]|-[rR]?f|-f?[rR])\b",  # rm -rf, rm -r, rm -f
    r"\bdel\s+/[fFqQ]\b",  # Windows del /f /q
    r"\brmdir\s+/[sS]\b",  # Windows rmdir /s
    r"\b(format|mkfs|diskpart)\b",  # Disk format
    r"\bdd\s+if=",  # dd disk copy
    r">\s*/dev/sd",  # Write to disk device
    r"\b(shutdown|reboot|poweroff|halt)\b",  # Power commands
    r"\bgit\s+push\s+(-f|--force)\b",  # Force push
    r"\b(curl|wget)\b.*\|\s*(sh|bash)\b",  # Pipe to shell
]


class PermissionsConfig(BaseModel):
    """Risk rules used by the allow-safe policy (permissions.*)."""

    risky_actions: list[str] = Field(default_factory=lambda: list(_DEFAULT_RISKY_ACTIONS))
    risky_patterns: list[str] = Field(default_factory=lambda: list(_DEFAULT_RISKY_PATTERNS))


class AgentConfig(BaseModel):
    """Agent collaborator wiring (agent.*).

    ``invoker`` is an import path ``module:attr`` resolving to an
    AgentInvoker instance or a zero-argument factory returning one.
    """

    invoker: str = ""


class DatabaseConfig(BaseModel):
    path: str = "data/taskpulse.db"


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings — env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        TASKPULSE_SCHEDULER__CYCLE_TIMEOUT_S=120
        TASKPULSE_DATABASE__PATH=data/prod.db
        TASKPULSE_AGENT__INVOKER=myapp.agents:build_invoker
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKPULSE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)
