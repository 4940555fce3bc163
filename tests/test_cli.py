"""Tests for taskpulse.cli."""

from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from taskpulse import __version__
from taskpulse.cli.commands import app
from taskpulse.storage.store import ScheduleStore

runner = CliRunner()


@pytest.fixture
def db(tmp_path):
    return str(tmp_path / "cli.db")


def _invoke(*args):
    return runner.invoke(app, list(args))


def test_cli_help():
    result = _invoke("--help")
    assert result.exit_code == 0
    for name in ("run", "status", "schedule", "events"):
        assert name in result.output


def test_version():
    result = _invoke("--version")
    assert result.exit_code == 0
    assert __version__ in result.output


def test_schedule_lifecycle(db):
    result = _invoke(
        "schedule", "set", "s1", "--prompt", "check inbox",
        "--interval-ms", "900000", "--policy", "deny-all", "--max-errors", "3", "--db", db,
    )
    assert result.exit_code == 0, result.output
    assert "Saved schedule" in result.output

    stored = ScheduleStore(db).get("s1")
    assert stored.interval_ms == 900_000
    assert stored.max_errors == 3
    assert stored.permission_policy.value == "deny-all"

    result = _invoke("schedule", "list", "--db", db)
    assert result.exit_code == 0
    assert "s1" in result.output
    assert "15m" in result.output

    result = _invoke("schedule", "show", "s1", "--db", db)
    assert result.exit_code == 0
    assert "check inbox" in result.output

    result = _invoke("schedule", "pause", "s1", "--db", db)
    assert result.exit_code == 0
    assert ScheduleStore(db).get("s1").enabled is False

    result = _invoke("schedule", "resume", "s1", "--db", db)
    assert result.exit_code == 0
    assert ScheduleStore(db).get("s1").enabled is True

    result = _invoke("schedule", "remove", "s1", "--db", db)
    assert result.exit_code == 0
    assert "Removed schedule" in result.output
    assert ScheduleStore(db).get("s1") is None


def test_schedule_set_uses_config_defaults(db):
    result = _invoke("schedule", "set", "s1", "-p", "daily digest", "--db", db)
    assert result.exit_code == 0, result.output
    stored = ScheduleStore(db).get("s1")
    assert stored.interval_ms == 1_800_000
    assert stored.max_errors == 5
    assert stored.permission_policy.value == "allow-safe"


def test_schedule_set_invalid(db):
    result = _invoke("schedule", "set", "s1", "--prompt", "  ", "--db", db)
    assert result.exit_code == 1
    assert "Invalid schedule" in result.output
    assert ScheduleStore(db).get("s1") is None


def test_schedule_set_keeps_error_count(db):
    from taskpulse.core.schedule.types import ScheduleConfig

    ScheduleStore(db).put("s1", ScheduleConfig(prompt="x", error_count=2, last_error="boom"))
    result = _invoke("schedule", "set", "s1", "--prompt", "y", "--db", db)
    assert result.exit_code == 0
    stored = ScheduleStore(db).get("s1")
    assert stored.prompt == "y"
    assert stored.error_count == 2


def test_missing_schedule(db):
    assert _invoke("schedule", "show", "nope", "--db", db).exit_code == 1
    assert _invoke("schedule", "pause", "nope", "--db", db).exit_code == 1
    assert _invoke("schedule", "resume", "nope", "--db", db).exit_code == 1
    result = _invoke("schedule", "remove", "nope", "--db", db)
    assert "Schedule not found" in result.output


def test_empty_listings(db):
    assert "No schedules found" in _invoke("schedule", "list", "--db", db).output
    assert "No cycles recorded" in _invoke("schedule", "log", "s1", "--db", db).output
    assert "No pending events" in _invoke("events", "--db", db).output


def test_schedule_log(db):
    from datetime import datetime, timezone

    ScheduleStore(db).log_execution(
        "s1", datetime.now(timezone.utc), "error", error="timeout: slow", error_count=1
    )
    result = _invoke("schedule", "log", "s1", "--db", db)
    assert result.exit_code == 0
    assert "Cycles for s1" in result.output


def test_events_ack(db):
    store = ScheduleStore(db)
    store.add_event(
        "s1", "schedule_disabled", {"error_count": 3, "max_errors": 3, "last_error": "boom"}
    )

    result = _invoke("events", "--ack", "--db", db)
    assert result.exit_code == 0
    assert "s1" in result.output
    assert "Marked 1 events delivered" in result.output
    assert store.get_undelivered_events() == []


def test_status(db):
    ScheduleStore(db).put("s1", _disabled_config())
    result = _invoke("status", "--db", db)
    assert result.exit_code == 0
    assert "Schedules" in result.output


def test_run_without_invoker(db, monkeypatch):
    monkeypatch.delenv("TASKPULSE_AGENT__INVOKER", raising=False)
    result = _invoke("run", "--db", db)
    assert result.exit_code == 1
    assert "No agent invoker" in result.output


def test_run_starts_and_stops_engine(db):
    """run loads the invoker, wires the engine and exits cleanly on Ctrl+C."""
    fake_engine = MagicMock()

    def _interrupt(coro):
        coro.close()
        raise KeyboardInterrupt

    with (
        patch("taskpulse.agent.invoker.load_invoker", return_value=MagicMock()) as load,
        patch("taskpulse.core.schedule.engine.ScheduleEngine", return_value=fake_engine),
        patch("taskpulse.cli.commands.asyncio.run", side_effect=_interrupt),
    ):
        result = _invoke("run", "--invoker", "myagents:build", "--db", db)

    assert result.exit_code == 0, result.output
    load.assert_called_once_with("myagents:build")
    fake_engine.subscribe.assert_called_once()
    assert "Stopped" in result.output


def _disabled_config():
    from taskpulse.core.schedule.types import ScheduleConfig

    return ScheduleConfig(prompt="x", enabled=False)
