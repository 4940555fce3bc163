"""Tests for the permission gate."""

import pytest

from taskpulse.agent.permissions import (
    ActionRejected,
    AgentAction,
    PermissionGate,
    RiskRules,
)
from taskpulse.core.config import Config
from taskpulse.core.schedule.types import PermissionPolicy


@pytest.fixture
def gate():
    return PermissionGate.from_config(Config())


READ = AgentAction("read_file", mutating=False, command="notes.md")
WRITE = AgentAction("edit_note", mutating=True, command="notes.md")
DELETE = AgentAction("delete_file", mutating=True, command="notes.md")
RM_RF = AgentAction("run", mutating=True, command="rm -rf /tmp/build")


def test_deny_all_is_read_only(gate):
    mode = gate.authorize(PermissionPolicy.DENY_ALL)
    assert mode.read_only
    assert mode.check(READ).allowed
    assert not mode.check(WRITE).allowed
    assert "read-only" in mode.check(WRITE).reason


def test_allow_safe_blocks_risky_only(gate):
    mode = gate.authorize("allow-safe")
    assert mode.check(READ).allowed
    assert mode.check(WRITE).allowed
    assert not mode.check(DELETE).allowed
    assert not mode.check(RM_RF).allowed


def test_allow_all_never_gates(gate):
    mode = gate.authorize(PermissionPolicy.ALLOW_ALL)
    for action in (READ, WRITE, DELETE, RM_RF):
        assert mode.check(action).allowed


def test_enforce_raises_at_attempt(gate):
    mode = gate.authorize(PermissionPolicy.DENY_ALL)
    mode.enforce(READ)
    with pytest.raises(ActionRejected) as exc:
        mode.enforce(WRITE)
    assert exc.value.action is WRITE
    assert "edit_note(notes.md)" in str(exc.value)


def test_authorize_is_pure(gate):
    """Same policy gives equal modes; nothing accumulates between calls."""
    first = gate.authorize(PermissionPolicy.ALLOW_SAFE)
    first.check(DELETE)
    assert gate.authorize(PermissionPolicy.ALLOW_SAFE) == first


def test_custom_rules():
    gate = PermissionGate(RiskRules.from_lists(["publish"], [r"\bDROP\s+TABLE\b"]))
    mode = gate.authorize(PermissionPolicy.ALLOW_SAFE)
    assert not mode.check(AgentAction("publish")).allowed
    assert not mode.check(AgentAction("sql", command="DROP TABLE users")).allowed
    assert mode.check(AgentAction("delete_file")).allowed  # not in custom list


def test_unknown_policy_rejected(gate):
    with pytest.raises(ValueError):
        gate.authorize("allow-some")
