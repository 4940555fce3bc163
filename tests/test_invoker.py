"""Tests for taskpulse.agent.invoker."""

from __future__ import annotations

import threading

import pytest

from taskpulse.agent.invoker import AgentInvoker, ThreadedInvoker, load_invoker
from taskpulse.agent.permissions import PermissionGate
from taskpulse.core.schedule.types import CycleResult, PermissionPolicy

_MODULE = '''
from taskpulse.core.schedule.types import CycleResult


class EchoInvoker:
    async def run(self, prompt, mode):
        return CycleResult(success=True, output=prompt)


instance = EchoInvoker()


def build():
    return EchoInvoker()


def broken():
    return "not an invoker"
'''


@pytest.fixture
def invoker_module(tmp_path, monkeypatch):
    (tmp_path / "fake_agents.py").write_text(_MODULE)
    monkeypatch.syspath_prepend(str(tmp_path))
    return "fake_agents"


@pytest.mark.asyncio
async def test_threaded_invoker_runs_off_loop():
    loop_thread = threading.get_ident()
    seen = {}

    def blocking(prompt, mode):
        seen["thread"] = threading.get_ident()
        seen["policy"] = mode.policy
        return CycleResult(success=True, output=prompt.upper())

    inv = ThreadedInvoker(blocking)
    mode = PermissionGate().authorize(PermissionPolicy.DENY_ALL)
    result = await inv.run("ping", mode)

    assert result.output == "PING"
    assert seen["thread"] != loop_thread
    assert seen["policy"] is PermissionPolicy.DENY_ALL
    assert isinstance(inv, AgentInvoker)


@pytest.mark.parametrize("attr", ["instance", "build", "EchoInvoker"])
def test_load_invoker(invoker_module, attr):
    inv = load_invoker(f"{invoker_module}:{attr}")
    assert isinstance(inv, AgentInvoker)
    assert not isinstance(inv, type)


def test_load_invoker_wrong_type(invoker_module):
    with pytest.raises(TypeError):
        load_invoker(f"{invoker_module}:broken")


@pytest.mark.parametrize("path", ["fake_agents", ":build", "fake_agents:"])
def test_load_invoker_bad_path(path):
    with pytest.raises(ValueError):
        load_invoker(path)


def test_load_invoker_missing_attr(invoker_module):
    with pytest.raises(AttributeError):
        load_invoker(f"{invoker_module}:nope")
