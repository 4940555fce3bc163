"""AgentInvoker — the opaque agent collaborator run once per cycle."""

from __future__ import annotations

import asyncio
import importlib
from typing import Callable, Protocol, runtime_checkable

from loguru import logger

from taskpulse.agent.permissions import AuthorizationMode
from taskpulse.core.schedule.types import CycleResult


@runtime_checkable
class AgentInvoker(Protocol):
    """Executes one task cycle.

    Implementations consult ``mode`` whenever the agent attempts an action
    and report refused actions in ``CycleResult.rejected_actions``. Raising
    or returning ``success=False`` both count as a cycle failure.
    """

    async def run(self, prompt: str, mode: AuthorizationMode) -> CycleResult: ...


class ThreadedInvoker:
    """Adapter for blocking agent runners — executes them on the thread pool."""

    def __init__(self, func: Callable[[str, AuthorizationMode], CycleResult]):
        self.func = func

    async def run(self, prompt: str, mode: AuthorizationMode) -> CycleResult:
        return await asyncio.to_thread(self.func, prompt, mode)


def load_invoker(path: str) -> AgentInvoker:
    """Resolve ``module:attr`` to an AgentInvoker.

    ``attr`` may be an invoker instance or a zero-argument factory.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invoker path must look like 'module:attr', got {path!r}")

    target = getattr(importlib.import_module(module_name), attr)
    # Classes expose ``run`` too, so instantiate them like factories
    if isinstance(target, type) or not isinstance(target, AgentInvoker):
        invoker = target()
    else:
        invoker = target
    if not isinstance(invoker, AgentInvoker):
        raise TypeError(f"{path} did not resolve to an AgentInvoker (got {type(invoker).__name__})")
    logger.info(f"Agent invoker loaded: {path}")
    return invoker
