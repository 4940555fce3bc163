"""Permission gate — map a schedule's policy to an authorization mode.

The mode is handed to the agent invoker and consulted at the point an
action is attempted. Nothing here is pre-filtered, cached or persisted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from taskpulse.core.schedule.types import PermissionPolicy, ScheduleError


class ActionRejected(ScheduleError):
    """Raised by AuthorizationMode.enforce when an action is not allowed."""

    def __init__(self, action: AgentAction, reason: str):
        self.action = action
        self.reason = reason
        super().__init__(f"{action.describe()} rejected: {reason}")


@dataclass(frozen=True)
class AgentAction:
    """An action the agent is about to perform.

    ``mutating`` is False for pure reads (listing, fetching, searching).
    ``command`` carries free-form detail (shell line, URL) matched against
    risky patterns.
    """

    name: str
    mutating: bool = True
    command: str = ""

    def describe(self) -> str:
        return f"{self.name}({self.command})" if self.command else self.name


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    reason: str = ""


@dataclass(frozen=True)
class RiskRules:
    """Caller-defined classification of risky mutating actions."""

    actions: frozenset[str] = frozenset()
    patterns: tuple[re.Pattern, ...] = ()

    @classmethod
    def from_lists(cls, actions: list[str], patterns: list[str]) -> RiskRules:
        return cls(
            actions=frozenset(actions),
            patterns=tuple(re.compile(p) for p in patterns),
        )

    def is_risky(self, action: AgentAction) -> bool:
        if action.name in self.actions:
            return True
        return any(p.search(action.command) for p in self.patterns if action.command)


@dataclass(frozen=True)
class AuthorizationMode:
    """What a cycle's agent may do. Immutable, consulted per attempted action."""

    policy: PermissionPolicy
    read_only: bool = False
    rules: RiskRules | None = field(default=None)

    def check(self, action: AgentAction) -> PermissionDecision:
        if not action.mutating:
            return PermissionDecision(True)
        if self.read_only:
            return PermissionDecision(False, "read-only mode blocks mutating actions")
        if self.rules is not None and self.rules.is_risky(action):
            return PermissionDecision(False, "risky action blocked by allow-safe policy")
        return PermissionDecision(True)

    def enforce(self, action: AgentAction) -> None:
        """Raise ActionRejected if the action is not allowed."""
        decision = self.check(action)
        if not decision.allowed:
            raise ActionRejected(action, decision.reason)


class PermissionGate:
    """Pure policy -> AuthorizationMode mapping with fixed risk rules."""

    def __init__(self, rules: RiskRules | None = None):
        self.rules = rules or RiskRules()

    @classmethod
    def from_config(cls, config) -> PermissionGate:
        """Build from a Config's ``permissions`` section."""
        perms = config.permissions
        return cls(RiskRules.from_lists(perms.risky_actions, perms.risky_patterns))

    def authorize(self, policy: PermissionPolicy | str) -> AuthorizationMode:
        return authorize(PermissionPolicy(policy), self.rules)


def authorize(policy: PermissionPolicy, rules: RiskRules) -> AuthorizationMode:
    """Resolve the authorization mode for a policy."""
    if policy is PermissionPolicy.DENY_ALL:
        return AuthorizationMode(policy=policy, read_only=True)
    if policy is PermissionPolicy.ALLOW_SAFE:
        return AuthorizationMode(policy=policy, rules=rules)
    return AuthorizationMode(policy=policy)
