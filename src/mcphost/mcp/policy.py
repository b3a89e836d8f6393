"""Authorization hooks consulted before the registry mutates its topology."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from mcphost.mcp.errors import MutatingAction


@dataclass(slots=True, frozen=True)
class PolicyDecision:
    """Allow/deny verdict for one mutating registry call."""

    allowed: bool
    reason: str = ""


class MutationPolicy(Protocol):
    """Decide whether an add/remove/reconnect may proceed."""

    def authorize(self, action: MutatingAction, server: str) -> PolicyDecision:
        """Return the verdict for `action` against `server`."""


class AllowAllPolicy:
    """Policy used when the host wires no security component."""

    def authorize(self, action: MutatingAction, server: str) -> PolicyDecision:
        del action, server
        return PolicyDecision(allowed=True)


class AutonomyLevel(StrEnum):
    """How much the agent may change on its own."""

    READ_ONLY = "read_only"
    SUPERVISED = "supervised"
    FULL = "full"


class AutonomyPolicy:
    """Only full autonomy may change which MCP servers are connected.

    Reconnecting an already-approved server is allowed under supervision.
    """

    def __init__(self, level: AutonomyLevel) -> None:
        self._level = level

    @property
    def level(self) -> AutonomyLevel:
        return self._level

    def authorize(self, action: MutatingAction, server: str) -> PolicyDecision:
        del server
        if self._level is AutonomyLevel.FULL:
            return PolicyDecision(allowed=True)
        if action == "reconnect" and self._level is AutonomyLevel.SUPERVISED:
            return PolicyDecision(allowed=True)
        return PolicyDecision(
            allowed=False,
            reason=f"MCP server {action} requires {AutonomyLevel.FULL} autonomy level",
        )
