"""
HELMSMAN error taxonomy.

Domain operations raise these. The hook boundary (engine.py) never lets
them escape to the host: gate denials are returned as values, everything
else is logged and degraded.
"""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for every governance failure."""
    pass


class ValidationError(GovernanceError):
    """Malformed input at a tool boundary. Never partially applied."""
    pass


# ---------------------------------------------------------------------------
# Task graph
# ---------------------------------------------------------------------------

class LinkageError(GovernanceError):
    """Parent record is missing or already in a terminal state."""
    pass


class ChainConflict(GovernanceError):
    """More than one task (or epic) would be active at the same time."""
    pass


class IncompleteSubtasks(GovernanceError):
    """Task completion attempted while subtasks are still pending."""

    def __init__(self, message: str, pending: list[str] | None = None):
        super().__init__(message)
        self.pending = pending or []


class InvalidTaskTransition(GovernanceError):
    """Status change not permitted by the task/epic state machine."""
    pass


# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------

class DepthExceeded(GovernanceError):
    """Delegation chain would exceed its depth bound, or is cyclic."""

    def __init__(self, message: str, depth: int | None = None, max_depth: int | None = None):
        super().__init__(message)
        self.depth = depth
        self.max_depth = max_depth


class InvalidTransition(GovernanceError):
    """Delegation status change not permitted from the current status."""
    pass


# ---------------------------------------------------------------------------
# Gate + persistence
# ---------------------------------------------------------------------------

class ToolGateError(GovernanceError):
    """
    Permission denial for a single tool invocation.

    Carries enough structure for the host to show the agent what was
    blocked and what to do about it.
    """

    def __init__(
        self,
        tool: str,
        reason: str,
        remediation: str,
        role: str = "meta",
        category: str = "write",
    ):
        self.tool = tool
        self.reason = reason
        self.remediation = remediation
        self.role = role
        self.category = category
        super().__init__(self.render())

    def render(self) -> str:
        return "\n".join([
            f"GOVERNANCE BLOCK: {self.tool}",
            "",
            f"WHAT: {self.reason}",
            f"ROLE: {self.role} | CATEGORY: {self.category}",
            f"NEXT: {self.remediation}",
        ])


class PersistenceError(GovernanceError):
    """Durable storage could not be read or written."""
    pass
