"""Exception hierarchy for the session orchestrator.

Specific exceptions for each failure mode. Only AgentConnectError
(and its ConnectTimeoutError subclass) escapes launch(); everything
else is recovered inside the loop.
"""
from __future__ import annotations


class TetherError(Exception):
    """Base exception for all orchestrator errors."""


class AgentConnectError(TetherError):
    """The agent process could not be started or initialized."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Cannot connect to agent '{command}': {reason}")


class ConnectTimeoutError(AgentConnectError):
    """The protocol handshake did not complete in time."""
    def __init__(self, command: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            command, f"handshake timed out after {timeout_seconds}s"
        )


class AbortedByCaller(TetherError):
    """A turn's abort signal fired before the agent answered."""
    def __init__(self, request_id: int | None = None):
        self.request_id = request_id
        super().__init__(
            "Turn aborted by caller"
            + (f" (request {request_id})" if request_id is not None else "")
        )


class AgentTransportError(TetherError):
    """The connection to the agent process was lost mid-request."""


class AgentProtocolError(TetherError):
    """The agent answered with a JSON-RPC error or a failed tool result."""
    def __init__(self, message: str, code: int | None = None):
        self.code = code
        super().__init__(
            f"{message} (code {code})" if code is not None else message
        )


class StallDetected(TetherError):
    """No agent events arrived within the current phase's timeout."""
    def __init__(self, phase: str, idle_seconds: float):
        self.phase = phase
        self.idle_seconds = idle_seconds
        super().__init__(
            f"no events for {round(idle_seconds)}s (phase={phase})"
        )


class RestartBudgetExhausted(TetherError):
    """Too many stall restarts inside the cooldown window."""
    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(
            f"Stall restart limit reached ({count}/{limit})"
        )


class InvalidLoopTransition(TetherError, ValueError):
    """The orchestrator loop attempted a transition its state machine forbids."""
