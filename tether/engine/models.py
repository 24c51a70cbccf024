"""Core data models for the session orchestrator.

All dataclasses and enums shared by the loop, the stall monitor and
the protocol client. Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Phase(str, Enum):
    """What the agent is currently believed to be doing."""
    IDLE = "idle"
    REQUEST = "request"
    THINKING = "thinking"
    TOOL = "tool"
    PATCH = "patch"
    COMPLETE = "complete"


class LoopState(str, Enum):
    """Orchestrator loop states. See lifecycle.py for transition rules."""
    WAITING_FOR_MESSAGE = "waiting-for-message"
    STARTING_TURN = "starting-turn"
    CONTINUING_TURN = "continuing-turn"
    TURN_FINISHING = "turn-finishing"
    STOPPED = "stopped"


class ExitReason(str, Enum):
    """Why launch() returned."""
    EXIT = "exit"
    SWITCH = "switch"


class TurnKind(str, Enum):
    START = "start"
    CONTINUE = "continue"


class ResumeOrigin(str, Enum):
    """Where a resume pointer came from. Determines its priority."""
    MODE_CHANGE = "mode_change"
    ABORT = "abort"
    LOCAL = "local"


def _make_id() -> str:
    return str(uuid.uuid4())


class AbortSignal:
    """One-shot cancellation flag shared by a turn and its protocol calls.

    Mirrors an abort controller: once aborted it stays aborted, and the
    owner swaps in a fresh signal for the next turn.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class PendingMessage:
    """One user instruction plus the mode it was enqueued under."""
    text: str
    mode: dict[str, Any] = field(default_factory=dict)
    mode_hash: str = ""
    isolate: bool = False
    message_id: str = field(default_factory=_make_id)


@dataclass
class SessionIdentity:
    """Identifies the conversation this orchestrator drives.

    local_session_id is stable for the process lifetime;
    agent_session_id is assigned by the agent and may change
    after a restart.
    """
    local_session_id: str = field(default_factory=_make_id)
    agent_session_id: str | None = None
    cwd: str = "."
    mode_hash: str | None = None


@dataclass
class ResumePointer:
    """Reference kept across a restart so the next turn can rebuild context."""
    agent_session_id: str
    origin: ResumeOrigin
    path: str | None = None


@dataclass
class Turn:
    """One submit-and-await cycle with the agent."""
    kind: TurnKind
    message: PendingMessage
    signal: AbortSignal
    resume_context: str | None = None
    resume_file: str | None = None
    turn_id: str = field(default_factory=_make_id)


@dataclass
class RestartBudget:
    """Rolling cap on automatic stall restarts."""
    limit: int = 3
    cooldown_seconds: float = 900.0
    count: int = 0
    last_restart_at: float | None = None

    def expire(self, now: float) -> None:
        """Reset the counter once the cooldown window has elapsed."""
        if (
            self.last_restart_at is not None
            and now - self.last_restart_at > self.cooldown_seconds
        ):
            self.clear()

    @property
    def exhausted(self) -> bool:
        return self.count >= self.limit

    def record(self, now: float) -> None:
        self.count += 1
        self.last_restart_at = now

    def clear(self) -> None:
        self.count = 0
        self.last_restart_at = None
