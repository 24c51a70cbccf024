"""Interfaces of the collaborators the orchestrator is wired to.

The orchestrator never imports a concrete queue, store or sink; the
CLI and the tests hand it implementations of these ABCs.
"""
from __future__ import annotations

import abc
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .models import AbortSignal, PendingMessage

if TYPE_CHECKING:
    from .events import CodexMessage
    from .processors.permission import PendingApproval

logger = logging.getLogger(__name__)


def fire_and_log(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke a sink callback, logging and swallowing its errors.

    Sinks belong to the outer layers; a broken renderer must never
    take the orchestrator loop down with it.
    """
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception(
            "Sink callback %s failed",
            getattr(callback, "__qualname__", repr(callback)),
        )


class SessionQueue(abc.ABC):
    """Source of user messages, consumed one batch at a time."""

    @abc.abstractmethod
    async def wait_for_next_message(
        self, signal: AbortSignal,
    ) -> PendingMessage | None:
        """Block until a message is available or *signal* fires.

        Returns None when the signal fired or when input has ended;
        callers tell the two apart by checking ``signal.aborted``.
        """

    @abc.abstractmethod
    def reset(self) -> None:
        """Drop every queued message."""

    @abc.abstractmethod
    def size(self) -> int:
        ...


class TranscriptStore(abc.ABC):
    """Read-only access to the agent's persisted transcripts."""

    @abc.abstractmethod
    def find_latest_file(self, agent_session_id: str) -> Path | None:
        """Most recently modified transcript for the session, if any."""

    @abc.abstractmethod
    def read_file(self, path: Path) -> str | None:
        """File contents, or None when unreadable."""


class SessionSink(abc.ABC):
    """Outbound channel towards the remote party and the local terminal."""

    @abc.abstractmethod
    def send_normalized_message(self, message: CodexMessage) -> None:
        ...

    @abc.abstractmethod
    def send_session_event(self, event: dict[str, Any]) -> None:
        """Session-level events such as ``{"type": "ready"}``."""

    @abc.abstractmethod
    def on_thinking_changed(self, thinking: bool) -> None:
        ...

    @abc.abstractmethod
    def on_agent_session_id_discovered(self, agent_session_id: str) -> None:
        ...

    def display(self, text: str, kind: str = "status") -> None:
        """Append a line to the local message buffer. Optional."""


class PermissionSink(abc.ABC):
    """Receives approval requests that need a human decision."""

    @abc.abstractmethod
    def on_permission_request(self, pending: PendingApproval) -> None:
        ...
