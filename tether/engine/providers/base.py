"""Abstract base for agent protocol clients.

A client owns one agent process and the conversation running inside
it. The orchestrator only talks to this interface; CodexMcpClient is
the production implementation and the tests substitute fakes.
"""
from __future__ import annotations

import abc
import logging
import shutil
from typing import Any, Awaitable, Callable

from ..models import AbortSignal

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]
PermissionHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class AgentClient(abc.ABC):
    """Abstract agent client interface."""

    @abc.abstractmethod
    async def connect(self, timeout: float) -> None:
        """Start the agent process and complete the handshake.

        Raises ConnectTimeoutError when the handshake takes longer
        than *timeout* seconds.
        """

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Stop the agent process. Safe to call repeatedly."""

    @abc.abstractmethod
    async def start_turn(
        self, config: dict[str, Any], signal: AbortSignal,
    ) -> dict[str, Any]:
        """Open a new conversation and run its first turn to completion."""

    @abc.abstractmethod
    async def continue_turn(
        self, message: str, signal: AbortSignal,
    ) -> dict[str, Any]:
        """Run one more turn in the current conversation."""

    @property
    @abc.abstractmethod
    def is_connected(self) -> bool:
        ...

    @property
    @abc.abstractmethod
    def session_id(self) -> str | None:
        """Agent-assigned session id, once reported."""

    @abc.abstractmethod
    def has_active_session(self) -> bool:
        ...

    @abc.abstractmethod
    def clear_session(self) -> None:
        ...

    @abc.abstractmethod
    def store_session_for_resume(self) -> str | None:
        """Return the session id worth resuming later, if any."""

    @abc.abstractmethod
    def set_handler(self, handler: EventHandler | None) -> None:
        """Register the single receiver of inbound agent events."""

    @abc.abstractmethod
    def set_permission_handler(self, handler: PermissionHandler | None) -> None:
        """Register the coroutine that answers approval requests."""

    @staticmethod
    def resolve_command(command: str, fallback: str | None = None) -> str:
        """Resolve the agent binary by preferring *command*, then *fallback*.

        The command may point to a wrapper that is not on PATH. In that
        case the raw value is kept so errors name the configured command.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s", command, fallback,
                )
                return fallback
            return command
        return fallback or command
