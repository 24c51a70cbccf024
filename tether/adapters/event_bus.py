"""Fan-out event bus implementing the orchestrator's outbound sinks.

The orchestrator calls the sink methods synchronously from its event
handler; each call is turned into a SessionEvent and copied onto the
queue of every subscriber (terminal renderer, SSE clients).
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from tether.adapters.events import (
    AgentMessage,
    AgentSessionDiscovered,
    DisplayLine,
    PermissionRequested,
    SessionEvent,
    SessionStatus,
    ThinkingChanged,
)
from tether.engine.collaborators import PermissionSink, SessionSink
from tether.engine.events import CodexMessage, message_to_dict
from tether.engine.processors.permission import PendingApproval

logger = logging.getLogger(__name__)


class EventBus(SessionSink, PermissionSink):
    """Async queues bridging orchestrator callbacks to consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._maxsize = maxsize
        self._subscribers: list[asyncio.Queue[SessionEvent]] = []
        self._closed = False
        self.thinking = False
        self.agent_session_id: str | None = None

    # ── Subscription ──

    def subscribe(self) -> asyncio.Queue[SessionEvent]:
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(queue)
        logger.debug("EventBus subscriber added (total=%d)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SessionEvent]) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            return
        logger.debug("EventBus subscriber removed (total=%d)", len(self._subscribers))

    async def consume(
        self, queue: asyncio.Queue[SessionEvent],
    ) -> AsyncIterator[SessionEvent]:
        """Yield events from *queue* as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def emit(self, event: SessionEvent) -> None:
        if self._closed:
            return
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.error(
                    "EventBus subscriber queue full, dropping: %s (queue size: %d)",
                    event.event_type,
                    queue.qsize(),
                )

    def close(self) -> None:
        """Stop every consumer loop permanently."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    # ── SessionSink ──

    def send_normalized_message(self, message: CodexMessage) -> None:
        self.emit(AgentMessage(message=message_to_dict(message)))

    def send_session_event(self, event: dict[str, Any]) -> None:
        status = str(event.get("type") or "")
        text = event.get("message")
        self.emit(SessionStatus(status=status, text=str(text) if text else None))

    def on_thinking_changed(self, thinking: bool) -> None:
        self.thinking = thinking
        self.emit(ThinkingChanged(thinking=thinking))

    def on_agent_session_id_discovered(self, agent_session_id: str) -> None:
        self.agent_session_id = agent_session_id
        self.emit(AgentSessionDiscovered(agent_session_id=agent_session_id))

    def display(self, text: str, kind: str = "status") -> None:
        self.emit(DisplayLine(text=text, kind=kind))

    # ── PermissionSink ──

    def on_permission_request(self, pending: PendingApproval) -> None:
        self.emit(PermissionRequested(
            request_id=pending.request_id,
            kind=pending.kind.value,
            tool_name=pending.tool_name,
            call_id=pending.call_id,
            input=pending.input,
            reason=pending.reason,
        ))
