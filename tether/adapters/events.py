"""Event types published by the session orchestrator.

Each sink callback becomes one typed dataclass on the EventBus, so
the terminal renderer and the SSE stream consume the same objects.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SessionEvent:
    """Base event published on the bus."""
    event_type: str = ""


@dataclass
class AgentMessage(SessionEvent):
    """A normalized agent message (text, reasoning, tool call, ...)."""
    event_type: str = "agent_message"
    message: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionStatus(SessionEvent):
    """Session-level notification: ``ready`` or a user-facing message."""
    event_type: str = "session_status"
    status: str = ""
    text: str | None = None


@dataclass
class ThinkingChanged(SessionEvent):
    event_type: str = "thinking_changed"
    thinking: bool = False


@dataclass
class AgentSessionDiscovered(SessionEvent):
    event_type: str = "agent_session_discovered"
    agent_session_id: str = ""


@dataclass
class DisplayLine(SessionEvent):
    """A line for the local message buffer."""
    event_type: str = "display"
    text: str = ""
    kind: str = "status"


@dataclass
class PermissionRequested(SessionEvent):
    event_type: str = "permission_request"
    request_id: str = ""
    kind: str = ""
    tool_name: str = ""
    call_id: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None


def event_to_dict(event: SessionEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # "event" on the wire, matching the SSE event name
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d
