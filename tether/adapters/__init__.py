"""Adapters package - Bridge between the orchestrator and its front ends.

Concrete session queue and event bus consumed by the terminal CLI and
the HTTP/SSE control server.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "MessageQueue",
    "event_to_dict",
    "mode_hash",
]

from tether.adapters.event_bus import EventBus
from tether.adapters.events import event_to_dict
from tether.adapters.message_queue import MessageQueue, mode_hash
