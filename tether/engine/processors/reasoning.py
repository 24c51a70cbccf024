"""Assembles streamed reasoning deltas into whole reasoning messages."""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Callable

from ..events import CodexMessage, Reasoning

logger = logging.getLogger(__name__)

_TITLE_RE = re.compile(r"^\s*\*\*(.+?)\*\*\s*", re.DOTALL)


class ReasoningState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHED = "flushed"


def split_title(text: str) -> tuple[str | None, str]:
    """Split a leading ``**Title**`` off a reasoning section."""
    match = _TITLE_RE.match(text)
    if not match:
        return None, text.strip()
    title = match.group(1).strip()
    body = text[match.end():].strip()
    return title, body or title


class ReasoningProcessor:
    """IDLE -> ACCUMULATING -> FLUSHED, per reasoning section.

    Deltas accumulate until a section break or the agent's own
    ``agent_reasoning`` summary arrives. A section flushed by a break
    is not emitted again when its summary follows.
    """

    def __init__(self, emit: Callable[[CodexMessage], None]) -> None:
        self._emit = emit
        self._buffer: list[str] = []
        self._last_emitted: str | None = None
        self.state = ReasoningState.IDLE

    def process_delta(self, delta: str) -> None:
        if not delta:
            return
        if self.state == ReasoningState.FLUSHED:
            self._last_emitted = None
        self._buffer.append(delta)
        self.state = ReasoningState.ACCUMULATING

    def handle_section_break(self) -> None:
        """Flush the partial paragraph collected so far, if any."""
        if self.state != ReasoningState.ACCUMULATING:
            return
        text = "".join(self._buffer)
        self._buffer.clear()
        self.state = ReasoningState.FLUSHED
        if text.strip():
            self._send(text)

    def complete(self, text: str | None) -> None:
        """Emit the full section text, replacing any partial buffer."""
        full = text if text and text.strip() else "".join(self._buffer)
        self._buffer.clear()
        already_sent = (
            self._last_emitted is not None
            and full.strip() == self._last_emitted
        )
        self.state = ReasoningState.FLUSHED
        if full.strip() and not already_sent:
            self._send(full)

    def reset(self) -> None:
        """Discard partial state without emitting anything."""
        if self._buffer:
            logger.debug(
                "ReasoningProcessor.reset: dropping %d buffered deltas",
                len(self._buffer),
            )
        self._buffer.clear()
        self._last_emitted = None
        self.state = ReasoningState.IDLE

    def _send(self, text: str) -> None:
        self._last_emitted = text.strip()
        title, body = split_title(text)
        self._emit(Reasoning(message=body, title=title))
