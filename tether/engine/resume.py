"""Rebuild conversational context from a persisted agent transcript.

After a restart the agent process has forgotten the conversation.
The reconstructor replays the agent's own rollout file through the
same normalization used for live events and renders a compact,
role-tagged summary that is handed to the next session as developer
instructions.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .collaborators import TranscriptStore
from .events import AgentText, Reasoning, ToolCall, ToolCallResult, convert_codex_event

logger = logging.getLogger(__name__)

MAX_ITEMS = 40
MAX_TOTAL_CHARS = 16_000
TOOL_MAX_CHARS = 2_000
REASONING_MAX_CHARS = 2_000

HEADER = "Continue from the prior session context below:"
HEADER_TRUNCATED = (
    "Continue from the prior session context below (transcript truncated):"
)

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class ResumeContext:
    """Rendered context plus where it came from."""
    text: str
    path: Path
    truncated: bool
    item_count: int


def format_value(
    value: Any, max_chars: int, single_line: bool = False,
) -> tuple[str | None, bool]:
    """Render *value* as text capped at *max_chars*.

    Returns the text (None when there is nothing to show) and whether
    it was cut.
    """
    if value is None:
        return None, False
    if isinstance(value, str):
        raw = value
    else:
        try:
            raw = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError):
            return None, False
    text = _WHITESPACE_RE.sub(" ", raw).strip() if single_line else raw
    if not text.strip():
        return None, False
    if len(text) <= max_chars:
        return text, False
    return f"{text[:max_chars]}...", True


class ResumeReconstructor:
    """Turns the latest transcript of an agent session into resume context."""

    def __init__(
        self,
        store: TranscriptStore,
        max_items: int = MAX_ITEMS,
        max_chars: int = MAX_TOTAL_CHARS,
    ) -> None:
        self._store = store
        self.max_items = max_items
        self.max_chars = max_chars

    def find_resume_file(self, agent_session_id: str) -> Path | None:
        if not agent_session_id:
            return None
        try:
            return self._store.find_latest_file(agent_session_id)
        except OSError:
            logger.debug(
                "Transcript lookup failed for %s", agent_session_id[:8], exc_info=True,
            )
            return None

    def reconstruct(self, agent_session_id: str) -> ResumeContext | None:
        """Locate and render the transcript. None means no usable context."""
        path = self.find_resume_file(agent_session_id)
        if path is None:
            logger.info("No transcript found for session %s", agent_session_id[:8])
            return None
        context = self.build_context(path)
        if context is None:
            logger.info("Transcript %s yielded no resume context", path.name)
        return context

    def build_context(self, path: Path) -> ResumeContext | None:
        content = self._store.read_file(path)
        if not content:
            return None

        items: list[str] = []
        truncated = False
        for line in content.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                converted = convert_codex_event(json.loads(line))
            except Exception as exc:
                logger.debug("Skipping unreadable transcript row in %s: %s", path.name, exc)
                continue
            if converted is None:
                continue
            if converted.user_message:
                items.append(f"User: {converted.user_message}")
            for message in converted.messages:
                rendered, cut = self._render(message)
                truncated = truncated or cut
                if rendered:
                    items.append(rendered)

        if not items:
            return None

        if len(items) > self.max_items:
            items = items[-self.max_items:]
            truncated = True

        total = sum(len(item) + 1 for item in items)
        while len(items) > 1 and total > self.max_chars:
            removed = items.pop(0)
            total -= len(removed) + 1
            truncated = True

        header = HEADER_TRUNCATED if truncated else HEADER
        logger.info(
            "Rebuilt resume context from %s (%d items, %d chars%s)",
            path.name,
            len(items),
            total,
            ", truncated" if truncated else "",
        )
        return ResumeContext(
            text="\n".join([header, *items]),
            path=path,
            truncated=truncated,
            item_count=len(items),
        )

    @staticmethod
    def _render(message: Any) -> tuple[str | None, bool]:
        if isinstance(message, AgentText):
            return (f"Assistant: {message.message}" if message.message else None), False
        if isinstance(message, Reasoning):
            text, cut = format_value(message.message, REASONING_MAX_CHARS)
            return (f"Assistant: Reasoning: {text}" if text else None), cut
        if isinstance(message, ToolCall):
            text, cut = format_value(message.input, TOOL_MAX_CHARS, single_line=True)
            if text:
                return f"Tool: Call {message.name} {text}", cut
            return f"Tool: Call {message.name}", False
        if isinstance(message, ToolCallResult):
            text, cut = format_value(message.output, TOOL_MAX_CHARS, single_line=True)
            return (f"Tool: Result {text}" if text else None), cut
        return None, False
