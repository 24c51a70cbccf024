"""Tracks the cumulative turn diff and emits it once per distinct diff."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from ..events import DIFF_TOOL_NAME, CodexMessage, ToolCall, ToolCallResult

logger = logging.getLogger(__name__)


class DiffState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHED = "flushed"


@dataclass
class DiffSummary:
    files: int = 0
    additions: int = 0
    deletions: int = 0

    def render(self) -> str:
        noun = "file" if self.files == 1 else "files"
        return f"{self.files} {noun} changed, +{self.additions} -{self.deletions}"


def summarize_diff(unified_diff: str) -> DiffSummary:
    """Count files and added/removed lines in a unified diff."""
    summary = DiffSummary()
    git_files: set[str] = set()
    header_files: set[str] = set()
    for line in unified_diff.splitlines():
        if line.startswith("diff --git "):
            git_files.add(line[len("diff --git "):])
        elif line.startswith("+++ ") or line.startswith("--- "):
            path = line[4:].strip()
            if path != "/dev/null":
                header_files.add(path[2:] if path[:2] in ("a/", "b/") else path)
        elif line.startswith("+"):
            summary.additions += 1
        elif line.startswith("-"):
            summary.deletions += 1
    # Plain unified diffs carry no "diff --git" header.
    summary.files = len(git_files) or len(header_files)
    return summary


class DiffProcessor:
    """Keeps the latest cumulative unified diff of the current turn."""

    def __init__(self, emit: Callable[[CodexMessage], None]) -> None:
        self._emit = emit
        self._pending: str | None = None
        self._last_flushed: str | None = None
        self.state = DiffState.IDLE

    def process_diff(self, unified_diff: str) -> None:
        if not unified_diff:
            return
        self._pending = unified_diff
        self.state = DiffState.ACCUMULATING

    def flush(self) -> None:
        """Emit the pending diff unless an identical one already went out."""
        diff = self._pending
        self._pending = None
        if diff is None or diff == self._last_flushed:
            return
        self._last_flushed = diff
        self.state = DiffState.FLUSHED
        summary = summarize_diff(diff).render()
        call_id = str(uuid.uuid4())
        logger.debug("DiffProcessor.flush: %s", summary)
        self._emit(ToolCall(
            name=DIFF_TOOL_NAME,
            call_id=call_id,
            input={"unified_diff": diff},
        ))
        self._emit(ToolCallResult(
            call_id=call_id,
            output={"summary": summary, "status": "completed"},
        ))

    def reset(self) -> None:
        """Forget the diff without emitting it."""
        self._pending = None
        self._last_flushed = None
        self.state = DiffState.IDLE
