"""Read-only access to local Codex rollout transcripts."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from tether.engine.collaborators import TranscriptStore

logger = logging.getLogger(__name__)
_ROLLOUT_GLOB = "sessions/**/rollout-*.jsonl"


def default_codex_home() -> Path:
    """``$CODEX_HOME`` when set, else ``~/.codex``."""
    configured = os.environ.get("CODEX_HOME")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".codex"


class CodexTranscriptStore(TranscriptStore):
    """Finds rollout files whose name ends with the agent session id."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or default_codex_home()

    def find_latest_file(self, agent_session_id: str) -> Path | None:
        if not agent_session_id or not self.root.exists():
            return None
        suffix = f"-{agent_session_id}.jsonl"
        candidates: list[tuple[float, Path]] = []
        for path in self.root.glob(_ROLLOUT_GLOB):
            if not path.name.endswith(suffix):
                continue
            try:
                candidates.append((path.stat().st_mtime, path))
            except OSError:
                continue
        if not candidates:
            return None
        candidates.sort(key=lambda item: item[0], reverse=True)
        latest = candidates[0][1]
        logger.debug(
            "Transcript for %s: %s (%d candidates)",
            agent_session_id[:8], latest, len(candidates),
        )
        return latest

    def read_file(self, path: Path) -> str | None:
        try:
            if not path.is_file():
                return None
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.debug("Failed to read transcript %s: %s", path, exc)
            return None
