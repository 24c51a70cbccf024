"""Local terminal front end: renders bus events and reads typed commands."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markdown import Markdown as RichMarkdown
from rich.text import Text

from tether.adapters.event_bus import EventBus
from tether.adapters.events import (
    AgentSessionDiscovered,
    DisplayLine,
    PermissionRequested,
    SessionEvent,
    SessionStatus,
)
from tether.adapters.message_queue import MessageQueue
from tether.engine.providers.codex_client import PERMISSION_POLICIES

if TYPE_CHECKING:
    from tether.engine.orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

# DisplayLine.kind -> rich style
_KIND_STYLES: dict[str, str] = {
    "user": "bold cyan",
    "tool": "yellow",
    "result": "dim",
    "system": "italic dim",
    "status": "magenta",
}

HELP_TEXT = """Commands:
  /approve <id> [always]  allow a pending approval (optionally for the session)
  /deny <id>              deny a pending approval
  /abort                  abort the current turn
  /mode <name>            permission mode for new messages ({modes})
  /status                 show session state
  /switch                 hand the session back to local mode
  /exit                   stop the session
Anything else is sent to the agent."""


class TerminalRenderer:
    """Prints SessionEvents to a rich Console."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render(self, event: SessionEvent) -> None:
        if isinstance(event, DisplayLine):
            self._render_line(event)
        elif isinstance(event, PermissionRequested):
            self._render_permission(event)
        elif isinstance(event, SessionStatus):
            if event.status == "ready":
                self.console.print(Text("Ready.", style="dim green"))
        elif isinstance(event, AgentSessionDiscovered):
            self.console.print(
                Text(f"Codex session {event.agent_session_id}", style="dim"),
            )

    def _render_line(self, event: DisplayLine) -> None:
        if event.kind == "assistant":
            self.console.print(RichMarkdown(event.text))
            return
        prefix = "> " if event.kind == "user" else ""
        style = _KIND_STYLES.get(event.kind, "")
        self.console.print(Text(f"{prefix}{event.text}", style=style))

    def _render_permission(self, event: PermissionRequested) -> None:
        short_id = event.request_id[:8]
        if event.kind == "exec":
            command = event.input.get("command")
            if isinstance(command, list):
                command = " ".join(str(part) for part in command)
            detail = str(command or "")
        else:
            changes = event.input.get("changes") or {}
            detail = ", ".join(sorted(changes)) if isinstance(changes, dict) else ""
        self.console.print(Text(
            f"Approval needed [{short_id}] {event.tool_name}: {detail}",
            style="bold red",
        ))
        if event.reason:
            self.console.print(Text(f"  reason: {event.reason}", style="dim"))
        self.console.print(Text(
            f"  /approve {short_id} [always]  |  /deny {short_id}", style="dim",
        ))

    async def run(self, bus: EventBus, queue: asyncio.Queue[SessionEvent]) -> None:
        try:
            async for event in bus.consume(queue):
                try:
                    self.render(event)
                except Exception:
                    logger.exception("Failed to render %s", event.event_type)
        finally:
            bus.unsubscribe(queue)


class CommandReader:
    """Turns typed lines into queue pushes and orchestrator calls."""

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        queue: MessageQueue,
        renderer: TerminalRenderer,
        mode: dict[str, Any] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._queue = queue
        self._renderer = renderer
        self.mode: dict[str, Any] = dict(mode or {"permission_mode": "default"})

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        if not line.startswith("/"):
            if self._queue.closed:
                return
            self._queue.push(line, mode=self.mode)
            return

        command, _, rest = line[1:].partition(" ")
        args = rest.split()
        handler = {
            "approve": self._cmd_approve,
            "deny": self._cmd_deny,
            "abort": lambda a: self._orchestrator.handle_abort(reset_queue=False),
            "mode": self._cmd_mode,
            "status": self._cmd_status,
            "switch": lambda a: self._orchestrator.handle_switch(),
            "exit": lambda a: self._orchestrator.handle_exit(),
            "quit": lambda a: self._orchestrator.handle_exit(),
            "help": self._cmd_help,
        }.get(command.lower())
        if handler is None:
            self._say(f"Unknown command /{command}; try /help")
            return
        handler(args)

    def _say(self, text: str, style: str = "magenta") -> None:
        self._renderer.console.print(Text(text, style=style))

    def _match_request(self, prefix: str) -> str | None:
        matches = [
            p.request_id for p in self._orchestrator.permissions.pending()
            if p.request_id.startswith(prefix)
        ]
        if len(matches) == 1:
            return matches[0]
        self._say(
            f"No pending approval matches {prefix!r}" if not matches
            else f"Ambiguous approval id {prefix!r}",
        )
        return None

    def _cmd_approve(self, args: list[str]) -> None:
        if not args:
            self._say("Usage: /approve <id> [always]")
            return
        request_id = self._match_request(args[0])
        if request_id is None:
            return
        always = len(args) > 1 and args[1].lower() == "always"
        self._orchestrator.resolve_permission(
            request_id, "allow_always" if always else "allow",
        )

    def _cmd_deny(self, args: list[str]) -> None:
        if not args:
            self._say("Usage: /deny <id>")
            return
        request_id = self._match_request(args[0])
        if request_id is not None:
            self._orchestrator.resolve_permission(request_id, "deny")

    def _cmd_mode(self, args: list[str]) -> None:
        if not args or args[0] not in PERMISSION_POLICIES:
            self._say(f"Usage: /mode <{'|'.join(PERMISSION_POLICIES)}>")
            return
        self.mode = {**self.mode, "permission_mode": args[0]}
        self._say(f"Permission mode for new messages: {args[0]}")

    def _cmd_status(self, args: list[str]) -> None:
        self._renderer.console.print_json(json.dumps(self._orchestrator.snapshot()))

    def _cmd_help(self, args: list[str]) -> None:
        self._say(HELP_TEXT.format(modes=", ".join(PERMISSION_POLICIES)), style="")

    async def run(self, reader: asyncio.StreamReader) -> None:
        """Read lines until EOF, then close the queue."""
        while True:
            raw = await reader.readline()
            if not raw:
                break
            try:
                self.handle_line(raw.decode("utf-8", errors="replace"))
            except Exception:
                logger.exception("Failed to handle input line")
        logger.info("stdin closed; no more local input")
        self._queue.close()
