"""Session orchestrator: drives one long-lived agent conversation.

Pulls user messages from a SessionQueue and turns each into exactly
one agent turn, either opening a new agent session (start) or
continuing the current one. Agent events flow back through a single
dispatch table that tracks the turn's Phase for the stall monitor and
forwards normalized messages to the SessionSink.

Recovery paths:
- Stall: the StallMonitor posts StallFired on the control queue;
  _control_loop() captures a resume pointer, aborts the turn and
  disconnects. The loop's own error handling then marks the session
  "not created" so the next message starts fresh with resume context.
- Abort: handle_abort() captures a resume pointer and aborts the turn
  signal without disconnecting.
- Mode change: a message enqueued under a different mode tears the
  agent session down and is re-attempted with the previous context.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable

from .collaborators import (
    PermissionSink,
    SessionQueue,
    SessionSink,
    TranscriptStore,
    fire_and_log,
)
from .config import OrchestratorConfig
from .errors import AbortedByCaller, AgentConnectError
from .events import CodexMessage, RawEventType, normalize_event, parse_event_type
from .lifecycle import validate_transition
from .models import (
    AbortSignal,
    ExitReason,
    LoopState,
    PendingMessage,
    Phase,
    RestartBudget,
    ResumeOrigin,
    ResumePointer,
    SessionIdentity,
    Turn,
    TurnKind,
)
from .processors import DiffProcessor, PermissionProcessor, ReasoningProcessor
from .providers.base import AgentClient
from .providers.codex_client import build_start_config
from .resume import ResumeContext, ResumeReconstructor
from .stall_monitor import PhaseTimeouts, StallFired, StallMonitor, TurnActivity

logger = logging.getLogger(__name__)

MAX_IDLE_ABORT_BACKOFF = 2.0
IDLE_ABORT_BACKOFF_STEP = 0.05
IDLE_ABORT_RESET_STREAK = 20
_DISPLAY_TRUNCATE = 200


def _clip(text: Any, limit: int = _DISPLAY_TRUNCATE) -> str:
    text = "" if text is None else str(text)
    return text if len(text) <= limit else f"{text[:limit]}..."


class SessionOrchestrator:
    """Runs the message loop for one remote agent session."""

    def __init__(
        self,
        client: AgentClient,
        queue: SessionQueue,
        sink: SessionSink,
        store: TranscriptStore,
        config: OrchestratorConfig | None = None,
        permission_sink: PermissionSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.client = client
        self.queue = queue
        self._sink = sink
        self._clock = clock

        self.identity = SessionIdentity(cwd=self.config.cwd)
        if self.config.local_session_id:
            self.identity.local_session_id = self.config.local_session_id

        self.activity = TurnActivity()
        self.budget = RestartBudget(
            limit=self.config.stall_restart_limit,
            cooldown_seconds=self.config.stall_restart_cooldown_seconds,
        )
        self._control: asyncio.Queue[StallFired] = asyncio.Queue()
        self.monitor = StallMonitor(
            self.activity,
            self.budget,
            self._control,
            timeouts=PhaseTimeouts.from_config(self.config),
            check_interval=self.config.stall_check_interval_seconds,
            clock=clock,
        )

        self.reasoning = ReasoningProcessor(self._emit_message)
        self.diff = DiffProcessor(self._emit_message)
        self.permissions = PermissionProcessor(permission_sink)
        self.resume = ResumeReconstructor(store)

        self.state = LoopState.WAITING_FOR_MESSAGE
        self.exit_reason = ExitReason.EXIT
        self._should_exit = False
        self._signal = AbortSignal()
        self._active_turn: Turn | None = None
        self._pending: PendingMessage | None = None
        self._session_created = False
        self._current_mode_hash: str | None = None
        self._first_turn = True
        self._thinking = False
        self._idle_abort_streak = 0
        self._recovering_from_stall = False
        self._resume_pointer: ResumePointer | None = None
        self._mode_change_pointer: ResumePointer | None = None

        self._handlers: dict[RawEventType, Callable[[dict[str, Any]], None]] = {
            RawEventType.SESSION_CONFIGURED: self._on_session_configured,
            RawEventType.TASK_STARTED: self._on_task_started,
            RawEventType.TASK_COMPLETE: self._on_task_complete,
            RawEventType.TURN_ABORTED: self._on_turn_aborted,
            RawEventType.USER_MESSAGE: self._ignore_event,
            RawEventType.AGENT_MESSAGE: self._on_agent_message,
            RawEventType.AGENT_MESSAGE_DELTA: self._ignore_event,
            RawEventType.AGENT_REASONING: self._on_agent_reasoning,
            RawEventType.AGENT_REASONING_DELTA: self._on_reasoning_delta,
            RawEventType.AGENT_REASONING_SECTION_BREAK: self._on_reasoning_break,
            RawEventType.EXEC_COMMAND_BEGIN: self._on_exec_begin,
            RawEventType.EXEC_COMMAND_OUTPUT_DELTA: self._ignore_event,
            RawEventType.EXEC_COMMAND_END: self._on_exec_end,
            RawEventType.EXEC_APPROVAL_REQUEST: self._on_exec_approval,
            RawEventType.APPLY_PATCH_APPROVAL_REQUEST: self._on_patch_approval,
            RawEventType.PATCH_APPLY_BEGIN: self._on_patch_begin,
            RawEventType.PATCH_APPLY_END: self._on_patch_end,
            RawEventType.MCP_TOOL_CALL_BEGIN: self._on_mcp_tool_begin,
            RawEventType.MCP_TOOL_CALL_END: self._on_mcp_tool_end,
            RawEventType.TURN_DIFF: self._on_turn_diff,
            RawEventType.TOKEN_COUNT: self._forward,
            RawEventType.BACKGROUND_EVENT: self._on_background_event,
            RawEventType.STREAM_ERROR: self._on_error,
            RawEventType.ERROR: self._on_error,
            RawEventType.UNKNOWN: self._on_unknown,
        }

    # ── Public surface ──

    @property
    def phase(self) -> Phase:
        return self.activity.phase

    @property
    def should_exit(self) -> bool:
        return self._should_exit

    async def launch(self) -> ExitReason:
        """Connect, run the loop until exit or switch, then clean up.

        Only a failed connect escapes; every turn failure is recovered.
        """
        self.client.set_handler(self.handle_agent_event)
        self.client.set_permission_handler(self.permissions.handle_request)
        try:
            await self.client.connect(self.config.connect_timeout_seconds)
        except AgentConnectError as exc:
            logger.warning("Initial agent connect failed: %s", exc)
            try:
                await self.client.disconnect()
            except Exception:
                logger.debug("Disconnect after failed connect raised", exc_info=True)
            raise

        logger.info(
            "Session orchestrator started session=%s cwd=%s",
            self.identity.local_session_id[:8],
            self.identity.cwd,
        )
        monitor_task = asyncio.create_task(self.monitor.run())
        control_task = asyncio.create_task(self._control_loop())
        try:
            await self._run_loop()
        finally:
            await self.cleanup(monitor_task, control_task)
        logger.info("Session orchestrator finished reason=%s", self.exit_reason.value)
        return self.exit_reason

    def handle_abort(self, reset_queue: bool = False) -> None:
        """Abort the current turn, keeping the agent process alive.

        Synchronous and idempotent; safe to call with no turn running.
        """
        logger.info("Abort requested (reset_queue=%s)", reset_queue)
        try:
            if self.client.has_active_session():
                session_id = self.client.store_session_for_resume()
                if session_id:
                    self._resume_pointer = ResumePointer(session_id, ResumeOrigin.ABORT)
            self._signal.abort("abort")
            if reset_queue:
                self.queue.reset()
            self._reset_translators("abort")
        finally:
            self._signal = AbortSignal()

    def handle_exit(self) -> None:
        self.exit_reason = ExitReason.EXIT
        self._should_exit = True
        self.handle_abort(reset_queue=True)

    def handle_switch(self) -> None:
        """Hand the session back to local mode."""
        self.exit_reason = ExitReason.SWITCH
        self._should_exit = True
        self.handle_abort(reset_queue=True)

    def resolve_permission(self, request_id: str, result: str) -> bool:
        return self.permissions.resolve(request_id, result)

    def emit_ready_if_idle(self) -> bool:
        """Send ``ready`` when nothing is queued and we are not exiting."""
        if self._pending is not None or self._should_exit:
            return False
        if self.queue.size() > 0:
            return False
        fire_and_log(self._sink.send_session_event, {"type": "ready"})
        return True

    def snapshot(self) -> dict[str, Any]:
        return {
            "localSessionId": self.identity.local_session_id,
            "agentSessionId": self.identity.agent_session_id,
            "cwd": self.identity.cwd,
            "state": self.state.value,
            "phase": self.activity.phase.value,
            "inFlight": self.activity.in_flight,
            "thinking": self._thinking,
            "queueSize": self.queue.size(),
            "restarts": self.budget.count,
            "restartLimit": self.budget.limit,
            "pendingApprovals": [p.to_dict() for p in self.permissions.pending()],
        }

    # ── Loop ──

    def _transition(self, target: LoopState) -> None:
        validate_transition(self.state, target)
        if target != self.state:
            logger.debug("Loop %s -> %s", self.state.value, target.value)
        self.state = target

    async def _run_loop(self) -> None:
        while not self._should_exit:
            message = self._pending
            self._pending = None
            if message is None:
                wait_signal = self._signal
                message = await self.queue.wait_for_next_message(wait_signal)
                if message is None:
                    if wait_signal.aborted and not self._should_exit:
                        await self._back_off_idle_abort()
                        continue
                    self._idle_abort_streak = 0
                    logger.info("Message queue ended; stopping")
                    break
                self._idle_abort_streak = 0

            if (
                self._session_created
                and self._current_mode_hash
                and message.mode_hash != self._current_mode_hash
            ):
                self._handle_mode_change(message)
                continue

            await self._run_turn(message)

        self._transition(LoopState.STOPPED)

    async def _back_off_idle_abort(self) -> None:
        self._idle_abort_streak += 1
        backoff = min(
            MAX_IDLE_ABORT_BACKOFF,
            IDLE_ABORT_BACKOFF_STEP * self._idle_abort_streak,
        )
        logger.debug(
            "Queue wait aborted while idle (streak=%d, backoff=%.2fs)",
            self._idle_abort_streak,
            backoff,
        )
        await asyncio.sleep(backoff)
        if self._idle_abort_streak >= IDLE_ABORT_RESET_STREAK:
            logger.warning("Excessive idle aborts; resetting queue")
            self.handle_abort(reset_queue=True)
            self._idle_abort_streak = 0
        self._transition(LoopState.WAITING_FOR_MESSAGE)

    def _handle_mode_change(self, message: PendingMessage) -> None:
        logger.info(
            "Mode changed (%s -> %s); starting a new agent session",
            (self._current_mode_hash or "?")[:8],
            message.mode_hash[:8],
        )
        self._display("Starting new Codex session (mode changed)...")
        previous = self.client.session_id or self.identity.agent_session_id
        self._mode_change_pointer = None
        if previous:
            path = self.resume.find_resume_file(previous)
            if path is not None:
                self._mode_change_pointer = ResumePointer(
                    previous, ResumeOrigin.MODE_CHANGE, str(path),
                )
                self._display("Resuming previous context...")
            else:
                logger.debug("No transcript for outgoing session %s", previous[:8])

        self.client.clear_session()
        self._session_created = False
        self._current_mode_hash = None
        self._pending = message
        self._reset_translators("mode change")
        self._set_thinking(False)
        self._transition(LoopState.WAITING_FOR_MESSAGE)

    def _session_exists(self) -> bool:
        return (
            self._session_created
            and self.client.is_connected
            and self.client.has_active_session()
        )

    def _resolve_resume(self) -> ResumePointer | None:
        """Pick at most one resume pointer for a start turn.

        Priority: mode change, then a prior abort or stall, then (first
        turn only) a transcript of the pre-assigned local session id.
        """
        if self._mode_change_pointer is not None:
            pointer = self._mode_change_pointer
            self._mode_change_pointer = None
            self._resume_pointer = None
            logger.info("Resuming from mode change session %s", pointer.agent_session_id[:8])
            return pointer

        if self._resume_pointer is not None:
            pointer = self._resume_pointer
            self._resume_pointer = None
            path = self.resume.find_resume_file(pointer.agent_session_id)
            if path is not None:
                pointer.path = str(path)
                self._display("Resuming from aborted session...")
                return pointer
            if self._recovering_from_stall:
                self._notify("Resume file missing; starting fresh.")
            return None

        if self._first_turn and self.config.local_session_id:
            path = self.resume.find_resume_file(self.config.local_session_id)
            if path is not None:
                self._display("Resuming from local session log...")
                return ResumePointer(
                    self.config.local_session_id, ResumeOrigin.LOCAL, str(path),
                )
        return None

    def _load_resume_context(self) -> tuple[ResumePointer | None, ResumeContext | None]:
        """Any failure here means starting without resume context."""
        try:
            pointer = self._resolve_resume()
            if pointer is None or not pointer.path:
                return pointer, None
            return pointer, self.resume.build_context(Path(pointer.path))
        except Exception:
            logger.exception("Failed to build resume context; starting fresh")
            return None, None

    def _build_turn(self, message: PendingMessage) -> tuple[Turn, dict[str, Any] | None]:
        signal = self._signal
        if self._session_exists():
            return Turn(TurnKind.CONTINUE, message, signal), None

        pointer, context = self._load_resume_context()
        turn = Turn(
            TurnKind.START,
            message,
            signal,
            resume_context=context.text if context else None,
            resume_file=pointer.path if pointer else None,
        )
        config = build_start_config(
            message,
            self.identity.cwd,
            resume_context=turn.resume_context,
            resume_file=turn.resume_file,
        )
        return turn, config

    async def _run_turn(self, message: PendingMessage) -> None:
        if self._active_turn is not None:
            raise RuntimeError(
                f"turn {self._active_turn.turn_id[:8]} is still in flight"
            )
        self._display(message.text, "user")
        self._current_mode_hash = message.mode_hash
        self.identity.mode_hash = message.mode_hash

        turn, start_config = self._build_turn(message)
        self._active_turn = turn
        self._recovering_from_stall = False
        self._transition(
            LoopState.STARTING_TURN if turn.kind == TurnKind.START
            else LoopState.CONTINUING_TURN
        )
        logger.info(
            "Turn %s: %s (mode=%s%s)",
            turn.turn_id[:8],
            turn.kind.value,
            message.mode_hash[:8],
            ", with resume context" if turn.resume_context else "",
        )

        self.activity.restart_in_progress = False
        self.activity.begin_request(self._clock())
        try:
            if turn.kind == TurnKind.START:
                await self.client.start_turn(start_config or {}, turn.signal)
                self._session_created = True
                self._first_turn = False
            else:
                await self.client.continue_turn(message.text, turn.signal)
            self._sync_session_id()
            self._resume_pointer = None
            self._mode_change_pointer = None
        except Exception as exc:
            self._handle_turn_failure(turn, exc)
        finally:
            self._active_turn = None
            self._transition(LoopState.TURN_FINISHING)
            self.activity.go_idle()
            self._reset_translators()
            self._set_thinking(False)
            self.emit_ready_if_idle()
            self._transition(LoopState.WAITING_FOR_MESSAGE)

    def _handle_turn_failure(self, turn: Turn, exc: Exception) -> None:
        if self.activity.restart_in_progress:
            logger.warning("Turn %s ended by stall restart: %s", turn.turn_id[:8], exc)
            self._notify("Codex stalled; restarting...")
            self._session_created = False
            self._current_mode_hash = None
            self._recovering_from_stall = True
        elif isinstance(exc, AbortedByCaller):
            logger.info("Turn %s aborted by caller", turn.turn_id[:8])
            self._notify("Aborted by user")
            self._session_created = False
            self._current_mode_hash = None
        else:
            logger.warning(
                "Turn %s failed unexpectedly: %s: %s",
                turn.turn_id[:8], type(exc).__name__, exc,
            )
            self._notify("Process exited unexpectedly")
            if self.client.has_active_session():
                session_id = self.client.store_session_for_resume()
                if session_id:
                    self._resume_pointer = ResumePointer(session_id, ResumeOrigin.ABORT)

    def _sync_session_id(self) -> None:
        session_id = self.client.session_id
        if session_id:
            self._record_agent_session_id(session_id)

    def _record_agent_session_id(self, session_id: str) -> None:
        if session_id == self.identity.agent_session_id:
            return
        logger.info("Agent session id: %s", session_id[:8])
        self.identity.agent_session_id = session_id
        fire_and_log(self._sink.on_agent_session_id_discovered, session_id)

    # ── Stall restarts ──

    async def _control_loop(self) -> None:
        while True:
            try:
                event = await self._control.get()
                if isinstance(event, StallFired):
                    await self._trigger_stall_restart(event)
            except asyncio.CancelledError:
                return
            except Exception:
                logger.exception("Control loop error")

    async def _trigger_stall_restart(self, event: StallFired) -> None:
        logger.warning(
            "Restarting agent after stall (%s), restart %d/%d",
            event.as_error(),
            event.restart_count,
            event.restart_limit,
        )
        self._display("Codex stalled; restarting...")
        try:
            if self.client.has_active_session():
                session_id = self.client.store_session_for_resume()
                if session_id:
                    self._resume_pointer = ResumePointer(session_id, ResumeOrigin.ABORT)
            self._signal.abort("stall")
            await self.client.disconnect()
        except Exception:
            logger.debug("Error while tearing down stalled agent", exc_info=True)
        finally:
            self._signal = AbortSignal()
            self._reset_translators("stall restart")
            self.activity.go_idle()

    # ── Event handling ──

    def handle_agent_event(self, msg: dict[str, Any]) -> None:
        """Single receiver for inbound agent events."""
        if self.activity.ignore_events_until_next_request:
            logger.debug("Ignoring %s during restart", msg.get("type"))
            return
        if not self.activity.in_flight:
            logger.debug("Ignoring %s outside a turn", msg.get("type"))
            return
        self.activity.mark_event(self._clock())
        event_type = parse_event_type(msg)
        self._handlers[event_type](msg)

    def _set_phase(self, phase: Phase) -> None:
        self.activity.phase = phase

    def _emit_message(self, message: CodexMessage) -> None:
        fire_and_log(self._sink.send_normalized_message, message)

    def _forward(self, msg: dict[str, Any]) -> None:
        for message in normalize_event(msg):
            self._emit_message(message)

    def _display(self, text: str, kind: str = "status") -> None:
        fire_and_log(self._sink.display, text, kind)

    def _notify(self, text: str) -> None:
        self._display(text)
        fire_and_log(self._sink.send_session_event, {"type": "message", "message": text})

    def _set_thinking(self, thinking: bool) -> None:
        if thinking == self._thinking:
            return
        self._thinking = thinking
        fire_and_log(self._sink.on_thinking_changed, thinking)

    def _reset_translators(self, reason: str | None = None) -> None:
        self.permissions.reset(reason)
        self.reasoning.reset()
        self.diff.reset()

    def _ignore_event(self, msg: dict[str, Any]) -> None:
        pass

    def _on_unknown(self, msg: dict[str, Any]) -> None:
        logger.debug("Unhandled agent event type %r", msg.get("type"))

    def _on_session_configured(self, msg: dict[str, Any]) -> None:
        session_id = msg.get("session_id")
        if isinstance(session_id, str) and session_id:
            self._record_agent_session_id(session_id)

    def _on_task_started(self, msg: dict[str, Any]) -> None:
        self._display("Starting task...")
        self._set_phase(Phase.THINKING)
        self._set_thinking(True)

    def _on_task_complete(self, msg: dict[str, Any]) -> None:
        self._display("Task completed")
        self.diff.flush()
        self.diff.reset()
        fire_and_log(self._sink.send_session_event, {"type": "ready"})
        self._set_phase(Phase.COMPLETE)
        self._set_thinking(False)
        if self.budget.count:
            logger.debug("Turn completed; clearing %d stall restarts", self.budget.count)
            self.budget.clear()

    def _on_turn_aborted(self, msg: dict[str, Any]) -> None:
        self._display("Turn aborted")
        self.diff.reset()
        fire_and_log(self._sink.send_session_event, {"type": "ready"})
        self._set_phase(Phase.COMPLETE)
        self._set_thinking(False)

    def _on_agent_message(self, msg: dict[str, Any]) -> None:
        self._display(str(msg.get("message") or ""), "assistant")
        self._set_phase(Phase.COMPLETE)
        self._forward(msg)

    def _on_agent_reasoning(self, msg: dict[str, Any]) -> None:
        text = str(msg.get("text") or "")
        self._display(f"[Thinking] {_clip(text, 100)}", "system")
        self._set_phase(Phase.THINKING)
        self.reasoning.complete(text)

    def _on_reasoning_delta(self, msg: dict[str, Any]) -> None:
        self._set_phase(Phase.THINKING)
        self.reasoning.process_delta(str(msg.get("delta") or ""))

    def _on_reasoning_break(self, msg: dict[str, Any]) -> None:
        self.reasoning.handle_section_break()

    def _on_exec_begin(self, msg: dict[str, Any]) -> None:
        command = msg.get("command")
        if isinstance(command, list):
            command = " ".join(str(part) for part in command)
        self._display(f"Executing: {command}", "tool")
        self.activity.active_tool_calls += 1
        self._set_phase(Phase.TOOL)
        self._forward(msg)

    def _on_exec_end(self, msg: dict[str, Any]) -> None:
        output = (
            msg.get("aggregated_output") or msg.get("formatted_output")
            or msg.get("stdout") or msg.get("stderr") or "Command completed"
        )
        self._display(f"Result: {_clip(output)}", "result")
        self.activity.active_tool_calls = max(0, self.activity.active_tool_calls - 1)
        self._set_phase(Phase.THINKING)
        self._forward(msg)

    def _on_exec_approval(self, msg: dict[str, Any]) -> None:
        self._set_phase(Phase.TOOL)
        self._forward(msg)

    def _on_patch_approval(self, msg: dict[str, Any]) -> None:
        self._set_phase(Phase.PATCH)

    def _on_patch_begin(self, msg: dict[str, Any]) -> None:
        changes = msg.get("changes") or {}
        count = len(changes) if isinstance(changes, dict) else 0
        self._display(
            f"Modifying {'1 file' if count == 1 else f'{count} files'}...", "tool",
        )
        self.activity.active_patch_calls += 1
        self._set_phase(Phase.PATCH)
        self._forward(msg)

    def _on_patch_end(self, msg: dict[str, Any]) -> None:
        if msg.get("success"):
            self._display(_clip(msg.get("stdout") or "Files modified successfully"), "result")
        else:
            self._display(
                f"Error: {_clip(msg.get('stderr') or 'Failed to modify files')}", "result",
            )
        self.activity.active_patch_calls = max(0, self.activity.active_patch_calls - 1)
        self._set_phase(Phase.THINKING)
        self._forward(msg)

    def _on_mcp_tool_begin(self, msg: dict[str, Any]) -> None:
        self.activity.active_tool_calls += 1
        self._set_phase(Phase.TOOL)
        self._forward(msg)

    def _on_mcp_tool_end(self, msg: dict[str, Any]) -> None:
        self.activity.active_tool_calls = max(0, self.activity.active_tool_calls - 1)
        self._set_phase(Phase.THINKING)
        self._forward(msg)

    def _on_turn_diff(self, msg: dict[str, Any]) -> None:
        diff = msg.get("unified_diff")
        if isinstance(diff, str) and diff:
            self.diff.process_diff(diff)

    def _on_background_event(self, msg: dict[str, Any]) -> None:
        text = msg.get("message")
        if text:
            self._display(str(text))

    def _on_error(self, msg: dict[str, Any]) -> None:
        text = str(msg.get("message") or "unknown error")
        logger.warning("Agent reported %s: %s", msg.get("type"), text)
        self._notify(f"Codex error: {_clip(text)}")

    # ── Shutdown ──

    async def cleanup(self, *tasks: asyncio.Task) -> None:
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            await self.client.disconnect()
        except Exception:
            logger.debug("Error disconnecting agent client", exc_info=True)
        self._reset_translators("shutdown")
        self.client.set_handler(None)
        self.client.set_permission_handler(None)
