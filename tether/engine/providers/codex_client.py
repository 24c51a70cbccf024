"""Codex CLI client speaking MCP (JSON-RPC 2.0) over stdio.

Runs ``codex mcp-server`` as a subprocess. A turn is one ``tools/call``
request: ``codex`` opens a conversation, ``codex-reply`` continues it.
While the call is open the server streams ``codex/event`` notifications
and may ask for approvals through ``elicitation/create`` requests.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from ..errors import (
    AbortedByCaller,
    AgentConnectError,
    AgentProtocolError,
    AgentTransportError,
    ConnectTimeoutError,
)
from ..models import AbortSignal, PendingMessage
from .base import AgentClient, EventHandler, PermissionHandler

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2025-06-18"
CLIENT_NAME = "tether"
_STREAM_LIMIT = 16 * 1024 * 1024

# permission_mode -> (sandbox, approval-policy)
PERMISSION_POLICIES: dict[str, tuple[str, str]] = {
    "default": ("workspace-write", "untrusted"),
    "read-only": ("read-only", "never"),
    "safe-yolo": ("workspace-write", "on-failure"),
    "yolo": ("danger-full-access", "on-failure"),
}


def _client_version() -> str:
    try:
        from importlib.metadata import version

        return version("tether-remote")
    except Exception:
        logger.debug("Could not resolve tether-remote version", exc_info=True)
        return "0.0.0"


def build_start_config(
    message: PendingMessage,
    cwd: str,
    resume_context: str | None = None,
    resume_file: str | None = None,
) -> dict[str, Any]:
    """Arguments for the ``codex`` tool that opens a new conversation."""
    mode = message.mode or {}
    permission_mode = str(mode.get("permission_mode") or "default")
    if permission_mode not in PERMISSION_POLICIES:
        logger.warning(
            "Unknown permission mode %r; using default policies", permission_mode,
        )
        permission_mode = "default"
    sandbox, approval_policy = PERMISSION_POLICIES[permission_mode]

    config: dict[str, Any] = {
        "prompt": message.text,
        "cwd": cwd,
        "sandbox": sandbox,
        "approval-policy": approval_policy,
    }
    if mode.get("model"):
        config["model"] = mode["model"]

    overrides: dict[str, Any] = {}
    if mode.get("reasoning_effort"):
        overrides["model_reasoning_effort"] = mode["reasoning_effort"]
    if resume_file:
        overrides["experimental_resume"] = resume_file
    if overrides:
        config["config"] = overrides
    if resume_context:
        config["developer-instructions"] = resume_context
    return config


def _tool_error_text(result: dict[str, Any]) -> str:
    parts = []
    for block in result.get("content") or []:
        if isinstance(block, dict) and isinstance(block.get("text"), str):
            parts.append(block["text"])
    return "\n".join(parts).strip()


class CodexMcpClient(AgentClient):
    """Client for one ``codex mcp-server`` process.

    The process is started lazily: start_turn() and continue_turn()
    reconnect on demand when the previous process was torn down.
    """

    def __init__(
        self,
        command: str = "codex",
        cwd: str | None = None,
        connect_timeout: float = 60.0,
        env: dict[str, str] | None = None,
    ) -> None:
        self._command = self.resolve_command(command, "codex")
        self._cwd = cwd
        self._connect_timeout = connect_timeout
        self._env = env
        self._process: asyncio.subprocess.Process | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._server_tasks: set[asyncio.Task] = set()
        self._request_id: int = 0
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._abandoned: set[int] = set()
        self._session_id: str | None = None
        self._conversation_id: str | None = None
        self._handler: EventHandler | None = None
        self._permission_handler: PermissionHandler | None = None

    # ── Connection ──

    @property
    def is_connected(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    async def connect(self, timeout: float) -> None:
        if self.is_connected:
            return
        if self._process is not None:
            # Process died on its own; clean up before respawning.
            await self.disconnect()

        try:
            # create_subprocess_exec passes args as array, no shell
            proc = await asyncio.create_subprocess_exec(
                self._command, "mcp-server",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise AgentConnectError(self._command, "command not found") from exc
        except OSError as exc:
            raise AgentConnectError(self._command, str(exc)) from exc

        self._process = proc
        self._writer = proc.stdin
        self._abandoned.clear()
        self._reader_task = asyncio.create_task(self._read_loop(proc.stdout))
        self._stderr_task = asyncio.create_task(self._drain_stderr(proc.stderr))
        logger.info("Codex MCP server started (pid=%d)", proc.pid)

        try:
            await asyncio.wait_for(self._initialize(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Codex MCP handshake timed out after %.0fs (pid=%d)",
                timeout, proc.pid,
            )
            await self.disconnect()
            raise ConnectTimeoutError(self._command, timeout) from None
        except (AgentTransportError, AgentProtocolError) as exc:
            await self.disconnect()
            raise AgentConnectError(self._command, str(exc)) from exc

    async def _initialize(self) -> None:
        result = await self._request("initialize", {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {"elicitation": {}},
            "clientInfo": {"name": CLIENT_NAME, "version": _client_version()},
        })
        await self._send({
            "jsonrpc": "2.0",
            "method": "notifications/initialized",
        })
        server_info = result.get("serverInfo") or {}
        logger.info(
            "Codex MCP handshake complete server=%s version=%s",
            server_info.get("name", "?"),
            server_info.get("version", "?"),
        )

    async def disconnect(self) -> None:
        proc = self._process
        self._process = None
        self._writer = None

        for task in (self._reader_task, self._stderr_task, *self._server_tasks):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._reader_task, self._stderr_task):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.debug("Codex reader task ended with error", exc_info=True)
        self._reader_task = None
        self._stderr_task = None
        self._server_tasks.clear()

        if proc is not None:
            pid = proc.pid
            try:
                if proc.returncode is None:
                    proc.terminate()
                    try:
                        await asyncio.wait_for(proc.wait(), timeout=5.0)
                    except asyncio.TimeoutError:
                        proc.kill()
                        await proc.wait()
                logger.info("Codex MCP server stopped (pid=%d)", pid)
            except ProcessLookupError:
                pass

        self._fail_pending(AgentTransportError("agent disconnected"))
        self.clear_session()

    async def _ensure_connected(self) -> None:
        if not self.is_connected:
            logger.info("Codex MCP server not running; reconnecting")
            await self.connect(self._connect_timeout)

    # ── Session identity ──

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def has_active_session(self) -> bool:
        return self._conversation_id is not None

    def clear_session(self) -> None:
        if self._session_id or self._conversation_id:
            logger.debug(
                "Clearing Codex session %s", (self._session_id or "?")[:8],
            )
        self._session_id = None
        self._conversation_id = None

    def store_session_for_resume(self) -> str | None:
        session_id = self._session_id or self._conversation_id
        if session_id:
            logger.info("Keeping Codex session %s for resume", session_id[:8])
        return session_id

    def set_handler(self, handler: EventHandler | None) -> None:
        self._handler = handler

    def set_permission_handler(self, handler: PermissionHandler | None) -> None:
        self._permission_handler = handler

    # ── Turns ──

    async def start_turn(
        self, config: dict[str, Any], signal: AbortSignal,
    ) -> dict[str, Any]:
        await self._ensure_connected()
        result = await self._request(
            "tools/call",
            {"name": "codex", "arguments": config},
            signal,
        )
        self._capture_session(result)
        self._check_tool_result(result)
        return result

    async def continue_turn(
        self, message: str, signal: AbortSignal,
    ) -> dict[str, Any]:
        await self._ensure_connected()
        if self._conversation_id is None:
            raise AgentProtocolError("no active Codex conversation to continue")
        result = await self._request(
            "tools/call",
            {
                "name": "codex-reply",
                "arguments": {
                    "conversationId": self._conversation_id,
                    "prompt": message,
                },
            },
            signal,
        )
        self._capture_session(result)
        self._check_tool_result(result)
        return result

    def _capture_session(self, result: dict[str, Any]) -> None:
        structured = result.get("structuredContent") or {}
        if not isinstance(structured, dict):
            return
        conversation_id = (
            structured.get("conversationId")
            or structured.get("threadId")
            or structured.get("sessionId")
        )
        if isinstance(conversation_id, str) and conversation_id:
            self._conversation_id = conversation_id
            self._session_id = self._session_id or conversation_id

    @staticmethod
    def _check_tool_result(result: dict[str, Any]) -> None:
        if result.get("isError"):
            raise AgentProtocolError(
                _tool_error_text(result) or "Codex tool call failed"
            )

    # ── JSON-RPC plumbing ──

    async def _send(self, message: dict[str, Any]) -> None:
        writer = self._writer
        if writer is None or writer.is_closing():
            raise AgentTransportError("agent process is not running")
        writer.write(json.dumps(message).encode("utf-8") + b"\n")
        try:
            await writer.drain()
        except (ConnectionError, BrokenPipeError) as exc:
            raise AgentTransportError(f"write to agent failed: {exc}") from exc

    async def _request(
        self,
        method: str,
        params: dict[str, Any],
        signal: AbortSignal | None = None,
    ) -> dict[str, Any]:
        """Send a request and wait for its response or for *signal*."""
        if signal is not None and signal.aborted:
            raise AbortedByCaller()

        self._request_id += 1
        request_id = self._request_id
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._pending[request_id] = future
        logger.debug("MCP request id=%d method=%s", request_id, method)

        abort_waiter: asyncio.Task | None = None
        try:
            await self._send({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params,
            })
            if signal is None:
                return await future

            abort_waiter = asyncio.create_task(signal.wait())
            await asyncio.wait(
                {future, abort_waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
            if future.done():
                return future.result()

            await self._abandon(request_id, signal.reason or "aborted")
            raise AbortedByCaller(request_id)
        finally:
            if abort_waiter is not None and not abort_waiter.done():
                abort_waiter.cancel()
            if self._pending.pop(request_id, None) is not None and not future.done():
                # Cancelled from outside while waiting.
                self._abandoned.add(request_id)
                future.cancel()

    async def _abandon(self, request_id: int, reason: str) -> None:
        self._abandoned.add(request_id)
        future = self._pending.pop(request_id, None)
        if future is not None and not future.done():
            future.cancel()
        logger.info("Abandoning MCP request id=%d (%s)", request_id, reason)
        try:
            await self._send({
                "jsonrpc": "2.0",
                "method": "notifications/cancelled",
                "params": {"requestId": request_id, "reason": reason},
            })
        except AgentTransportError:
            logger.debug("Could not send cancellation for request id=%d", request_id)

    def _fail_pending(self, exc: Exception) -> None:
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(exc)
                logger.debug("Failed pending MCP request id=%d: %s", request_id, exc)
        self._pending.clear()

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line.decode("utf-8", errors="replace"))
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON MCP line from codex")
                    continue
                if isinstance(message, dict):
                    self._dispatch(message)
        finally:
            self._fail_pending(
                AgentTransportError("agent process closed its output")
            )
        logger.info("Codex MCP server output closed")

    async def _drain_stderr(self, reader: asyncio.StreamReader) -> None:
        while True:
            line = await reader.readline()
            if not line:
                return
            logger.debug(
                "codex stderr: %s", line.decode("utf-8", errors="replace").rstrip(),
            )

    def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        message_id = message.get("id")

        if method is None and message_id is not None:
            future = self._pending.pop(message_id, None)
            if future is None:
                if message_id in self._abandoned:
                    # The final response closes out the request; nothing follows it.
                    self._abandoned.discard(message_id)
                    logger.debug("Dropping response for abandoned request id=%s", message_id)
                else:
                    logger.debug("Dropping response for unknown request id=%s", message_id)
                return
            if future.done():
                return
            error = message.get("error")
            if error is not None:
                if not isinstance(error, dict):
                    error = {"message": str(error)}
                future.set_exception(AgentProtocolError(
                    str(error.get("message") or "JSON-RPC error"),
                    error.get("code"),
                ))
            else:
                result = message.get("result")
                future.set_result(result if isinstance(result, dict) else {})
            return

        if method is not None and message_id is not None:
            task = asyncio.create_task(
                self._answer_server_request(message_id, method, message.get("params") or {})
            )
            self._server_tasks.add(task)
            task.add_done_callback(self._server_tasks.discard)
            return

        if method == "codex/event":
            self._handle_codex_event(message.get("params") or {})
        elif method is not None:
            logger.debug("Ignoring MCP notification %s", method)

    def _handle_codex_event(self, params: dict[str, Any]) -> None:
        meta = params.get("_meta") or {}
        owner = meta.get("requestId") if isinstance(meta, dict) else None
        if owner is not None and owner in self._abandoned:
            logger.debug("Dropping event for abandoned request id=%s", owner)
            return
        msg = params.get("msg")
        if not isinstance(msg, dict):
            return
        if msg.get("type") == "session_configured":
            session_id = msg.get("session_id")
            if isinstance(session_id, str) and session_id:
                self._session_id = session_id
                self._conversation_id = self._conversation_id or session_id
        if self._handler is None:
            return
        try:
            self._handler(msg)
        except Exception:
            logger.exception("Codex event handler failed for %s", msg.get("type"))

    async def _answer_server_request(
        self, request_id: Any, method: str, params: dict[str, Any],
    ) -> None:
        response: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
        if method == "elicitation/create":
            if self._permission_handler is None:
                logger.warning("Approval requested with no handler; denying")
                response["result"] = {"decision": "denied"}
            else:
                try:
                    response["result"] = await self._permission_handler(params)
                except Exception:
                    logger.exception("Permission handler failed; denying")
                    response["result"] = {"decision": "denied"}
        else:
            logger.debug("Unsupported server request %s", method)
            response["error"] = {"code": -32601, "message": f"Method not found: {method}"}
        try:
            await self._send(response)
        except AgentTransportError:
            logger.debug("Could not answer server request %s id=%s", method, request_id)
