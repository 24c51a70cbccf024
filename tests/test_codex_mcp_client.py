from __future__ import annotations

import asyncio
import json
import shutil

import pytest

from tether.engine.errors import (
    AbortedByCaller,
    AgentConnectError,
    AgentProtocolError,
    AgentTransportError,
)
from tether.engine.models import AbortSignal, PendingMessage
from tether.engine.providers.codex_client import CodexMcpClient, build_start_config


class _QueueReader:
    """StreamReader stand-in fed line by line from the test."""

    def __init__(self) -> None:
        self._lines: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, message: dict) -> None:
        self._lines.put_nowait(json.dumps(message).encode("utf-8") + b"\n")

    def feed_raw(self, line: bytes) -> None:
        self._lines.put_nowait(line)

    def close(self) -> None:
        self._lines.put_nowait(b"")

    async def readline(self) -> bytes:
        return await self._lines.get()


class _FakeWriter:
    def __init__(self) -> None:
        self.writes: list[bytes] = []

    def write(self, data: bytes) -> None:
        self.writes.append(data)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return False

    @property
    def messages(self) -> list[dict]:
        return [json.loads(line) for line in self.writes]


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def _wired_client() -> tuple[CodexMcpClient, _QueueReader, _FakeWriter, asyncio.Task]:
    client = CodexMcpClient(command="codex")
    reader = _QueueReader()
    writer = _FakeWriter()
    client._writer = writer  # type: ignore[assignment]

    async def _ready() -> None:
        return None

    client._ensure_connected = _ready  # type: ignore[method-assign]
    reader_task = asyncio.create_task(client._read_loop(reader))  # type: ignore[arg-type]
    return client, reader, writer, reader_task


async def _shutdown(reader: _QueueReader, reader_task: asyncio.Task) -> None:
    reader.close()
    await asyncio.wait_for(reader_task, timeout=1.0)


@pytest.mark.asyncio
async def test_request_waits_for_matching_response() -> None:
    client, reader, writer, reader_task = _wired_client()
    events: list[dict] = []
    client.set_handler(events.append)

    call = asyncio.create_task(client._request("tools/call", {"name": "codex"}))
    await _settle()
    reader.feed_raw(b"warning: not json\n")
    reader.feed({"jsonrpc": "2.0", "method": "codex/event", "params": {"msg": {"type": "task_started"}}})
    reader.feed({"jsonrpc": "2.0", "id": 99, "result": {"stray": True}})
    reader.feed({"jsonrpc": "2.0", "id": 1, "result": {"content": [{"type": "text", "text": "done"}]}})

    result = await asyncio.wait_for(call, timeout=1.0)

    assert result == {"content": [{"type": "text", "text": "done"}]}
    assert events == [{"type": "task_started"}]
    assert writer.messages[0] == {
        "jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "codex"},
    }
    await _shutdown(reader, reader_task)


@pytest.mark.asyncio
async def test_error_response_raises_protocol_error() -> None:
    client, reader, _, reader_task = _wired_client()
    call = asyncio.create_task(client._request("tools/call", {}))
    await _settle()
    reader.feed({"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad params"}})

    with pytest.raises(AgentProtocolError) as exc_info:
        await asyncio.wait_for(call, timeout=1.0)
    assert exc_info.value.code == -32602
    await _shutdown(reader, reader_task)


@pytest.mark.asyncio
async def test_abort_cancels_request_and_drops_its_late_traffic() -> None:
    client, reader, writer, reader_task = _wired_client()
    events: list[dict] = []
    client.set_handler(events.append)
    signal = AbortSignal()

    call = asyncio.create_task(client._request("tools/call", {"name": "codex"}, signal))
    await _settle()
    signal.abort("abort")

    with pytest.raises(AbortedByCaller):
        await asyncio.wait_for(call, timeout=1.0)

    cancel = writer.messages[-1]
    assert cancel["method"] == "notifications/cancelled"
    assert cancel["params"] == {"requestId": 1, "reason": "abort"}

    # Late events and the late response for the abandoned call are dropped.
    reader.feed({
        "jsonrpc": "2.0",
        "method": "codex/event",
        "params": {"_meta": {"requestId": 1}, "msg": {"type": "agent_message", "message": "late"}},
    })
    reader.feed({"jsonrpc": "2.0", "id": 1, "result": {}})
    await _settle()
    assert events == []
    assert client._pending == {}
    assert client._abandoned == set()
    await _shutdown(reader, reader_task)


@pytest.mark.asyncio
async def test_request_with_already_aborted_signal_sends_nothing() -> None:
    client, reader, writer, reader_task = _wired_client()
    signal = AbortSignal()
    signal.abort()

    with pytest.raises(AbortedByCaller):
        await client._request("tools/call", {}, signal)
    assert writer.writes == []
    await _shutdown(reader, reader_task)


@pytest.mark.asyncio
async def test_start_then_continue_uses_conversation_id() -> None:
    client, reader, writer, reader_task = _wired_client()
    signal = AbortSignal()

    start = asyncio.create_task(client.start_turn({"prompt": "fix bug"}, signal))
    await _settle()
    reader.feed({
        "jsonrpc": "2.0",
        "method": "codex/event",
        "params": {"_meta": {"requestId": 1}, "msg": {"type": "session_configured", "session_id": "sess-1"}},
    })
    reader.feed({"jsonrpc": "2.0", "id": 1, "result": {"content": [], "structuredContent": {"conversationId": "conv-1"}}})
    await asyncio.wait_for(start, timeout=1.0)

    assert client.session_id == "sess-1"
    assert client.has_active_session() is True
    assert client.store_session_for_resume() == "sess-1"

    reply = asyncio.create_task(client.continue_turn("and add a test", signal))
    await _settle()
    reader.feed({"jsonrpc": "2.0", "id": 2, "result": {"content": []}})
    await asyncio.wait_for(reply, timeout=1.0)

    assert writer.messages[1]["params"] == {
        "name": "codex-reply",
        "arguments": {"conversationId": "conv-1", "prompt": "and add a test"},
    }
    client.clear_session()
    assert client.has_active_session() is False
    assert client.session_id is None
    await _shutdown(reader, reader_task)


@pytest.mark.asyncio
async def test_continue_without_conversation_fails() -> None:
    client, reader, writer, reader_task = _wired_client()
    with pytest.raises(AgentProtocolError):
        await client.continue_turn("hello", AbortSignal())
    assert writer.writes == []
    await _shutdown(reader, reader_task)


@pytest.mark.asyncio
async def test_tool_error_result_raises() -> None:
    client, reader, _, reader_task = _wired_client()
    start = asyncio.create_task(client.start_turn({"prompt": "x"}, AbortSignal()))
    await _settle()
    reader.feed({
        "jsonrpc": "2.0",
        "id": 1,
        "result": {"isError": True, "content": [{"type": "text", "text": "model not found"}]},
    })
    with pytest.raises(AgentProtocolError, match="model not found"):
        await asyncio.wait_for(start, timeout=1.0)
    await _shutdown(reader, reader_task)


@pytest.mark.asyncio
async def test_closed_output_fails_pending_requests() -> None:
    client, reader, _, reader_task = _wired_client()
    call = asyncio.create_task(client._request("tools/call", {}))
    await _settle()
    reader.close()

    with pytest.raises(AgentTransportError):
        await asyncio.wait_for(call, timeout=1.0)
    await asyncio.wait_for(reader_task, timeout=1.0)


@pytest.mark.asyncio
async def test_elicitation_is_answered_by_permission_handler() -> None:
    client, reader, writer, reader_task = _wired_client()
    seen: list[dict] = []

    async def _approve(params: dict) -> dict:
        seen.append(params)
        return {"decision": "approved"}

    client.set_permission_handler(_approve)
    reader.feed({
        "jsonrpc": "2.0",
        "id": "elicit-1",
        "method": "elicitation/create",
        "params": {"codex_elicitation": "exec-approval", "codex_call_id": "c1"},
    })
    await _settle()

    assert seen == [{"codex_elicitation": "exec-approval", "codex_call_id": "c1"}]
    assert writer.messages[-1] == {"jsonrpc": "2.0", "id": "elicit-1", "result": {"decision": "approved"}}
    await _shutdown(reader, reader_task)


@pytest.mark.asyncio
async def test_server_requests_without_handler() -> None:
    client, reader, writer, reader_task = _wired_client()
    reader.feed({"jsonrpc": "2.0", "id": 7, "method": "elicitation/create", "params": {}})
    reader.feed({"jsonrpc": "2.0", "id": 8, "method": "roots/list", "params": {}})
    await _settle()

    by_id = {message["id"]: message for message in writer.messages}
    assert by_id[7]["result"] == {"decision": "denied"}
    assert by_id[8]["error"]["code"] == -32601
    await _shutdown(reader, reader_task)


@pytest.mark.asyncio
async def test_disconnect_without_process_is_safe() -> None:
    client = CodexMcpClient(command="codex")
    client._session_id = "sess-1"
    client._conversation_id = "sess-1"
    loop = asyncio.get_running_loop()
    pending = loop.create_future()
    client._pending[5] = pending

    await client.disconnect()
    await client.disconnect()

    assert isinstance(pending.exception(), AgentTransportError)
    assert client.is_connected is False
    assert client.has_active_session() is False


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which("codex") is not None, reason="codex is installed")
async def test_connect_with_missing_binary_raises_connect_error() -> None:
    client = CodexMcpClient(command="tether-no-such-codex-binary")
    with pytest.raises(AgentConnectError, match="command not found"):
        await client.connect(timeout=1.0)
    assert client.is_connected is False


def test_start_config_maps_permission_mode_and_resume() -> None:
    message = PendingMessage(
        text="fix bug",
        mode={"permission_mode": "read-only", "model": "gpt-5-codex", "reasoning_effort": "high"},
    )
    config = build_start_config(
        message, "/repo", resume_context="Continue from...", resume_file="/tmp/rollout-x.jsonl",
    )
    assert config == {
        "prompt": "fix bug",
        "cwd": "/repo",
        "sandbox": "read-only",
        "approval-policy": "never",
        "model": "gpt-5-codex",
        "config": {
            "model_reasoning_effort": "high",
            "experimental_resume": "/tmp/rollout-x.jsonl",
        },
        "developer-instructions": "Continue from...",
    }


def test_start_config_defaults() -> None:
    config = build_start_config(PendingMessage(text="hi", mode={"permission_mode": "bogus"}), ".")
    assert config == {
        "prompt": "hi",
        "cwd": ".",
        "sandbox": "workspace-write",
        "approval-policy": "untrusted",
    }
