from __future__ import annotations

import asyncio

import pytest

from tether.engine.events import (
    AgentText,
    Reasoning,
    RawEventType,
    TokenCount,
    ToolCall,
    ToolCallResult,
    convert_codex_event,
    message_to_dict,
    normalize_event,
    parse_event_type,
)
from tether.engine.processors import (
    DiffProcessor,
    PermissionProcessor,
    ReasoningProcessor,
    summarize_diff,
)
from tether.engine.processors.permission import ApprovalKind, PendingApproval
from tether.engine.processors.reasoning import ReasoningState, split_title

_DIFF = """diff --git a/app.py b/app.py
--- a/app.py
+++ b/app.py
@@ -1,2 +1,3 @@
-print("hi")
+print("hello")
+print("world")
diff --git a/README.md b/README.md
--- a/README.md
+++ b/README.md
@@ -1 +1 @@
-old
+new
"""


# ── Event classification and normalization ──


def test_parse_event_type() -> None:
    assert parse_event_type({"type": "task_started"}) == RawEventType.TASK_STARTED
    assert parse_event_type({"type": "brand_new_event"}) == RawEventType.UNKNOWN
    assert parse_event_type({"type": 3}) == RawEventType.UNKNOWN
    assert parse_event_type("task_started") == RawEventType.UNKNOWN


def test_exec_events_become_tool_call_and_result() -> None:
    begin = normalize_event({
        "type": "exec_command_begin", "call_id": "c1", "command": ["ls"], "cwd": "/repo",
    })
    end = normalize_event({
        "type": "exec_command_end", "call_id": "c1", "stdout": "a\n", "exit_code": 0,
    })

    assert len(begin) == 1 and isinstance(begin[0], ToolCall)
    assert begin[0].name == "CodexBash"
    assert begin[0].input == {"command": ["ls"], "cwd": "/repo"}
    assert isinstance(end[0], ToolCallResult)
    assert end[0].call_id == "c1"
    assert end[0].output == {"stdout": "a\n", "exit_code": 0}


def test_patch_and_mcp_events() -> None:
    (patch,) = normalize_event({
        "type": "patch_apply_begin",
        "call_id": "p1",
        "auto_approved": True,
        "changes": {"a.py": {"add": {"content": "x"}}},
    })
    assert patch.name == "CodexPatch"
    assert patch.input == {"auto_approved": True, "changes": {"a.py": {"add": {"content": "x"}}}}

    (mcp,) = normalize_event({
        "type": "mcp_tool_call_begin",
        "call_id": "m1",
        "invocation": {"server": "docs", "tool": "search", "arguments": {"q": "x"}},
    })
    assert mcp.name == "mcp__docs__search"
    assert mcp.input == {"q": "x"}

    (odd,) = normalize_event({"type": "mcp_tool_call_begin", "call_id": "m2", "invocation": "oops"})
    assert odd.name == "mcp__mcp__tool"
    assert odd.input is None


def test_messages_without_a_normalized_form() -> None:
    assert normalize_event({"type": "agent_message", "message": ""}) == []
    assert normalize_event({"type": "task_started"}) == []
    assert normalize_event({"type": "agent_reasoning", "text": "hmm"}) == []
    (tokens,) = normalize_event({"type": "token_count", "info": {"total": 5}})
    assert isinstance(tokens, TokenCount)
    assert tokens.info == {"info": {"total": 5}}


def test_message_to_dict_uses_camel_case_call_id() -> None:
    data = message_to_dict(ToolCall(name="CodexBash", call_id="c9", input={"command": "ls"}, id="m1"))
    assert data == {
        "type": "tool-call",
        "id": "m1",
        "name": "CodexBash",
        "callId": "c9",
        "input": {"command": "ls"},
    }
    assert "title" not in message_to_dict(Reasoning(message="x"))


def test_convert_transcript_rows() -> None:
    user = convert_codex_event({"type": "event_msg", "payload": {"type": "user_message", "message": "hi"}})
    assert user is not None and user.user_message == "hi" and user.messages == []

    call = convert_codex_event({
        "type": "response_item",
        "payload": {"type": "function_call", "name": "shell", "call_id": "c1", "arguments": '{"command": ["ls"]}'},
    })
    assert call is not None
    assert call.messages[0].input == {"command": ["ls"]}

    output = convert_codex_event({
        "type": "response_item",
        "payload": {"type": "function_call_output", "call_id": "c1", "output": "ok"},
    })
    assert output is not None and output.messages[0].output == "ok"

    bare = convert_codex_event({"type": "agent_message", "message": "done"})
    assert bare is not None and isinstance(bare.messages[0], AgentText)

    assert convert_codex_event({"type": "session_meta", "payload": {"id": "x"}}) is None
    assert convert_codex_event({"type": "response_item", "payload": {"type": "message"}}) is None
    assert convert_codex_event(["not", "a", "row"]) is None


# ── Reasoning ──


def test_split_title() -> None:
    assert split_title("**Planning** Look at tests") == ("Planning", "Look at tests")
    assert split_title("**Only title**") == ("Only title", "Only title")
    assert split_title("  plain text ") == (None, "plain text")


def test_section_break_flushes_and_summary_is_not_emitted_twice() -> None:
    emitted: list = []
    processor = ReasoningProcessor(emitted.append)

    processor.process_delta("**Plan** ")
    processor.process_delta("read the code")
    processor.handle_section_break()
    processor.complete("**Plan** read the code")

    assert len(emitted) == 1
    assert emitted[0].title == "Plan"
    assert emitted[0].message == "read the code"
    assert processor.state == ReasoningState.FLUSHED

    # A second section is emitted normally.
    processor.process_delta("second thought")
    processor.complete("")
    assert [m.message for m in emitted] == ["read the code", "second thought"]


def test_section_break_without_deltas_emits_nothing() -> None:
    emitted: list = []
    processor = ReasoningProcessor(emitted.append)
    processor.handle_section_break()
    processor.complete("   ")
    assert emitted == []


def test_reasoning_reset_leaves_no_residue() -> None:
    emitted: list = []
    processor = ReasoningProcessor(emitted.append)
    processor.process_delta("half a thou")

    processor.reset()
    processor.handle_section_break()
    processor.complete(None)

    assert emitted == []
    assert processor.state == ReasoningState.FLUSHED


# ── Diff ──


def test_summarize_diff() -> None:
    summary = summarize_diff(_DIFF)
    assert (summary.files, summary.additions, summary.deletions) == (2, 3, 2)
    assert summary.render() == "2 files changed, +3 -2"

    plain = "--- a/one.txt\n+++ b/one.txt\n@@ -1 +1 @@\n-x\n+y\n--- /dev/null\n+++ b/two.txt\n+z\n"
    assert summarize_diff(plain).render() == "2 files changed, +2 -1"


def test_diff_flush_emits_once_per_distinct_diff() -> None:
    emitted: list = []
    processor = DiffProcessor(emitted.append)

    processor.process_diff("--- a/x\n+++ b/x\n-1\n")
    processor.process_diff(_DIFF)
    processor.flush()
    processor.process_diff(_DIFF)
    processor.flush()

    assert len(emitted) == 2
    call, result = emitted
    assert call.name == "CodexDiff"
    assert call.input == {"unified_diff": _DIFF}
    assert result.call_id == call.call_id
    assert result.output == {"summary": "2 files changed, +3 -2", "status": "completed"}


def test_diff_reset_drops_pending_diff() -> None:
    emitted: list = []
    processor = DiffProcessor(emitted.append)
    processor.process_diff(_DIFF)
    processor.reset()
    processor.flush()
    assert emitted == []


# ── Permissions ──


class _RecordingPermissionSink:
    def __init__(self) -> None:
        self.requests: list[PendingApproval] = []

    def on_permission_request(self, pending: PendingApproval) -> None:
        self.requests.append(pending)


_EXEC_PARAMS = {
    "message": "Allow Codex to run `rm -rf build`?",
    "codex_elicitation": "exec-approval",
    "codex_call_id": "call_42",
    "codex_command": ["rm", "-rf", "build"],
    "codex_cwd": "/repo",
}


@pytest.mark.asyncio
async def test_permission_request_resolves_to_codex_decision() -> None:
    sink = _RecordingPermissionSink()
    processor = PermissionProcessor(sink)

    task = asyncio.create_task(processor.handle_request(_EXEC_PARAMS))
    await asyncio.sleep(0)

    (pending,) = sink.requests
    assert pending.kind == ApprovalKind.EXEC
    assert pending.tool_name == "CodexBash"
    assert pending.input == {"command": ["rm", "-rf", "build"], "cwd": "/repo"}
    assert pending.reason == "Allow Codex to run `rm -rf build`?"
    assert processor.pending() == [pending]

    assert processor.resolve(pending.request_id, "allow_always") is True
    assert await task == {"decision": "approved_for_session"}
    assert processor.pending() == []
    assert processor.resolve(pending.request_id, "allow") is False


@pytest.mark.asyncio
async def test_permission_reset_answers_abort() -> None:
    sink = _RecordingPermissionSink()
    processor = PermissionProcessor(sink)
    task = asyncio.create_task(processor.handle_request({
        "codex_elicitation": "patch-approval",
        "codex_call_id": "p1",
        "codex_changes": {"a.py": {}},
    }))
    await asyncio.sleep(0)
    assert sink.requests[0].kind == ApprovalKind.PATCH

    processor.reset("turn aborted")

    assert await task == {"decision": "abort"}
    assert processor.pending() == []


@pytest.mark.asyncio
async def test_permission_resolve_rejects_unknown_results() -> None:
    processor = PermissionProcessor()
    task = asyncio.create_task(processor.handle_request(_EXEC_PARAMS))
    await asyncio.sleep(0)
    (pending,) = processor.pending()

    assert processor.resolve(pending.request_id, "maybe") is False
    assert processor.resolve(pending.request_id, "deny") is True
    assert await task == {"decision": "denied"}
    assert pending.to_dict()["callId"] == "call_42"
