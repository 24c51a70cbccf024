"""Agent event kinds and the normalized messages derived from them.

The Codex agent pushes `codex/event` notifications whose `msg.type`
is one of RawEventType. The orchestrator dispatches on that enum;
normalize_event() turns the subset that maps onto user-facing
messages into CodexMessage objects. convert_codex_event() applies
the same normalization to rollout transcript lines so a replayed
session reads exactly like a live one.
"""
from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

BASH_TOOL_NAME = "CodexBash"
PATCH_TOOL_NAME = "CodexPatch"
DIFF_TOOL_NAME = "CodexDiff"
MCP_TOOL_PREFIX = "mcp__"


class RawEventType(str, Enum):
    """Closed set of agent event kinds the orchestrator understands."""
    SESSION_CONFIGURED = "session_configured"
    TASK_STARTED = "task_started"
    TASK_COMPLETE = "task_complete"
    TURN_ABORTED = "turn_aborted"
    USER_MESSAGE = "user_message"
    AGENT_MESSAGE = "agent_message"
    AGENT_MESSAGE_DELTA = "agent_message_delta"
    AGENT_REASONING = "agent_reasoning"
    AGENT_REASONING_DELTA = "agent_reasoning_delta"
    AGENT_REASONING_SECTION_BREAK = "agent_reasoning_section_break"
    EXEC_COMMAND_BEGIN = "exec_command_begin"
    EXEC_COMMAND_OUTPUT_DELTA = "exec_command_output_delta"
    EXEC_COMMAND_END = "exec_command_end"
    EXEC_APPROVAL_REQUEST = "exec_approval_request"
    APPLY_PATCH_APPROVAL_REQUEST = "apply_patch_approval_request"
    PATCH_APPLY_BEGIN = "patch_apply_begin"
    PATCH_APPLY_END = "patch_apply_end"
    MCP_TOOL_CALL_BEGIN = "mcp_tool_call_begin"
    MCP_TOOL_CALL_END = "mcp_tool_call_end"
    TURN_DIFF = "turn_diff"
    TOKEN_COUNT = "token_count"
    BACKGROUND_EVENT = "background_event"
    STREAM_ERROR = "stream_error"
    ERROR = "error"
    UNKNOWN = "unknown"


_RAW_EVENT_VALUES = {member.value: member for member in RawEventType}


def parse_event_type(msg: Any) -> RawEventType:
    """Classify a raw event dict. Anything unrecognized is UNKNOWN."""
    if not isinstance(msg, dict):
        return RawEventType.UNKNOWN
    raw_type = msg.get("type")
    if not isinstance(raw_type, str):
        return RawEventType.UNKNOWN
    return _RAW_EVENT_VALUES.get(raw_type, RawEventType.UNKNOWN)


def _make_id() -> str:
    return str(uuid.uuid4())


@dataclass
class CodexMessage:
    """Base normalized message forwarded to the session sink."""
    type: str = ""
    id: str = field(default_factory=_make_id)


@dataclass
class AgentText(CodexMessage):
    type: str = "message"
    message: str = ""


@dataclass
class Reasoning(CodexMessage):
    type: str = "reasoning"
    message: str = ""
    title: str | None = None


@dataclass
class ToolCall(CodexMessage):
    type: str = "tool-call"
    name: str = ""
    call_id: str = ""
    input: Any = None


@dataclass
class ToolCallResult(CodexMessage):
    type: str = "tool-call-result"
    call_id: str = ""
    output: Any = None


@dataclass
class TokenCount(CodexMessage):
    type: str = "token_count"
    info: dict[str, Any] = field(default_factory=dict)


def message_to_dict(message: CodexMessage) -> dict[str, Any]:
    """Serialize a normalized message for the wire (camelCase call ids)."""
    data = asdict(message)
    if "call_id" in data:
        data["callId"] = data.pop("call_id")
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class ConvertedEvent:
    """Result of converting one raw or transcript event."""
    user_message: str | None = None
    messages: list[CodexMessage] = field(default_factory=list)


def _without(msg: dict[str, Any], *keys: str) -> dict[str, Any]:
    return {k: v for k, v in msg.items() if k not in keys}


def normalize_event(msg: dict[str, Any]) -> list[CodexMessage]:
    """Map one live agent event onto zero or more normalized messages.

    Reasoning is not handled here: the live path assembles it through
    ReasoningProcessor, the transcript path in convert_codex_event().
    """
    event_type = parse_event_type(msg)
    call_id = str(msg.get("call_id") or "")

    if event_type == RawEventType.AGENT_MESSAGE:
        text = msg.get("message")
        if isinstance(text, str) and text:
            return [AgentText(message=text)]
        return []

    if event_type in (
        RawEventType.EXEC_COMMAND_BEGIN,
        RawEventType.EXEC_APPROVAL_REQUEST,
    ):
        return [ToolCall(
            name=BASH_TOOL_NAME,
            call_id=call_id,
            input=_without(msg, "call_id", "type"),
        )]

    if event_type == RawEventType.EXEC_COMMAND_END:
        return [ToolCallResult(
            call_id=call_id,
            output=_without(msg, "call_id", "type"),
        )]

    if event_type == RawEventType.PATCH_APPLY_BEGIN:
        return [ToolCall(
            name=PATCH_TOOL_NAME,
            call_id=call_id,
            input={
                "auto_approved": msg.get("auto_approved"),
                "changes": msg.get("changes") or {},
            },
        )]

    if event_type == RawEventType.PATCH_APPLY_END:
        return [ToolCallResult(
            call_id=call_id,
            output={
                "stdout": msg.get("stdout"),
                "stderr": msg.get("stderr"),
                "success": msg.get("success"),
            },
        )]

    if event_type == RawEventType.MCP_TOOL_CALL_BEGIN:
        invocation = msg.get("invocation")
        if not isinstance(invocation, dict):
            invocation = {}
        server = str(invocation.get("server") or "mcp")
        tool = str(invocation.get("tool") or "tool")
        return [ToolCall(
            name=f"{MCP_TOOL_PREFIX}{server}__{tool}",
            call_id=call_id,
            input=invocation.get("arguments"),
        )]

    if event_type == RawEventType.MCP_TOOL_CALL_END:
        return [ToolCallResult(call_id=call_id, output=msg.get("result"))]

    if event_type == RawEventType.TOKEN_COUNT:
        return [TokenCount(info=_without(msg, "type"))]

    return []


def _parse_arguments(value: Any) -> Any:
    """Decode JSON-encoded tool arguments, keeping raw text on failure."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return value


def _convert_response_item(payload: dict[str, Any]) -> ConvertedEvent | None:
    payload_type = str(payload.get("type") or "")
    call_id = str(payload.get("call_id") or "")

    if payload_type == "function_call":
        return ConvertedEvent(messages=[ToolCall(
            name=str(payload.get("name") or "tool"),
            call_id=call_id,
            input=_parse_arguments(payload.get("arguments")),
        )])
    if payload_type == "custom_tool_call":
        return ConvertedEvent(messages=[ToolCall(
            name=str(payload.get("name") or "tool"),
            call_id=call_id,
            input=payload.get("input"),
        )])
    if payload_type == "local_shell_call":
        return ConvertedEvent(messages=[ToolCall(
            name=BASH_TOOL_NAME,
            call_id=call_id,
            input=payload.get("action"),
        )])
    if payload_type in ("function_call_output", "custom_tool_call_output"):
        return ConvertedEvent(messages=[ToolCallResult(
            call_id=call_id,
            output=payload.get("output"),
        )])
    # Plain messages and reasoning are mirrored by event_msg rows;
    # converting both would duplicate every line.
    return None


def _convert_event_msg(msg: dict[str, Any]) -> ConvertedEvent | None:
    event_type = parse_event_type(msg)
    if event_type == RawEventType.USER_MESSAGE:
        text = msg.get("message")
        if isinstance(text, str) and text.strip():
            return ConvertedEvent(user_message=text)
        return None
    if event_type == RawEventType.AGENT_REASONING:
        text = msg.get("text")
        if isinstance(text, str) and text.strip():
            return ConvertedEvent(messages=[Reasoning(message=text)])
        return None
    messages = normalize_event(msg)
    if not messages:
        return None
    return ConvertedEvent(messages=messages)


def convert_codex_event(raw: Any) -> ConvertedEvent | None:
    """Convert one rollout transcript line (already JSON-decoded).

    Rollout rows wrap events as {"type": "event_msg" | "response_item",
    "payload": {...}}. Bare live events (as written by debug logs) are
    accepted too.
    """
    if not isinstance(raw, dict):
        return None
    row_type = raw.get("type")
    payload = raw.get("payload")
    if row_type == "event_msg" and isinstance(payload, dict):
        return _convert_event_msg(payload)
    if row_type == "response_item" and isinstance(payload, dict):
        return _convert_response_item(payload)
    if row_type in ("session_meta", "turn_context", "compacted"):
        return None
    return _convert_event_msg(raw)
