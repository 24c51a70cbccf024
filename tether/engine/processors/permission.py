"""Routes the agent's approval requests to a human and back.

Codex asks for approval through server-initiated ``elicitation/create``
requests. Each one becomes a PendingApproval handed to the permission
sink; the request stays open until resolve() is called with one of
PERMISSION_RESULTS, or reset() abandons it.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..collaborators import PermissionSink, fire_and_log
from ..events import BASH_TOOL_NAME, PATCH_TOOL_NAME

logger = logging.getLogger(__name__)

# Human-facing result -> Codex ReviewDecision
DECISIONS: dict[str, str] = {
    "allow": "approved",
    "allow_always": "approved_for_session",
    "deny": "denied",
    "abort": "abort",
}
PERMISSION_RESULTS = tuple(DECISIONS)


class ApprovalKind(str, Enum):
    EXEC = "exec"
    PATCH = "patch"


@dataclass
class PendingApproval:
    """One outstanding approval request."""
    kind: ApprovalKind
    tool_name: str
    call_id: str
    input: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "kind": self.kind.value,
            "toolName": self.tool_name,
            "callId": self.call_id,
            "input": self.input,
            "reason": self.reason,
            "createdAt": self.created_at,
        }


def approval_from_elicitation(params: dict[str, Any]) -> PendingApproval:
    """Build a PendingApproval from ``elicitation/create`` params."""
    elicitation = str(params.get("codex_elicitation") or "")
    call_id = str(params.get("codex_call_id") or "")
    reason = params.get("codex_reason")
    if elicitation == "patch-approval":
        return PendingApproval(
            kind=ApprovalKind.PATCH,
            tool_name=PATCH_TOOL_NAME,
            call_id=call_id,
            input={
                "changes": params.get("codex_changes") or {},
                "grant_root": params.get("codex_grant_root"),
            },
            reason=reason,
        )
    return PendingApproval(
        kind=ApprovalKind.EXEC,
        tool_name=BASH_TOOL_NAME,
        call_id=call_id,
        input={
            "command": params.get("codex_command") or [],
            "cwd": params.get("codex_cwd"),
        },
        reason=reason or params.get("message"),
    )


class PermissionProcessor:
    """Bridges approval requests to a PermissionSink and waits for answers."""

    def __init__(self, sink: PermissionSink | None = None) -> None:
        self._sink = sink
        self._pending: dict[str, PendingApproval] = {}
        self._futures: dict[str, asyncio.Future[str]] = {}

    def set_sink(self, sink: PermissionSink | None) -> None:
        self._sink = sink

    def pending(self) -> list[PendingApproval]:
        return list(self._pending.values())

    async def handle_request(self, params: dict[str, Any]) -> dict[str, str]:
        """Answer one elicitation request with a Codex decision."""
        approval = approval_from_elicitation(params)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        self._pending[approval.request_id] = approval
        self._futures[approval.request_id] = future

        logger.info(
            "Approval requested request_id=%s kind=%s call_id=%s",
            approval.request_id[:8],
            approval.kind.value,
            approval.call_id[:8],
        )
        if self._sink is not None:
            fire_and_log(self._sink.on_permission_request, approval)
        else:
            logger.warning(
                "No permission sink registered; request %s waits for resolve()",
                approval.request_id[:8],
            )

        try:
            result = await future
        finally:
            self._pending.pop(approval.request_id, None)
            self._futures.pop(approval.request_id, None)
        logger.info(
            "Approval resolved request_id=%s result=%s",
            approval.request_id[:8],
            result,
        )
        return {"decision": DECISIONS[result]}

    def resolve(self, request_id: str, result: str) -> bool:
        """Resolve a pending request. Returns False when nothing was waiting."""
        if result not in DECISIONS:
            logger.warning(
                "Permission resolve ignored request_id=%s (unknown result %r)",
                request_id[:8],
                result,
            )
            return False
        future = self._futures.get(request_id)
        if future is None or future.done():
            logger.warning(
                "Permission resolve ignored request_id=%s (missing or already done)",
                request_id[:8],
            )
            return False
        future.set_result(result)
        return True

    def reset(self, reason: str | None = None) -> None:
        """Abandon every pending request; the agent is told ``abort``."""
        if self._futures:
            logger.info(
                "PermissionProcessor.reset: aborting %d pending approvals%s",
                len(self._futures),
                f" ({reason})" if reason else "",
            )
        for future in list(self._futures.values()):
            if not future.done():
                future.set_result("abort")
        self._futures.clear()
        self._pending.clear()
