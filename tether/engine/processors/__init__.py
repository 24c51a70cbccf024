"""Stateful translators from raw agent events to outbound messages."""
from .diff import DiffProcessor, summarize_diff
from .permission import (
    DECISIONS,
    PERMISSION_RESULTS,
    ApprovalKind,
    PendingApproval,
    PermissionProcessor,
)
from .reasoning import ReasoningProcessor

__all__ = [
    "DECISIONS",
    "PERMISSION_RESULTS",
    "ApprovalKind",
    "DiffProcessor",
    "PendingApproval",
    "PermissionProcessor",
    "ReasoningProcessor",
    "summarize_diff",
]
