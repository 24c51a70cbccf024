from .base import AgentClient, EventHandler, PermissionHandler
from .codex_client import PERMISSION_POLICIES, CodexMcpClient, build_start_config

__all__ = [
    "AgentClient",
    "CodexMcpClient",
    "EventHandler",
    "PERMISSION_POLICIES",
    "PermissionHandler",
    "build_start_config",
]
