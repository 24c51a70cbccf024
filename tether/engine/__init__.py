"""Tether engine: keeps one remote-driven Codex session alive across stalls and aborts."""
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
from .config import OrchestratorConfig
from .errors import (
    AbortedByCaller,
    AgentConnectError,
    AgentProtocolError,
    AgentTransportError,
    ConnectTimeoutError,
    InvalidLoopTransition,
    RestartBudgetExhausted,
    StallDetected,
    TetherError,
)

__all__ = [
    # Orchestrator (lazy import to avoid pulling the protocol client early)
    "SessionOrchestrator",
    # Models
    "AbortSignal",
    "ExitReason",
    "LoopState",
    "PendingMessage",
    "Phase",
    "RestartBudget",
    "ResumeOrigin",
    "ResumePointer",
    "SessionIdentity",
    "Turn",
    "TurnKind",
    # Config
    "OrchestratorConfig",
    "load_yaml_config",
    # Providers (lazy import)
    "AgentClient",
    "CodexMcpClient",
    # Errors
    "AbortedByCaller",
    "AgentConnectError",
    "AgentProtocolError",
    "AgentTransportError",
    "ConnectTimeoutError",
    "InvalidLoopTransition",
    "RestartBudgetExhausted",
    "StallDetected",
    "TetherError",
]


def __getattr__(name: str):
    if name == "SessionOrchestrator":
        from .orchestrator import SessionOrchestrator
        return SessionOrchestrator
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "AgentClient":
        from .providers.base import AgentClient
        return AgentClient
    if name == "CodexMcpClient":
        from .providers.codex_client import CodexMcpClient
        return CodexMcpClient
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
