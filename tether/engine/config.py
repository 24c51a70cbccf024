"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TETHER_* env vars.
Durations are stored in seconds; the env vars take milliseconds.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)


def _env_ms(name: str, default_seconds: float) -> float:
    """Read a positive millisecond count from the environment.

    Missing, non-numeric or non-positive values fall back to the default.
    """
    raw = os.getenv(name)
    if not raw:
        return default_seconds
    try:
        parsed = int(raw.strip())
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", name, raw)
        return default_seconds
    if parsed <= 0:
        logger.warning("Ignoring %s=%r: must be positive", name, raw)
        return default_seconds
    return parsed / 1000.0


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        parsed = int(raw.strip())
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", name, raw)
        return default
    return parsed if parsed > 0 else default


@dataclass
class OrchestratorConfig:
    """Session orchestrator configuration."""

    # Agent process
    codex_command: str = "codex"
    cwd: str = "."
    # Pre-assigned local session id (e.g. reused after a process restart).
    local_session_id: str | None = None

    # Stall detection: one timeout per phase. request/idle share the minimum.
    stall_timeout_min_seconds: float = 120.0
    stall_timeout_thinking_seconds: float = 240.0
    stall_timeout_tool_seconds: float = 300.0
    # Used while at least one command is still executing.
    stall_timeout_tool_active_seconds: float = 600.0
    stall_timeout_patch_seconds: float = 300.0
    stall_timeout_patch_active_seconds: float = 600.0
    stall_timeout_complete_seconds: float = 180.0
    stall_check_interval_seconds: float = 5.0

    # Automatic restarts allowed inside one cooldown window.
    stall_restart_limit: int = 3
    stall_restart_cooldown_seconds: float = 15 * 60.0

    # Hard limit on the initial handshake. Turns have no hard limit.
    connect_timeout_seconds: float = 60.0

    # Remote control server (None disables it)
    server_host: str = "127.0.0.1"
    server_port: int | None = None

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, base: OrchestratorConfig | None = None) -> OrchestratorConfig:
        """Load configuration from TETHER_* environment variables.

        When *base* is given (e.g. parsed from YAML) its values are the
        fallbacks instead of the dataclass defaults.
        """
        base = base or cls()
        tether_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TETHER_")
        }
        if tether_vars:
            logger.info(
                "OrchestratorConfig.from_env: TETHER_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(tether_vars.items())),
            )
        else:
            logger.debug("OrchestratorConfig.from_env: no TETHER_* env vars set")

        config = cls(
            codex_command=os.getenv("TETHER_CODEX_COMMAND", base.codex_command),
            cwd=os.getenv("TETHER_CWD", base.cwd),
            local_session_id=(
                (os.getenv("TETHER_SESSION_ID") or "").strip()
                or base.local_session_id
            ),
            stall_timeout_min_seconds=_env_ms(
                "TETHER_STALL_MIN_MS", base.stall_timeout_min_seconds,
            ),
            stall_timeout_thinking_seconds=_env_ms(
                "TETHER_STALL_THINKING_MS", base.stall_timeout_thinking_seconds,
            ),
            stall_timeout_tool_seconds=_env_ms(
                "TETHER_STALL_TOOL_MS", base.stall_timeout_tool_seconds,
            ),
            stall_timeout_tool_active_seconds=_env_ms(
                "TETHER_STALL_TOOL_ACTIVE_MS",
                base.stall_timeout_tool_active_seconds,
            ),
            stall_timeout_patch_seconds=_env_ms(
                "TETHER_STALL_PATCH_MS", base.stall_timeout_patch_seconds,
            ),
            stall_timeout_patch_active_seconds=_env_ms(
                "TETHER_STALL_PATCH_ACTIVE_MS",
                base.stall_timeout_patch_active_seconds,
            ),
            stall_timeout_complete_seconds=_env_ms(
                "TETHER_STALL_COMPLETE_MS", base.stall_timeout_complete_seconds,
            ),
            stall_check_interval_seconds=_env_ms(
                "TETHER_STALL_CHECK_MS", base.stall_check_interval_seconds,
            ),
            stall_restart_limit=_env_int(
                "TETHER_STALL_RESTART_LIMIT", base.stall_restart_limit,
            ),
            stall_restart_cooldown_seconds=_env_ms(
                "TETHER_STALL_RESTART_COOLDOWN_MS",
                base.stall_restart_cooldown_seconds,
            ),
            connect_timeout_seconds=_env_ms(
                "TETHER_CONNECT_TIMEOUT_MS", base.connect_timeout_seconds,
            ),
            server_host=os.getenv("TETHER_SERVER_HOST", base.server_host),
            server_port=_env_int("TETHER_SERVER_PORT", 0) or base.server_port,
            log_level=os.getenv("TETHER_LOG_LEVEL", base.log_level),
        )
        logger.info(
            "OrchestratorConfig.from_env: command=%s cwd=%s stall_min=%.0fs "
            "restart_limit=%d connect_timeout=%.0fs",
            config.codex_command,
            config.cwd,
            config.stall_timeout_min_seconds,
            config.stall_restart_limit,
            config.connect_timeout_seconds,
        )
        return config
