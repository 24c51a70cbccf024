"""YAML configuration loader.

Optional file layered between the dataclass defaults and TETHER_*
env vars (env wins). When no file is given, env vars work exactly
as before.

Example YAML:
    agent:
      command: codex
      cwd: /path/to/project
      connect_timeout_seconds: 60

    stall:
      min_seconds: 120
      thinking_seconds: 240
      tool_seconds: 300
      tool_active_seconds: 600
      patch_seconds: 300
      patch_active_seconds: 600
      complete_seconds: 180
      check_interval_seconds: 5
      restart_limit: 3
      restart_cooldown_seconds: 900

    server:
      host: 127.0.0.1
      port: 8765

    log_level: INFO
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import OrchestratorConfig

logger = logging.getLogger(__name__)

# YAML key under `stall:` -> OrchestratorConfig field
_STALL_KEYS: dict[str, str] = {
    "min_seconds": "stall_timeout_min_seconds",
    "thinking_seconds": "stall_timeout_thinking_seconds",
    "tool_seconds": "stall_timeout_tool_seconds",
    "tool_active_seconds": "stall_timeout_tool_active_seconds",
    "patch_seconds": "stall_timeout_patch_seconds",
    "patch_active_seconds": "stall_timeout_patch_active_seconds",
    "complete_seconds": "stall_timeout_complete_seconds",
    "check_interval_seconds": "stall_check_interval_seconds",
    "restart_cooldown_seconds": "stall_restart_cooldown_seconds",
}


def _positive_float(section: str, key: str, value: Any) -> float | None:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        logger.warning("load_yaml_config: %s.%s=%r is not a number", section, key, value)
        return None
    if parsed <= 0:
        logger.warning("load_yaml_config: %s.%s=%r must be positive", section, key, value)
        return None
    return parsed


def _section(data: dict, name: str) -> dict:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        logger.warning("load_yaml_config: section '%s' is not a mapping; ignored", name)
        return {}
    return value


def load_yaml_config(path: str | Path) -> OrchestratorConfig:
    """Load and parse a YAML config file into an OrchestratorConfig.

    Unknown keys are ignored. A missing or unparsable file yields the
    defaults with a warning, never an exception.
    """
    path = Path(path)
    config = OrchestratorConfig()
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.is_file(),
    )
    if not path.is_file():
        logger.warning("load_yaml_config: %s not found; using defaults", path)
        return config
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.warning("load_yaml_config: YAML parse error in %s: %s", path, exc)
        return config
    except OSError as exc:
        logger.warning("load_yaml_config: cannot read %s: %s", path, exc)
        return config
    if not isinstance(data, dict):
        logger.warning("load_yaml_config: %s is not a mapping; using defaults", path)
        return config

    agent = _section(data, "agent")
    if agent.get("command"):
        config.codex_command = str(agent["command"])
    if agent.get("cwd"):
        cwd = Path(str(agent["cwd"])).expanduser()
        if not cwd.is_absolute():
            cwd = (path.parent / cwd).resolve()
        config.cwd = str(cwd)
    if agent.get("session_id"):
        config.local_session_id = str(agent["session_id"])
    if "connect_timeout_seconds" in agent:
        timeout = _positive_float("agent", "connect_timeout_seconds", agent["connect_timeout_seconds"])
        if timeout is not None:
            config.connect_timeout_seconds = timeout

    stall = _section(data, "stall")
    for key, attr in _STALL_KEYS.items():
        if key in stall:
            value = _positive_float("stall", key, stall[key])
            if value is not None:
                setattr(config, attr, value)
    if "restart_limit" in stall:
        value = _positive_float("stall", "restart_limit", stall["restart_limit"])
        if value is not None:
            config.stall_restart_limit = int(value)

    server = _section(data, "server")
    if server.get("host"):
        config.server_host = str(server["host"])
    if "port" in server:
        try:
            config.server_port = int(server["port"])
        except (TypeError, ValueError):
            logger.warning("load_yaml_config: server.port=%r is not an integer", server["port"])

    if data.get("log_level"):
        config.log_level = str(data["log_level"]).upper()

    logger.info(
        "load_yaml_config: loaded %s (sections: %s)",
        path,
        ", ".join(k for k in ("agent", "stall", "server") if k in data) or "none",
    )
    return config
