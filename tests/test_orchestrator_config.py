from __future__ import annotations

from pathlib import Path

import pytest

from tether.engine.config import OrchestratorConfig
from tether.engine.errors import InvalidLoopTransition
from tether.engine.lifecycle import VALID_TRANSITIONS, validate_transition
from tether.engine.models import LoopState
from tether.engine.yaml_config import load_yaml_config


def test_from_env_reads_millisecond_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TETHER_STALL_MIN_MS", "90000")
    monkeypatch.setenv("TETHER_STALL_TOOL_ACTIVE_MS", "1200000")
    monkeypatch.setenv("TETHER_CONNECT_TIMEOUT_MS", "15000")
    monkeypatch.setenv("TETHER_STALL_RESTART_LIMIT", "5")
    monkeypatch.setenv("TETHER_SESSION_ID", " local-123 ")

    config = OrchestratorConfig.from_env()

    assert config.stall_timeout_min_seconds == 90.0
    assert config.stall_timeout_tool_active_seconds == 1200.0
    assert config.connect_timeout_seconds == 15.0
    assert config.stall_restart_limit == 5
    assert config.local_session_id == "local-123"
    # Untouched values keep their defaults.
    assert config.stall_timeout_thinking_seconds == 240.0
    assert config.stall_restart_cooldown_seconds == 900.0


def test_from_env_ignores_invalid_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TETHER_STALL_MIN_MS", "soon")
    monkeypatch.setenv("TETHER_STALL_THINKING_MS", "-5")
    monkeypatch.setenv("TETHER_STALL_RESTART_LIMIT", "0")

    config = OrchestratorConfig.from_env()

    assert config.stall_timeout_min_seconds == 120.0
    assert config.stall_timeout_thinking_seconds == 240.0
    assert config.stall_restart_limit == 3


def test_env_wins_over_yaml_base(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "tether.yaml"
    config_file.write_text(
        "agent:\n"
        "  command: /opt/codex/bin/codex\n"
        "  cwd: project\n"
        "stall:\n"
        "  min_seconds: 30\n"
        "  thinking_seconds: 45\n"
        "  restart_limit: 2\n"
        "server:\n"
        "  port: 8765\n"
        "log_level: debug\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("TETHER_STALL_THINKING_MS", "60000")

    base = load_yaml_config(config_file)
    config = OrchestratorConfig.from_env(base=base)

    assert config.codex_command == "/opt/codex/bin/codex"
    assert config.cwd == str((tmp_path / "project").resolve())
    assert config.stall_timeout_min_seconds == 30.0
    assert config.stall_timeout_thinking_seconds == 60.0
    assert config.stall_restart_limit == 2
    assert config.server_port == 8765
    assert config.log_level == "DEBUG"


def test_yaml_missing_or_malformed_falls_back_to_defaults(tmp_path: Path) -> None:
    assert load_yaml_config(tmp_path / "absent.yaml") == OrchestratorConfig()

    broken = tmp_path / "broken.yaml"
    broken.write_text("agent: [unclosed\n", encoding="utf-8")
    assert load_yaml_config(broken) == OrchestratorConfig()

    bad_values = tmp_path / "bad.yaml"
    bad_values.write_text("stall:\n  min_seconds: -1\n  tool_seconds: later\n", encoding="utf-8")
    config = load_yaml_config(bad_values)
    assert config.stall_timeout_min_seconds == 120.0
    assert config.stall_timeout_tool_seconds == 300.0


def test_turn_cycle_transitions_are_valid() -> None:
    cycle = [
        LoopState.WAITING_FOR_MESSAGE,
        LoopState.STARTING_TURN,
        LoopState.TURN_FINISHING,
        LoopState.WAITING_FOR_MESSAGE,
        LoopState.CONTINUING_TURN,
        LoopState.TURN_FINISHING,
        LoopState.WAITING_FOR_MESSAGE,
        LoopState.WAITING_FOR_MESSAGE,
        LoopState.STOPPED,
    ]
    for current, target in zip(cycle, cycle[1:]):
        validate_transition(current, target)


def test_stopped_is_terminal() -> None:
    assert VALID_TRANSITIONS[LoopState.STOPPED] == set()
    with pytest.raises(InvalidLoopTransition):
        validate_transition(LoopState.STOPPED, LoopState.WAITING_FOR_MESSAGE)


def test_turn_cannot_skip_finishing() -> None:
    with pytest.raises(InvalidLoopTransition, match="starting-turn -> waiting-for-message"):
        validate_transition(LoopState.STARTING_TURN, LoopState.WAITING_FOR_MESSAGE)
    # InvalidLoopTransition stays catchable as a ValueError.
    with pytest.raises(ValueError):
        validate_transition(LoopState.CONTINUING_TURN, LoopState.STARTING_TURN)


def test_cli_flags_override_env(monkeypatch: pytest.MonkeyPatch) -> None:
    from tether.cli import build_config, build_parser

    monkeypatch.setenv("TETHER_CODEX_COMMAND", "codex-from-env")
    monkeypatch.setenv("TETHER_SESSION_ID", "env-session")
    args = build_parser().parse_args([
        "--cwd", "/work", "--session-id", "cli-session", "--port", "0",
    ])

    config = build_config(args)

    assert config.cwd == "/work"
    assert config.codex_command == "codex-from-env"
    assert config.local_session_id == "cli-session"
    assert config.server_port == 0
    assert args.permission_mode == "default"
