"""CLI entry point for a remote Codex session.

Usage:
    tether
    tether --cwd ~/src/project --port 8765
    tether --config tether.yaml --session-id 0199a5c2-...
    tether --no-stdin --port 8765      # driven over HTTP only
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from rich.console import Console
from rich.text import Text

from tether.adapters import EventBus, MessageQueue
from tether.engine.config import OrchestratorConfig
from tether.engine.errors import AgentConnectError
from tether.engine.models import ExitReason
from tether.engine.providers.codex_client import PERMISSION_POLICIES, CodexMcpClient
from tether.engine.yaml_config import load_yaml_config
from tether.shared.services.transcript_store import CodexTranscriptStore
from tether.terminal import CommandReader, TerminalRenderer

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tether",
        description="Run a Codex session that can be driven locally or remotely",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for the agent (default: current dir)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (TETHER_* env vars still win)",
    )
    parser.add_argument(
        "--command",
        default=None,
        help="Codex executable (default: codex)",
    )
    parser.add_argument(
        "--session-id",
        default=None,
        help="Local session id whose transcript seeds the first turn",
    )
    parser.add_argument(
        "--permission-mode",
        choices=sorted(PERMISSION_POLICIES),
        default="default",
        help="Permission mode for messages typed in the terminal",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model passed to Codex for messages typed in the terminal",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Bind address for the control server (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Start the HTTP/SSE control server on this port (0 = any free port)",
    )
    parser.add_argument(
        "--no-stdin",
        action="store_true",
        help="Do not read messages from the terminal",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def build_config(args: argparse.Namespace) -> OrchestratorConfig:
    """YAML file, then TETHER_* env vars, then command-line flags."""
    base = load_yaml_config(args.config) if args.config else None
    config = OrchestratorConfig.from_env(base=base)
    if args.cwd is not None:
        config.cwd = args.cwd
    if args.command is not None:
        config.codex_command = args.command
    if args.session_id is not None:
        config.local_session_id = args.session_id
    if args.host is not None:
        config.server_host = args.host
    if args.port is not None:
        config.server_port = args.port
    return config


async def _open_stdin() -> asyncio.StreamReader | None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    try:
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    except (ValueError, OSError, NotImplementedError) as exc:
        logger.warning("Terminal input unavailable: %s", exc)
        return None
    return reader


async def run_session(config: OrchestratorConfig, args: argparse.Namespace, console: Console) -> int:
    # Imported here so `tether --help` stays fast.
    from tether.engine.orchestrator import SessionOrchestrator
    from tether.server import TetherServer

    queue = MessageQueue()
    bus = EventBus()
    client = CodexMcpClient(
        command=config.codex_command,
        cwd=config.cwd,
        connect_timeout=config.connect_timeout_seconds,
    )
    orchestrator = SessionOrchestrator(
        client,
        queue,
        bus,
        CodexTranscriptStore(),
        config=config,
        permission_sink=bus,
    )

    renderer = TerminalRenderer(console)
    tasks: list[asyncio.Task] = [
        asyncio.create_task(renderer.run(bus, bus.subscribe())),
    ]

    mode: dict[str, str] = {"permission_mode": args.permission_mode}
    if args.model:
        mode["model"] = args.model
    if not args.no_stdin:
        reader = await _open_stdin()
        if reader is not None:
            commands = CommandReader(orchestrator, queue, renderer, mode=mode)
            tasks.append(asyncio.create_task(commands.run(reader)))

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.handle_exit)
        loop.add_signal_handler(signal.SIGTERM, orchestrator.handle_exit)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers not supported on this platform")

    server: TetherServer | None = None
    try:
        if config.server_port is not None:
            server = TetherServer(
                orchestrator, queue, bus,
                host=config.server_host, port=config.server_port,
            )
            port = await server.start()
            console.print(Text(
                f"Control server on http://{config.server_host}:{port}", style="dim",
            ))
        console.print(Text(f"Starting Codex in {config.cwd}...", style="dim"))
        reason = await orchestrator.launch()
    except AgentConnectError as exc:
        console.print(Text(f"Could not start Codex: {exc}", style="bold red"))
        return 1
    finally:
        bus.close()
        if server is not None:
            await server.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    if reason == ExitReason.SWITCH:
        console.print(Text("Switching to local mode.", style="dim"))
    return 0


def main() -> int:
    args = build_parser().parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    config = build_config(args)
    if not args.verbose:
        logging.getLogger().setLevel(
            getattr(logging, config.log_level.upper(), logging.INFO),
        )

    console = Console()
    try:
        return asyncio.run(run_session(config, args, console))
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
