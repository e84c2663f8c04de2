#!/usr/bin/env python3
"""autosort daemon and control CLI.

``autosortd run`` starts the background service in the foreground; the other
subcommands talk to a running service over its control socket.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from autosort.exceptions import AutosortError, DaemonNotRunning
from autosort.models.schemas import DaemonStatus
from autosort.utils.config import Settings, file_config_loader, get_settings
from autosort.utils.control_client import ControlClient, offline_status
from autosort.utils.helpers import format_uptime, utcnow
from autosort.utils.logs import configure_logging
from domains.daemon.autostart import Autostart
from domains.daemon.service import DaemonService
from domains.daemon.state import LOG_FILE


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""

    parser = argparse.ArgumentParser(
        prog="autosortd",
        description="Watch directories and organize files according to rules.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Configuration file (default: AUTOSORT_CONFIG_FILE or ~/.config/autosort/config.yaml).",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="State directory (default: AUTOSORT_STATE_DIR or ~/.local/state/autosort).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: AUTOSORT_LOG_LEVEL or INFO).",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the service in the foreground.")
    sub.add_parser("status", help="Show service status.")
    sub.add_parser("reload", help="Re-read the configuration.")
    sub.add_parser("stop", help="Stop the running service.")

    tail = sub.add_parser("tail", help="Show recent activity.")
    tail.add_argument("-n", type=int, default=20, help="Number of outcomes (default: 20).")

    autostart = sub.add_parser("autostart", help="Manage start at login.")
    autostart.add_argument("action", choices=["status", "enable", "disable", "toggle"])

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    overrides = {}
    if args.config is not None:
        overrides["config_file"] = args.config
    if args.state_dir is not None:
        overrides["state_dir"] = args.state_dir
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    settings = get_settings()
    return settings.model_copy(update=overrides) if overrides else settings


def render_status(status: DaemonStatus) -> str:
    lines = [f"State:    {status.state.value}"]
    if status.pid:
        lines.append(f"PID:      {status.pid}")
    if status.started_at:
        uptime = int((utcnow() - status.started_at).total_seconds())
        lines.append(f"Uptime:   {format_uptime(max(0, uptime))}")
    lines.append(f"Watching: {status.watched_paths} paths")
    lines.append(f"Rules:    {status.rule_count}")
    if status.last_error:
        lines.append(f"Error:    {status.last_error}")
    for outcome in status.recent_outcomes[-5:]:
        lines.append(f"  {render_outcome_line(outcome)}")
    return "\n".join(lines)


def render_outcome_line(outcome) -> str:
    line = (
        f"{outcome.timestamp:%Y-%m-%d %H:%M:%S} [{outcome.rule_name}] "
        f"{outcome.action.type} {outcome.path}: {outcome.status.value}"
    )
    if outcome.destination:
        line += f" -> {outcome.destination}"
    if outcome.reason:
        line += f" ({outcome.reason})"
    return line


async def run_service(settings: Settings) -> int:
    service = DaemonService(settings, config_loader=file_config_loader(settings.get_config_file()))
    try:
        return await service.run_forever(install_signals=True)
    except AutosortError as e:
        logger.error(f"{e.kind}: {e.message}")
        return 1


async def run_client(args: argparse.Namespace, settings: Settings) -> int:
    async with ControlClient(settings.get_socket_path()) as client:
        if args.command == "status":
            print(render_status(await client.get_status()))
        elif args.command == "reload":
            summary = await client.reload()
            print(f"Reloaded: {summary['rule_count']} rules, {summary['watched_paths']} watched paths")
        elif args.command == "stop":
            await client.stop()
            print("Stopping autosort")
        elif args.command == "tail":
            for outcome in await client.tail_log(args.n):
                print(render_outcome_line(outcome))
    return 0


def run_offline(args: argparse.Namespace, settings: Settings) -> int:
    state_dir = settings.get_state_dir()
    if args.command == "status":
        print(render_status(offline_status(state_dir)))
        return 0
    if args.command == "tail":
        for outcome in offline_status(state_dir, recent=args.n).recent_outcomes:
            print(render_outcome_line(outcome))
        return 0
    print("autosort is not running", file=sys.stderr)
    return 1


def run_autostart(action: str) -> int:
    autostart = Autostart()
    if action == "enable":
        print(f"Auto-start enabled: {autostart.enable()}")
    elif action == "disable":
        autostart.disable()
        print("Auto-start disabled")
    elif action == "toggle":
        print(f"Auto-start {'enabled' if autostart.toggle() else 'disabled'}")
    else:
        print(f"Auto-start: {'enabled' if autostart.is_enabled() else 'disabled'}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    settings = build_settings(args)

    if args.command == "run":
        configure_logging(settings.log_level, settings.get_state_dir() / LOG_FILE)
        return asyncio.run(run_service(settings))

    configure_logging("WARNING")

    try:
        if args.command == "autostart":
            return run_autostart(args.action)
        try:
            return asyncio.run(run_client(args, settings))
        except DaemonNotRunning:
            return run_offline(args, settings)
    except AutosortError as e:
        print(f"{e.kind}: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI bridge
    sys.exit(main())
