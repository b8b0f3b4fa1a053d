"""CLI entry point for netlify-sync.

This module handles command-line argument parsing, logging setup and the
subcommands. ``poll`` is meant to be run by the menu-bar host on a timer; it
always exits 0 and reports problems as menu lines, because stdout must stay
parseable by the host.
"""

from __future__ import annotations

import argparse
import json
import logging
import logging.handlers
import queue
import sys
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from .deployer import utcnow
from .exceptions import StateLockedError, SyncError
from .models import DeployStatus
from .netlify_client import NetlifyClient, NetlifyError, is_online, read_token
from .persistence import StatePersister
from .poller import PollDriver, PollResult, SyncPoller
from .render import get_display_time, render
from .sites import collect_sites, render_sites, render_sites_error
from .utils import DEFAULT_CONFIG_PATH, Config, load_config
from .worker import DetachedDeploy, run_worker

logger = logging.getLogger(__name__)

DEFAULT_LOG_FILE = Path.home() / ".cache" / "netlify-sync" / "netlify-sync.log"

STATUS_STYLES = {
    DeployStatus.IDLE: "green",
    DeployStatus.NEEDS_DEPLOY: "yellow",
    DeployStatus.DEPLOYING: "yellow",
    DeployStatus.OFFLINE: "bright_black",
    DeployStatus.ERROR: "red",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Poll invocations and detached deploy workers append to the same file, so
    each entry carries the writing pid. ``extra_context`` becomes ``context``;
    the call site is kept apart under ``source`` so the two never collide.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "pid": record.process,
            "logger": record.name,
            "event": record.getMessage(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
            "context": dict(getattr(record, "extra_context", {})),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _setup_logging(log_file: Path, debug: bool, command: str) -> None:
    """Send JSON logs to ``log_file``; stdout stays reserved for the menu.

    Args:
        log_file: Path to log file
        debug: Enable debug level logging
        command: Subcommand being run, recorded with the first entry
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # 10MB max, 3 backups
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(file_handler)

    logger.info(
        "Logging initialized",
        extra={"extra_context": {"log_file": str(log_file), "debug": debug, "command": command}},
    )


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="netlify-sync",
        description="Watch a directory and deploy it to Netlify, reporting status to a menu bar",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to config.json (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=DEFAULT_LOG_FILE,
        help=f"Path to the JSON log file (default: {DEFAULT_LOG_FILE})",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("poll", help="Run one poll and print the menu (default)")
    subparsers.add_parser("trigger", help="Queue a deploy on the next poll")
    subparsers.add_parser("reset", help="Forget the deploy state and history")
    subparsers.add_parser("sites", help="Print the latest build status of every site")
    subparsers.add_parser("watch", help="Poll continuously and show a live dashboard")
    subparsers.add_parser("deploy-worker", help=argparse.SUPPRESS)

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "poll"
    args.config = Path(args.config).expanduser().resolve()
    return args


def _cli_command(config: Config, config_path: Path, command: str) -> list[str]:
    return [config.python_executable, "-m", "netlify_sync.cli", "--config", str(config_path), command]


def _deploys_url(config: Config) -> str:
    return f"https://app.netlify.com/sites/{config.site_id}/deploys"


def build_driver(config: Config, config_path: Path) -> PollDriver:
    """Wire a PollDriver to the real Netlify API and connectivity probe."""
    persister = StatePersister(config.state_dir)
    detached = None
    if config.deploy_strategy == "subprocess":
        detached = DetachedDeploy(config, config_path, persister)
    return PollDriver(
        config,
        persister,
        client_factory=lambda: _build_client(config),
        is_online=lambda: is_online(config.connectivity_url, config.connectivity_timeout_seconds),
        detached=detached,
    )


def _build_client(config: Config) -> NetlifyClient:
    return NetlifyClient(read_token(config.token_path), base_url=config.api_base_url)


def render_result(
    result: PollResult, config: Config, config_path: Path, now: datetime
) -> list[str]:
    return render(
        result.status,
        result.state.deploys,
        result.online,
        now=now,
        error=result.error,
        log=result.log,
        trigger_command=_cli_command(config, config_path, "trigger"),
        reset_command=_cli_command(config, config_path, "reset"),
        deploys_url=_deploys_url(config),
    )


def _emit(lines: list[str]) -> None:
    print("\n".join(lines), flush=True)


def _handle_poll(config_path: Path) -> int:
    now = utcnow().astimezone()
    try:
        config = load_config(config_path)
    except (SyncError, ValueError, TypeError) as err:
        logger.error("Failed to load config", extra={"extra_context": {"error": str(err)}})
        _emit(render(DeployStatus.ERROR, [], True, now=now, error=str(err)))
        return 0

    driver = build_driver(config, config_path)
    try:
        result = driver.poll_once()
    except StateLockedError:
        logger.info("State locked by another invocation, rendering read-only")
        state = driver.persister.peek()
        result = PollResult(state.status, state)
    except Exception as err:
        # Anything else is an environment error: show it, keep the last history
        logger.error(
            "Poll failed", extra={"extra_context": {"error": str(err)}}, exc_info=True
        )
        state = driver.persister.peek()
        result = PollResult(DeployStatus.ERROR, state, error=str(err))

    _emit(render_result(result, config, config_path, now))
    return 0


def _handle_trigger(config_path: Path) -> int:
    console = Console(stderr=True)
    try:
        config = load_config(config_path)
        state = build_driver(config, config_path).request_deploy()
    except (SyncError, ValueError, TypeError) as err:
        console.print(f"[red]Error: {err}[/red]")
        logger.error("Trigger failed", extra={"extra_context": {"error": str(err)}})
        return 1
    console.print(f"[green]Deploy status: {state.status.value}[/green]")
    return 0


def _handle_reset(config_path: Path) -> int:
    console = Console(stderr=True)
    try:
        config = load_config(config_path)
        persister = StatePersister(config.state_dir)
        with persister.lock():
            persister.reset()
    except (SyncError, ValueError, TypeError) as err:
        console.print(f"[red]Error: {err}[/red]")
        logger.error("Reset failed", extra={"extra_context": {"error": str(err)}})
        return 1
    console.print("[green]State reset[/green]")
    return 0


def _handle_sites(config_path: Path) -> int:
    try:
        config = load_config(config_path)
        lines = render_sites(collect_sites(_build_client(config)))
    except (SyncError, NetlifyError, ValueError, TypeError) as err:
        logger.error("Sites overview failed", extra={"extra_context": {"error": str(err)}})
        lines = render_sites_error(err)
    _emit(lines)
    return 0


def _handle_worker(config_path: Path) -> int:
    config = load_config(config_path)
    persister = StatePersister(config.state_dir)
    logger.info("Deploy worker started", extra={"extra_context": {"site_id": config.site_id}})
    return run_worker(config, persister, _build_client(config))


def build_dashboard(item: PollResult | Exception | None, config: Config, now: datetime) -> Panel:
    """Return a Rich Panel summarizing the latest poll."""
    table = Table.grid(padding=(0, 1))
    table.add_row("[bold]Site[/bold]", config.site_id)
    table.add_row("[bold]Source[/bold]", str(config.src_dir))

    if item is None:
        table.add_row("[bold]Status[/bold]", "waiting for first poll...")
        return Panel(table, title="Netlify Sync", border_style="bright_black")

    if isinstance(item, Exception):
        table.add_row("[bold]Status[/bold]", f"[red]ERROR[/red] {item}")
        return Panel(table, title="Netlify Sync", border_style="red")

    style = STATUS_STYLES[item.status]
    table.add_row("[bold]Status[/bold]", f"[{style}]{item.status.value}[/{style}]")
    table.add_row("[bold]Tracked files[/bold]", str(len(item.state.last_digest)))
    if item.state.deploys:
        latest = item.state.deploys[0]
        outcome = "[red]failed[/red]" if latest.failed else "[green]ok[/green]"
        table.add_row(
            "[bold]Last deploy[/bold]",
            f"{get_display_time(latest.timestamp, now)} ({outcome}, "
            f"{latest.changed_file_count} files in {round(latest.duration_seconds, 1)}s)",
        )
    if item.log:
        table.add_row("[bold]Progress[/bold]", item.log.strip())
    return Panel(table, title="Netlify Sync", border_style=style)


def _handle_watch(config_path: Path) -> int:
    console = Console()
    try:
        config = load_config(config_path)
    except (SyncError, ValueError, TypeError) as err:
        console.print(f"[red]Error loading config: {err}[/red]")
        return 1

    updates: queue.Queue[PollResult | Exception] = queue.Queue(maxsize=100)
    poller = SyncPoller(build_driver(config, config_path), updates, config.poll_interval_seconds)
    latest: PollResult | Exception | None = None
    poller.start()
    try:
        with Live(console=console, refresh_per_second=4) as live:
            while True:
                live.update(build_dashboard(latest, config, utcnow().astimezone()))
                try:
                    latest = updates.get(timeout=0.5)
                except queue.Empty:
                    continue
    except KeyboardInterrupt:
        console.print("\n[red]Stopped by user.[/red]")
        return 130
    finally:
        poller.stop()


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Exit code (0=success, 1=error, 130=SIGINT)
    """
    args = _parse_args(argv)
    _setup_logging(args.log_file, args.debug, args.command)
    logger.debug("Using config", extra={"extra_context": {"config_path": str(args.config)}})

    handlers = {
        "poll": _handle_poll,
        "trigger": _handle_trigger,
        "reset": _handle_reset,
        "sites": _handle_sites,
        "watch": _handle_watch,
        "deploy-worker": _handle_worker,
    }
    return handlers[args.command](args.config)


if __name__ == "__main__":
    sys.exit(main())
