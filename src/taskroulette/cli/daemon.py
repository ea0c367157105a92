"""Daemon commands: start, stop, status."""

from __future__ import annotations

import json
import os
import signal

import click
from rich.panel import Panel

from ._common import console, fail, home_option, load_home


def register_daemon_commands(main: click.Group) -> None:
    """Register the daemon command group."""

    @main.group()
    def daemon():
        """Background sync: push after edits, pull on a timer."""

    @daemon.command("start")
    @home_option
    def daemon_start(home: str):
        """Run the sync daemon in the foreground (Ctrl+C to stop).

        Use systemd or similar to keep it running in the background.
        """
        from ..daemon import DaemonConfig, DaemonService, is_running

        app = load_home(home)
        if is_running(app.home):
            console.print("[yellow]Daemon is already running.[/]")
            return

        config = DaemonConfig(home=app.home, app=app)
        svc = DaemonService(config)
        try:
            svc.start()
        except RuntimeError as exc:
            fail(str(exc))

        console.print(f"\n  [green]Daemon started[/] (PID {os.getpid()})")
        console.print(
            f"  Push debounce: {app.sync.push_debounce_seconds}s | "
            f"Sync every: {app.sync.pull_interval_seconds}s"
        )
        console.print(f"  Log: {config.log_file}\n")
        svc.run_forever()

    @daemon.command("stop")
    @home_option
    def daemon_stop(home: str):
        """Stop the running daemon."""
        from ..daemon import PID_FILE, read_pid

        app = load_home(home)
        pid = read_pid(app.home)
        if pid is None:
            console.print("[yellow]Daemon is not running.[/]")
            return
        try:
            os.kill(pid, signal.SIGTERM)
            console.print(f"\n  [green]Sent SIGTERM to daemon (PID {pid})[/]\n")
        except ProcessLookupError:
            console.print("[yellow]Daemon process not found, cleaning up PID file.[/]")
            (app.home / PID_FILE).unlink(missing_ok=True)

    @daemon.command("status")
    @home_option
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def daemon_status(home: str, json_out: bool):
        """Show what the daemon last reported."""
        from ..daemon import is_running, read_status

        app = load_home(home)
        running = is_running(app.home)
        status = read_status(app.home) or {}
        status["running"] = running

        if json_out:
            click.echo(json.dumps(status, indent=2))
            return
        if not running:
            console.print("\n  [yellow]Daemon is not running.[/]\n")
            return

        console.print()
        console.print(
            Panel(
                f"PID: [bold]{status.get('pid')}[/]\n"
                f"Started: {status.get('started_at') or '[dim]unknown[/]'}\n"
                f"Sync state: [bold]{status.get('sync_state', 'idle')}[/]\n"
                f"Syncs completed: [bold]{status.get('syncs_completed', 0)}[/]\n"
                f"Last sync: {status.get('last_sync') or '[dim]never[/]'}",
                title="[green]Daemon Running[/]",
                border_style="green",
            )
        )
        errors = status.get("recent_errors", [])
        if errors:
            console.print("[bold]Recent errors:[/]")
            for line in errors[-5:]:
                console.print(f"  [red]{line}[/]")
        console.print()
