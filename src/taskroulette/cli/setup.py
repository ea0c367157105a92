"""Setup and overview commands: init, audit."""

from __future__ import annotations

from pathlib import Path

import click
from rich.table import Table

from ._common import TASKROULETTE_HOME, console, fail, home_option
from ..audit import audit_event, read_audit_log
from ..config import AppConfig, RemoteBackendType, SyncConfig, load_config, save_config
from ..store import GraphStore


def register_setup_commands(main: click.Group) -> None:
    """Register init and audit."""

    @main.command()
    @home_option
    @click.option(
        "--backend",
        type=click.Choice([b.value for b in RemoteBackendType]),
        default=RemoteBackendType.FIRESTORE.value,
        help="Where tasks sync to.",
    )
    @click.option("--project-id", default=None, help="Firebase project id (firestore backend).")
    @click.option(
        "--local-path", default=None, type=click.Path(), help="Directory to sync to (local backend)."
    )
    @click.option("--local-uid", default="local", help="Identity used with the local backend.")
    def init(home, backend, project_id, local_path, local_uid):
        """Create the home directory, config file and task database."""
        home_path = Path(home or TASKROULETTE_HOME).expanduser()
        backend_type = RemoteBackendType(backend)
        if backend_type == RemoteBackendType.LOCAL and not local_path:
            fail("--local-path is required for the local backend")

        existing = load_config(home_path) if (home_path / "config.yaml").exists() else None
        sync = existing.sync if existing else SyncConfig()
        sync = sync.model_copy(
            update={
                "backend": backend_type,
                "project_id": project_id or sync.project_id,
                "local_path": Path(local_path).expanduser() if local_path else sync.local_path,
                "local_uid": local_uid,
            }
        )
        config = AppConfig(home=home_path, sync=sync)
        config_file = save_config(config)
        GraphStore(config.db_path).close()
        audit_event(home_path, "INIT", f"Initialised with backend {backend_type.value}")

        console.print(f"\n  [green]Initialised[/] {home_path}")
        console.print(f"  Config: {config_file}")
        console.print(f"  Database: {config.db_path}")
        if backend_type == RemoteBackendType.FIRESTORE and not sync.project_id:
            console.print("  [yellow]Set FIREBASE_PROJECT_ID or --project-id to enable sync.[/]")
        console.print()

    @main.command()
    @home_option
    @click.option("--limit", "-n", default=50, help="Show the last N entries.")
    def audit(home, limit):
        """Show the sync audit log."""
        home_path = Path(home).expanduser()
        entries = read_audit_log(home_path, limit=limit)
        if not entries:
            console.print("[yellow]No audit log found.[/]")
            return

        console.print()
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Time", style="dim", no_wrap=True)
        table.add_column("Event", style="bold cyan")
        table.add_column("Detail")
        table.add_column("Host", style="dim")

        event_colors = {
            "INIT": "green",
            "SYNC_PUSH": "magenta",
            "SYNC_PULL": "magenta",
            "SYNC_ERROR": "red",
            "AUTH_SIGN_OUT": "yellow",
            "MIGRATION": "blue",
        }
        for e in entries:
            ts = e.timestamp[:19].replace("T", " ")
            color = event_colors.get(e.event_type, "white")
            table.add_row(ts, f"[{color}]{e.event_type}[/]", e.detail, e.host)

        console.print(table)
        console.print(f"\n  [dim]{len(entries)} entries[/]\n")
