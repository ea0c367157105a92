"""Sync commands: push, pull, now, status, migrate."""

from __future__ import annotations

from datetime import datetime

import click
from rich.panel import Panel

from ._common import (
    console,
    fail,
    format_ms,
    home_option,
    load_home,
    open_coordinator,
    open_store,
    state_icon,
)
from ..errors import SyncError
from ..sync.coordinator import MigrationOutcome, SyncCoordinator


def _report(coordinator: SyncCoordinator, ok: bool, what: str) -> None:
    if ok:
        console.print(f"\n  [green]{what} complete[/]\n")
        return
    fail(f"{what} failed: {coordinator.last_error or 'sync is halted'}")


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Keep this device and the cloud in step.

        Local edits are pushed, remote edits are pulled, and both
        relations of the task graph stay acyclic on every device.
        """

    @sync.command("push")
    @home_option
    def sync_push(home):
        """Push pending local changes."""
        config = load_home(home)
        with open_store(config) as store:
            coordinator = open_coordinator(config, store)
            _report(coordinator, coordinator.push(), "Push")

    @sync.command("pull")
    @home_option
    def sync_pull(home):
        """Pull remote changes since the last successful pull."""
        config = load_home(home)
        with open_store(config) as store:
            coordinator = open_coordinator(config, store)
            _report(coordinator, coordinator.pull(), "Pull")

    @sync.command("now")
    @home_option
    def sync_now(home):
        """Push, then pull."""
        config = load_home(home)
        with open_store(config) as store:
            coordinator = open_coordinator(config, store)
            _report(coordinator, coordinator.sync_now(), "Sync")

    @sync.command("status")
    @home_option
    def sync_status(home):
        """Show identity, checkpoint and queued work."""
        config = load_home(home)
        with open_store(config) as store:
            coordinator = open_coordinator(config, store)
            status = coordinator.status()

        checkpoint = status.checkpoint
        synced = (
            datetime.fromtimestamp(status.last_synced_at).strftime("%Y-%m-%d %H:%M:%S")
            if status.last_synced_at
            else "[dim]not this session[/]"
        )
        console.print()
        console.print(
            Panel(
                f"Backend: [cyan]{config.sync.backend.value}[/]\n"
                f"Identity: {status.uid or '[yellow]signed out[/]'}\n"
                f"State: {state_icon(status.state)}\n"
                f"Last sync: {synced}\n"
                f"Last push: {format_ms(checkpoint.last_push_at if checkpoint else None)}\n"
                f"Last pull: {format_ms(checkpoint.last_pull_at if checkpoint else None)}\n"
                f"Migrated: {'yes' if checkpoint and checkpoint.initial_migration_done else '[yellow]no[/]'}\n"
                f"Unsynced tasks: [bold]{status.pending_tasks}[/]\n"
                f"Queued operations: [bold]{status.pending_operations}[/]",
                title="TaskRoulette Sync",
                border_style="magenta",
            )
        )
        console.print()

    @sync.command("migrate")
    @home_option
    @click.option(
        "--strategy",
        type=click.Choice(["auto", "merge", "keep-local", "keep-cloud"]),
        default="auto",
        help="How to combine data when both sides already have tasks.",
    )
    def sync_migrate(home, strategy):
        """First sync of this device with the signed-in identity."""
        config = load_home(home)
        with open_store(config) as store:
            coordinator = open_coordinator(config, store)
            if strategy == "merge":
                _report(coordinator, coordinator.merge_both(), "Merge")
                return
            if strategy == "keep-local":
                _report(coordinator, coordinator.replace_cloud_with_local(), "Upload")
                return
            if strategy == "keep-cloud":
                _report(coordinator, coordinator.replace_local_with_cloud(), "Download")
                return

            if not coordinator.needs_initial_migration():
                console.print("\n  [dim]Already migrated.[/]\n")
                return
            outcome = coordinator.initial_migration()
            if outcome is None:
                fail(f"Migration failed: {coordinator.last_error or 'sync is halted'}")
            if outcome == MigrationOutcome.CONFLICT:
                console.print(
                    "\n  [yellow]Both this device and the cloud have tasks.[/]\n"
                    "  Re-run with [cyan]--strategy merge[/], [cyan]keep-local[/] "
                    "or [cyan]keep-cloud[/].\n"
                )
                return
            console.print(f"\n  [green]Migration complete:[/] {outcome.value}\n")

    @sync.command("check")
    @home_option
    def sync_check(home):
        """Report whether the cloud already holds data for this identity."""
        config = load_home(home)
        with open_store(config) as store:
            coordinator = open_coordinator(config, store)
            try:
                has_data = coordinator.has_cloud_data()
            except SyncError as exc:
                fail(f"Could not reach the remote store ({type(exc).__name__})")
        console.print(
            "\n  Cloud has data.\n" if has_data else "\n  [dim]Cloud is empty.[/]\n"
        )
