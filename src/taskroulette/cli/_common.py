"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the --home option, and helpers
that open the store and coordinator or bail out with a readable error.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import NoReturn, Optional

import click
from rich.console import Console

from .. import TASKROULETTE_HOME
from ..config import AppConfig, load_config
from ..models import SyncStatus, Task
from ..store import GraphStore
from ..sync.coordinator import SyncCoordinator, SyncState, create_coordinator

console = Console()
logger = logging.getLogger("taskroulette.cli")

home_option = click.option(
    "--home", default=TASKROULETTE_HOME, type=click.Path(), help="TaskRoulette home directory."
)


def fail(message: str) -> NoReturn:
    console.print(f"[bold red]Error:[/] {message}")
    sys.exit(1)


def load_home(home: str) -> AppConfig:
    """Load config for an initialised home, or exit."""
    home_path = Path(home).expanduser()
    if not home_path.exists():
        fail(f"No TaskRoulette home at {home_path}. Run [cyan]taskroulette init[/] first.")
    return load_config(home_path)


def open_store(config: AppConfig) -> GraphStore:
    return GraphStore(config.db_path)


def open_coordinator(config: AppConfig, store: GraphStore) -> SyncCoordinator:
    """Build the coordinator, or exit if sync is not configured."""
    coordinator = create_coordinator(config, store)
    if coordinator is None:
        store.close()
        fail("Sync is not configured. Set a backend in config.yaml or run [cyan]taskroulette init[/].")
    return coordinator


def state_icon(state: SyncState) -> str:
    return {
        SyncState.IDLE: "[bold green]IDLE[/]",
        SyncState.SYNCING: "[bold cyan]SYNCING[/]",
        SyncState.ERROR: "[bold red]ERROR[/]",
    }.get(state, "[dim]UNKNOWN[/]")


def task_flags(task: Task, blocked: bool = False) -> str:
    flags = []
    if task.is_completed:
        flags.append("[green]done[/]")
    if task.is_started:
        flags.append("[cyan]started[/]")
    if task.is_skipped:
        flags.append("[dim]skipped[/]")
    if task.worked_on_today:
        flags.append("[magenta]worked today[/]")
    if blocked:
        flags.append("[yellow]blocked[/]")
    if task.sync_status == SyncStatus.PENDING:
        flags.append("[dim]unsynced[/]")
    return " ".join(flags)


def format_ms(value: Optional[int]) -> str:
    if value is None:
        return "[dim]never[/]"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")
