"""
TaskRoulette CLI: the task graph and its sync from the command line.

Each command group lives in its own module. The main Click group is
defined here and every group is attached through a register function.

Entry point: taskroulette.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="taskroulette")
@click.option("--verbose", "-v", is_flag=True, help="Log to the console.")
def main(verbose):
    """TaskRoulette: a task graph that syncs across devices."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .setup import register_setup_commands
from .tasks import register_task_commands
from .sync_cmd import register_sync_commands
from .auth_cmd import register_auth_commands
from .daemon import register_daemon_commands

register_setup_commands(main)
register_task_commands(main)
register_sync_commands(main)
register_auth_commands(main)
register_daemon_commands(main)
