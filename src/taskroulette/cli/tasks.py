"""Task commands: add, ls, leaves, done, undone, rm, restore-last, link, unlink, move, block, unblock."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.table import Table

from ._common import console, fail, home_option, load_home, open_store, task_flags
from ..errors import StructuralViolation, TaskNotFound
from ..models import DeletedSubtree, DeletedTask

UNDO_FILE = "undo.json"


def _save_undo(home: Path, kind: str, snapshot) -> None:
    (home / UNDO_FILE).write_text(
        json.dumps({"kind": kind, "snapshot": snapshot.model_dump(mode="json")}),
        encoding="utf-8",
    )


def _render(tasks, blocked: set, title: str) -> None:
    if not tasks:
        console.print("\n  [dim]No tasks.[/]\n")
        return
    table = Table(title=title, show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Name")
    table.add_column("Status")
    for task in tasks:
        name = f"[link={task.url}]{task.name}[/link]" if task.url else task.name
        table.add_row(str(task.id), name, task_flags(task, task.id in blocked))
    console.print()
    console.print(table)
    console.print()


def register_task_commands(main: click.Group) -> None:
    """Register the task command group."""

    @main.group()
    def task():
        """Manage the task graph.

        Tasks can be listed under several parents and can depend on
        other tasks. Neither relation may ever form a cycle.
        """

    @task.command("add")
    @home_option
    @click.argument("name")
    @click.option("--parent", "-p", "parents", multiple=True, type=int, help="Parent task id.")
    @click.option("--url", default=None, help="Link attached to the task.")
    def task_add(home, name, parents, url):
        """Create a task."""
        config = load_home(home)
        with open_store(config) as store:
            try:
                created = store.add_task(name, parents)
            except (TaskNotFound, StructuralViolation) as exc:
                fail(str(exc))
            if url:
                created = store.set_url(created.id, url)
        console.print(f"\n  [green]Added[/] [cyan]#{created.id}[/] {created.name}\n")

    @task.command("ls")
    @home_option
    @click.option("--parent", "-p", type=int, default=None, help="List children of this task.")
    @click.option("--all", "show_all", is_flag=True, help="Include completed tasks.")
    def task_ls(home, parent, show_all):
        """List root tasks, or the children of --parent."""
        config = load_home(home)
        with open_store(config) as store:
            if parent is not None:
                if store.get_task(parent) is None:
                    fail(f"Task {parent} not found")
                tasks = store.children_of(parent)
                path = " / ".join(t.name for t in store.ancestor_path(parent))
                title = f"Under {path}"
            elif show_all:
                tasks = store.all_tasks(include_completed=True)
                title = "All tasks"
            else:
                tasks = store.root_tasks()
                title = "Root tasks"
            blocked = store.blocked_task_ids(t.id for t in tasks)
        _render(tasks, blocked, title)

    @task.command("leaves")
    @home_option
    def task_leaves(home):
        """List actionable tasks: incomplete, with no incomplete children."""
        config = load_home(home)
        with open_store(config) as store:
            tasks = store.leaf_tasks()
            blocked = store.blocked_task_ids(t.id for t in tasks)
        _render(tasks, blocked, "Leaves")

    @task.command("done")
    @home_option
    @click.argument("task_id", type=int)
    def task_done(home, task_id):
        """Mark a task completed."""
        config = load_home(home)
        with open_store(config) as store:
            try:
                done = store.complete_task(task_id)
            except TaskNotFound as exc:
                fail(str(exc))
        console.print(f"\n  [green]Completed[/] {done.name}\n")

    @task.command("undone")
    @home_option
    @click.argument("task_id", type=int)
    def task_undone(home, task_id):
        """Mark a completed task incomplete again."""
        config = load_home(home)
        with open_store(config) as store:
            try:
                reopened = store.uncomplete_task(task_id)
            except TaskNotFound as exc:
                fail(str(exc))
        console.print(f"\n  [yellow]Reopened[/] {reopened.name}\n")

    @task.command("rm")
    @home_option
    @click.argument("task_id", type=int)
    @click.option("--reparent", is_flag=True, help="List the children under the task's parents.")
    @click.option("--subtree", is_flag=True, help="Also delete every descendant.")
    def task_rm(home, task_id, reparent, subtree):
        """Delete a task. Undo with `task restore-last`."""
        if reparent and subtree:
            fail("--reparent and --subtree are mutually exclusive")
        config = load_home(home)
        with open_store(config) as store:
            try:
                if subtree:
                    snapshot = store.delete_subtree(task_id)
                    _save_undo(config.home, "subtree", snapshot)
                    label = f"{len(snapshot.tasks)} task(s)"
                else:
                    snapshot = (
                        store.delete_task_and_reparent(task_id)
                        if reparent
                        else store.delete_task(task_id)
                    )
                    _save_undo(config.home, "task", snapshot)
                    label = snapshot.task.name
            except TaskNotFound as exc:
                fail(str(exc))
        console.print(f"\n  [red]Deleted[/] {label}")
        console.print("  [dim]Undo with: taskroulette task restore-last[/]\n")

    @task.command("restore-last")
    @home_option
    def task_restore_last(home):
        """Undo the most recent `task rm`."""
        config = load_home(home)
        undo_path = config.home / UNDO_FILE
        if not undo_path.exists():
            fail("Nothing to restore")
        data = json.loads(undo_path.read_text(encoding="utf-8"))
        with open_store(config) as store:
            if data.get("kind") == "subtree":
                snapshot = DeletedSubtree.model_validate(data["snapshot"])
                store.restore_subtree(snapshot)
                label = f"{len(snapshot.tasks)} task(s)"
            else:
                restored = store.restore_task(DeletedTask.model_validate(data["snapshot"]))
                label = restored.name
        undo_path.unlink()
        console.print(f"\n  [green]Restored[/] {label}\n")

    @task.command("link")
    @home_option
    @click.argument("parent_id", type=int)
    @click.argument("child_id", type=int)
    def task_link(home, parent_id, child_id):
        """List CHILD_ID under PARENT_ID."""
        config = load_home(home)
        with open_store(config) as store:
            try:
                added = store.link_edge(parent_id, child_id)
            except (TaskNotFound, StructuralViolation) as exc:
                fail(str(exc))
        console.print("\n  [green]Linked[/]\n" if added else "\n  [dim]Already linked[/]\n")

    @task.command("unlink")
    @home_option
    @click.argument("parent_id", type=int)
    @click.argument("child_id", type=int)
    def task_unlink(home, parent_id, child_id):
        """Remove CHILD_ID from under PARENT_ID."""
        config = load_home(home)
        with open_store(config) as store:
            removed = store.unlink_edge(parent_id, child_id)
        console.print("\n  [yellow]Unlinked[/]\n" if removed else "\n  [dim]Not linked[/]\n")

    @task.command("move")
    @home_option
    @click.argument("task_id", type=int)
    @click.argument("old_parent_id", type=int)
    @click.argument("new_parent_id", type=int)
    def task_move(home, task_id, old_parent_id, new_parent_id):
        """Move a task from one parent to another."""
        config = load_home(home)
        with open_store(config) as store:
            try:
                store.move_task(task_id, old_parent_id, new_parent_id)
            except (TaskNotFound, StructuralViolation) as exc:
                fail(str(exc))
        console.print("\n  [green]Moved[/]\n")

    @task.command("block")
    @home_option
    @click.argument("task_id", type=int)
    @click.argument("blocker_id", type=int)
    def task_block(home, task_id, blocker_id):
        """Make TASK_ID depend on BLOCKER_ID."""
        config = load_home(home)
        with open_store(config) as store:
            try:
                store.add_dependency(task_id, blocker_id)
            except (TaskNotFound, StructuralViolation) as exc:
                fail(str(exc))
        console.print("\n  [green]Dependency added[/]\n")

    @task.command("unblock")
    @home_option
    @click.argument("task_id", type=int)
    @click.argument("blocker_id", type=int)
    def task_unblock(home, task_id, blocker_id):
        """Remove the dependency of TASK_ID on BLOCKER_ID."""
        config = load_home(home)
        with open_store(config) as store:
            removed = store.remove_dependency(task_id, blocker_id)
        console.print(
            "\n  [yellow]Dependency removed[/]\n" if removed else "\n  [dim]No such dependency[/]\n"
        )
