"""
Graph Store: tasks and their two edge relations, in SQLite.

    tasks               one row per task
    task_relationships  listed-under edges (parent_id -> child_id)
    task_dependencies   depends-on edges (task_id -> depends_on_id)
    sync_queue          the outbox (see outbox.py)

Both edge relations are kept acyclic independently. Every structural
change runs in one short ``BEGIN IMMEDIATE`` transaction together with
the outbox entries that describe it, so no reader ever sees an edge
without its entry or the other way round.

Each edge row carries its own provenance (``sync_status``). It starts
``pending`` and becomes ``synced`` once the remote confirmed it. Pull
only ever deletes ``synced`` edges.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Union

from .errors import StructuralViolation, TaskNotFound
from .models import (
    TASK_DATA_FIELDS,
    DeletedSubtree,
    DeletedTask,
    Edge,
    EdgeKind,
    EntityType,
    OutboxAction,
    SyncEdge,
    SyncStatus,
    Task,
    now_ms,
)
from .outbox import SCHEMA as OUTBOX_SCHEMA
from .outbox import Outbox

logger = logging.getLogger("taskroulette.store")

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sync_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    completed_at INTEGER,
    started_at INTEGER,
    skipped_at INTEGER,
    last_worked_at INTEGER,
    url TEXT,
    priority INTEGER NOT NULL DEFAULT 0,
    quick_task INTEGER NOT NULL DEFAULT 0,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    updated_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_sync_status ON tasks (sync_status);

CREATE TABLE IF NOT EXISTS task_relationships (
    parent_id INTEGER NOT NULL,
    child_id INTEGER NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    PRIMARY KEY (parent_id, child_id),
    FOREIGN KEY (parent_id) REFERENCES tasks(id) ON DELETE CASCADE,
    FOREIGN KEY (child_id) REFERENCES tasks(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_relationships_child ON task_relationships (child_id);

CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id INTEGER NOT NULL,
    depends_on_id INTEGER NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    PRIMARY KEY (task_id, depends_on_id),
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE,
    FOREIGN KEY (depends_on_id) REFERENCES tasks(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_dependencies_blocker ON task_dependencies (depends_on_id);
"""

# (table, source column, target column) per relation.
EDGE_TABLES = {
    EdgeKind.LISTED_UNDER: ("task_relationships", "parent_id", "child_id"),
    EdgeKind.DEPENDS_ON: ("task_dependencies", "task_id", "depends_on_id"),
}

_TASK_COLUMNS = ("sync_id",) + TASK_DATA_FIELDS + ("sync_status",)


class EdgeApply(str, Enum):
    """Outcome of applying one remote edge to the local graph."""

    ADDED = "added"
    CONFIRMED = "confirmed"
    SKIPPED = "skipped"
    REJECTED = "rejected"


class GraphStore:
    """The local task graph.

    Args:
        path: SQLite database file, or ":memory:".
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        path: Union[str, Path],
        clock: Callable[[], int] = now_ms,
    ):
        self.path = path
        self._clock = clock
        self._lock = threading.RLock()
        self._in_transaction = False
        self._listeners: list[Callable[[], None]] = []

        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(path), check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        if str(path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(SCHEMA + OUTBOX_SCHEMA)
        self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

        self.outbox = Outbox(self)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "GraphStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @contextmanager
    def transaction(self, notify: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a block atomically.

        Nested calls join the outer transaction. Any exception rolls
        the whole unit back. Listeners run after a successful commit
        unless ``notify`` is False.
        """
        with self._lock:
            if self._in_transaction:
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            finally:
                self._in_transaction = False
        if notify:
            self._notify_listeners()

    def query(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        """Run a read-only statement and return all rows."""
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` after every committed local mutation."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify_listeners(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as exc:
                logger.error("Store listener failed: %s", exc)

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(**dict(row))

    def _get(self, conn: sqlite3.Connection, task_id: int) -> Optional[Task]:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def _require(self, conn: sqlite3.Connection, task_id: int) -> Task:
        task = self._get(conn, task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _exists(self, conn: sqlite3.Connection, task_id: int) -> bool:
        return conn.execute(
            "SELECT 1 FROM tasks WHERE id = ?", (task_id,)
        ).fetchone() is not None

    def _local_id(self, conn: sqlite3.Connection, sync_id: str) -> Optional[int]:
        row = conn.execute(
            "SELECT id FROM tasks WHERE sync_id = ?", (sync_id,)
        ).fetchone()
        return row[0] if row else None

    def _sync_ids(self, conn: sqlite3.Connection, a: int, b: int) -> tuple[str, str]:
        return self._require(conn, a).sync_id, self._require(conn, b).sync_id

    def _insert_task(
        self, conn: sqlite3.Connection, task: Task, keep_id: bool = False
    ) -> int:
        values = task.model_dump(include=set(_TASK_COLUMNS), mode="json")
        columns = list(_TASK_COLUMNS)
        if keep_id and task.id is not None:
            columns.insert(0, "id")
            values["id"] = task.id
        placeholders = ", ".join("?" for _ in columns)
        cursor = conn.execute(
            f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({placeholders})",
            [values[c] for c in columns],
        )
        return task.id if keep_id and task.id is not None else cursor.lastrowid

    def _next_updated_at(self, previous: Optional[int]) -> int:
        now = self._clock()
        if previous is not None and now <= previous:
            return previous + 1
        return now

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------

    def _reachable(
        self, conn: sqlite3.Connection, kind: EdgeKind, start: int, goal: int
    ) -> bool:
        """True if ``goal`` is reachable from ``start`` along ``kind`` edges."""
        table, src, tgt = EDGE_TABLES[kind]
        row = conn.execute(
            f"""
            WITH RECURSIVE reach(id) AS (
                SELECT {tgt} FROM {table} WHERE {src} = ?
                UNION
                SELECT e.{tgt} FROM {table} e
                INNER JOIN reach r ON e.{src} = r.id
            )
            SELECT 1 FROM reach WHERE id = ? LIMIT 1
            """,
            (start, goal),
        ).fetchone()
        return row is not None

    def _would_cycle(
        self, conn: sqlite3.Connection, kind: EdgeKind, source: int, target: int
    ) -> bool:
        return source == target or self._reachable(conn, kind, target, source)

    def has_path(self, from_id: int, to_id: int) -> bool:
        """True if ``to_id`` is a descendant of ``from_id`` (listed-under)."""
        with self._lock:
            return self._reachable(self._conn, EdgeKind.LISTED_UNDER, from_id, to_id)

    def has_dependency_path(self, from_id: int, to_id: int) -> bool:
        """True if ``from_id`` transitively depends on ``to_id``."""
        with self._lock:
            return self._reachable(self._conn, EdgeKind.DEPENDS_ON, from_id, to_id)

    # ------------------------------------------------------------------
    # Edge primitives (call inside a transaction)
    # ------------------------------------------------------------------

    def _link(
        self, conn: sqlite3.Connection, kind: EdgeKind, source: int, target: int
    ) -> bool:
        self._require(conn, source)
        self._require(conn, target)
        if self._would_cycle(conn, kind, source, target):
            raise StructuralViolation(kind.value, source, target)

        table, src, tgt = EDGE_TABLES[kind]
        cursor = conn.execute(
            f"INSERT OR IGNORE INTO {table} ({src}, {tgt}, sync_status) VALUES (?, ?, ?)",
            (source, target, SyncStatus.PENDING.value),
        )
        if cursor.rowcount == 0:
            return False
        key1, key2 = self._sync_ids(conn, source, target)
        self.outbox.enqueue(
            conn, EntityType.for_edge(kind), OutboxAction.ADD, key1, key2
        )
        return True

    def _unlink(
        self, conn: sqlite3.Connection, kind: EdgeKind, source: int, target: int
    ) -> bool:
        table, src, tgt = EDGE_TABLES[kind]
        cursor = conn.execute(
            f"DELETE FROM {table} WHERE {src} = ? AND {tgt} = ?", (source, target)
        )
        if cursor.rowcount == 0:
            return False
        key1, key2 = self._sync_ids(conn, source, target)
        self.outbox.enqueue(
            conn, EntityType.for_edge(kind), OutboxAction.REMOVE, key1, key2
        )
        return True

    def _relink(
        self, conn: sqlite3.Connection, kind: EdgeKind, source: int, target: int
    ) -> bool:
        """Re-create an edge during undo, skipping ones that can no longer exist."""
        if not (self._exists(conn, source) and self._exists(conn, target)):
            return False
        try:
            return self._link(conn, kind, source, target)
        except StructuralViolation as exc:
            logger.warning("Not restoring edge: %s", exc)
            return False

    def _edge_ids(
        self, conn: sqlite3.Connection, kind: EdgeKind, task_id: int, outgoing: bool
    ) -> list[int]:
        table, src, tgt = EDGE_TABLES[kind]
        select, where = (tgt, src) if outgoing else (src, tgt)
        rows = conn.execute(
            f"SELECT {select} FROM {table} WHERE {where} = ?", (task_id,)
        ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Structural operations
    # ------------------------------------------------------------------

    def link_edge(self, parent_id: int, child_id: int) -> bool:
        """List ``child_id`` under ``parent_id``.

        Raises:
            StructuralViolation: If the child is already an ancestor of
                the parent, or both ids are the same task.
            TaskNotFound: If either task does not exist.

        Returns:
            False if the edge already existed.
        """
        with self.transaction() as conn:
            return self._link(conn, EdgeKind.LISTED_UNDER, parent_id, child_id)

    def unlink_edge(self, parent_id: int, child_id: int) -> bool:
        with self.transaction() as conn:
            return self._unlink(conn, EdgeKind.LISTED_UNDER, parent_id, child_id)

    def move_task(self, task_id: int, old_parent_id: int, new_parent_id: int) -> bool:
        """Move a task from one parent to another in one transaction."""
        with self.transaction() as conn:
            self._link(conn, EdgeKind.LISTED_UNDER, new_parent_id, task_id)
            return self._unlink(conn, EdgeKind.LISTED_UNDER, old_parent_id, task_id)

    def add_dependency(self, task_id: int, blocker_id: int) -> bool:
        """Make ``task_id`` depend on ``blocker_id``.

        Same contract as link_edge, over the depends-on relation.
        """
        with self.transaction() as conn:
            return self._link(conn, EdgeKind.DEPENDS_ON, task_id, blocker_id)

    def remove_dependency(self, task_id: int, blocker_id: int) -> bool:
        with self.transaction() as conn:
            return self._unlink(conn, EdgeKind.DEPENDS_ON, task_id, blocker_id)

    def add_task(self, name: str, parent_ids: Iterable[int] = ()) -> Task:
        """Create a task, optionally listed under existing parents."""
        with self.transaction() as conn:
            task = self._new_task(conn, name)
            for parent_id in dict.fromkeys(parent_ids):
                self._link(conn, EdgeKind.LISTED_UNDER, parent_id, task.id)
        return task

    def add_tasks_batch(
        self, names: Iterable[str], parent_id: Optional[int] = None
    ) -> list[Task]:
        """Insert many tasks in a single transaction."""
        created: list[Task] = []
        with self.transaction() as conn:
            for name in names:
                task = self._new_task(conn, name)
                if parent_id is not None:
                    self._link(conn, EdgeKind.LISTED_UNDER, parent_id, task.id)
                created.append(task)
        return created

    def _new_task(self, conn: sqlite3.Connection, name: str) -> Task:
        now = self._clock()
        task = Task(name=name, created_at=now, updated_at=now)
        task.id = self._insert_task(conn, task)
        return task

    def _delete_task(self, conn: sqlite3.Connection, task_id: int) -> DeletedTask:
        task = self._require(conn, task_id)
        deleted = DeletedTask(
            task=task,
            parent_ids=self._edge_ids(conn, EdgeKind.LISTED_UNDER, task_id, outgoing=False),
            child_ids=self._edge_ids(conn, EdgeKind.LISTED_UNDER, task_id, outgoing=True),
            blocker_ids=self._edge_ids(conn, EdgeKind.DEPENDS_ON, task_id, outgoing=True),
            dependent_ids=self._edge_ids(conn, EdgeKind.DEPENDS_ON, task_id, outgoing=False),
        )
        for parent_id in deleted.parent_ids:
            self._unlink(conn, EdgeKind.LISTED_UNDER, parent_id, task_id)
        for child_id in deleted.child_ids:
            self._unlink(conn, EdgeKind.LISTED_UNDER, task_id, child_id)
        for blocker_id in deleted.blocker_ids:
            self._unlink(conn, EdgeKind.DEPENDS_ON, task_id, blocker_id)
        for dependent_id in deleted.dependent_ids:
            self._unlink(conn, EdgeKind.DEPENDS_ON, dependent_id, task_id)

        conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        self.outbox.enqueue(conn, EntityType.TASK, OutboxAction.REMOVE, task.sync_id)
        return deleted

    def delete_task(self, task_id: int) -> DeletedTask:
        """Hard-delete a task and its incident edges.

        Returns:
            A snapshot that restore_task() can undo.
        """
        with self.transaction() as conn:
            return self._delete_task(conn, task_id)

    def delete_task_and_reparent(self, task_id: int) -> DeletedTask:
        """Delete a task and list each of its children under each of its parents."""
        with self.transaction() as conn:
            deleted = self._delete_task(conn, task_id)
            for parent_id in deleted.parent_ids:
                for child_id in deleted.child_ids:
                    try:
                        if self._link(conn, EdgeKind.LISTED_UNDER, parent_id, child_id):
                            deleted.added_links.append((parent_id, child_id))
                    except StructuralViolation as exc:
                        logger.warning("Skipping reparent link: %s", exc)
            return deleted

    def _restore_row(self, conn: sqlite3.Connection, task: Task) -> None:
        self.outbox.cancel_removals_for(conn, task.sync_id)
        restored = task.model_copy(
            update={
                "sync_status": SyncStatus.PENDING,
                "updated_at": self._next_updated_at(task.updated_at),
            }
        )
        self._insert_task(conn, restored, keep_id=True)

    def restore_task(self, deleted: DeletedTask) -> Task:
        """Undo delete_task() as one atomic command.

        Cancels every pending "remove" that names the task, re-inserts
        the row as pending so the next push re-creates it remotely, and
        re-links surviving neighbours.
        """
        with self.transaction() as conn:
            for parent_id, child_id in deleted.added_links:
                self._unlink(conn, EdgeKind.LISTED_UNDER, parent_id, child_id)
            self._restore_row(conn, deleted.task)
            task_id = deleted.task.id
            for parent_id in deleted.parent_ids:
                self._relink(conn, EdgeKind.LISTED_UNDER, parent_id, task_id)
            for child_id in deleted.child_ids:
                self._relink(conn, EdgeKind.LISTED_UNDER, task_id, child_id)
            for blocker_id in deleted.blocker_ids:
                self._relink(conn, EdgeKind.DEPENDS_ON, task_id, blocker_id)
            for dependent_id in deleted.dependent_ids:
                self._relink(conn, EdgeKind.DEPENDS_ON, dependent_id, task_id)
            return self._require(conn, task_id)

    def delete_subtree(self, task_id: int) -> DeletedSubtree:
        """Delete a task and every descendant in one transaction."""
        with self.transaction() as conn:
            root = self._require(conn, task_id)
            ids = [root.id] + [
                r[0]
                for r in conn.execute(
                    """
                    WITH RECURSIVE descendants(id) AS (
                        SELECT child_id FROM task_relationships WHERE parent_id = ?
                        UNION
                        SELECT tr.child_id FROM task_relationships tr
                        INNER JOIN descendants d ON tr.parent_id = d.id
                    )
                    SELECT id FROM descendants
                    """,
                    (task_id,),
                ).fetchall()
            ]
            subtree = DeletedSubtree(tasks=[self._require(conn, i) for i in ids])
            seen: dict[EdgeKind, set] = {k: set() for k in EdgeKind}
            for i in ids:
                for kind, bucket in (
                    (EdgeKind.LISTED_UNDER, subtree.listed_under),
                    (EdgeKind.DEPENDS_ON, subtree.depends_on),
                ):
                    edges = [(i, t) for t in self._edge_ids(conn, kind, i, outgoing=True)]
                    edges += [(s, i) for s in self._edge_ids(conn, kind, i, outgoing=False)]
                    for edge in edges:
                        if edge not in seen[kind]:
                            seen[kind].add(edge)
                            bucket.append(edge)
            for i in ids:
                self._delete_task(conn, i)
            return subtree

    def restore_subtree(self, deleted: DeletedSubtree) -> None:
        """Undo delete_subtree() as one atomic command."""
        with self.transaction() as conn:
            for task in deleted.tasks:
                self._restore_row(conn, task)
            for parent_id, child_id in deleted.listed_under:
                self._relink(conn, EdgeKind.LISTED_UNDER, parent_id, child_id)
            for task_id, blocker_id in deleted.depends_on:
                self._relink(conn, EdgeKind.DEPENDS_ON, task_id, blocker_id)

    # ------------------------------------------------------------------
    # Task field mutations
    # ------------------------------------------------------------------

    def _update(self, task_id: int, **fields) -> Task:
        with self.transaction() as conn:
            task = self._require(conn, task_id)
            fields["sync_status"] = SyncStatus.PENDING.value
            fields["updated_at"] = self._next_updated_at(task.updated_at)
            assignments = ", ".join(f"{column} = ?" for column in fields)
            conn.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ?",
                [*fields.values(), task_id],
            )
            return self._require(conn, task_id)

    def rename_task(self, task_id: int, name: str) -> Task:
        return self._update(task_id, name=name)

    def set_url(self, task_id: int, url: Optional[str]) -> Task:
        return self._update(task_id, url=url)

    def set_priority(self, task_id: int, priority: int) -> Task:
        return self._update(task_id, priority=priority)

    def set_quick_task(self, task_id: int, quick_task: int) -> Task:
        return self._update(task_id, quick_task=quick_task)

    def complete_task(self, task_id: int) -> Task:
        return self._update(task_id, completed_at=self._clock())

    def uncomplete_task(self, task_id: int) -> Task:
        return self._update(task_id, completed_at=None)

    def skip_task(self, task_id: int) -> Task:
        return self._update(task_id, skipped_at=self._clock())

    def unskip_task(self, task_id: int) -> Task:
        return self._update(task_id, skipped_at=None)

    def start_task(self, task_id: int) -> Task:
        return self._update(task_id, started_at=self._clock())

    def unstart_task(self, task_id: int) -> Task:
        return self._update(task_id, started_at=None)

    def mark_worked_on(self, task_id: int) -> Task:
        return self._update(task_id, last_worked_at=self._clock())

    def unmark_worked_on(self, task_id: int, restore_to: Optional[int] = None) -> Task:
        """Clear today's work mark, or put back the previous timestamp."""
        return self._update(task_id, last_worked_at=restore_to)

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def _tasks(self, sql: str, params: Iterable = ()) -> list[Task]:
        return [self._row_to_task(r) for r in self.query(sql, params)]

    def get_task(self, task_id: int) -> Optional[Task]:
        with self._lock:
            return self._get(self._conn, task_id)

    def get_task_by_sync_id(self, sync_id: str) -> Optional[Task]:
        tasks = self._tasks("SELECT * FROM tasks WHERE sync_id = ?", (sync_id,))
        return tasks[0] if tasks else None

    def all_tasks(self, include_completed: bool = False) -> list[Task]:
        where = "" if include_completed else "WHERE completed_at IS NULL"
        return self._tasks(f"SELECT * FROM tasks {where} ORDER BY created_at ASC, id ASC")

    def completed_tasks(self) -> list[Task]:
        """Completed tasks, most recent first."""
        return self._tasks(
            "SELECT * FROM tasks WHERE completed_at IS NOT NULL "
            "ORDER BY completed_at DESC"
        )

    def root_tasks(self) -> list[Task]:
        """Incomplete tasks that are not listed under anything."""
        return self._tasks(
            """
            SELECT t.* FROM tasks t
            WHERE t.id NOT IN (SELECT child_id FROM task_relationships)
            AND t.completed_at IS NULL
            ORDER BY t.created_at ASC, t.id ASC
            """
        )

    def children_of(self, task_id: int) -> list[Task]:
        """Incomplete tasks listed directly under ``task_id``."""
        return self._tasks(
            """
            SELECT t.* FROM tasks t
            INNER JOIN task_relationships tr ON t.id = tr.child_id
            WHERE tr.parent_id = ? AND t.completed_at IS NULL
            ORDER BY t.created_at ASC, t.id ASC
            """,
            (task_id,),
        )

    def parents_of(self, task_id: int) -> list[Task]:
        return self._tasks(
            """
            SELECT t.* FROM tasks t
            INNER JOIN task_relationships tr ON t.id = tr.parent_id
            WHERE tr.child_id = ? AND t.completed_at IS NULL
            ORDER BY t.created_at ASC, t.id ASC
            """,
            (task_id,),
        )

    def parent_ids(self, task_id: int) -> list[int]:
        with self._lock:
            return self._edge_ids(self._conn, EdgeKind.LISTED_UNDER, task_id, outgoing=False)

    def child_ids(self, task_id: int) -> list[int]:
        with self._lock:
            return self._edge_ids(self._conn, EdgeKind.LISTED_UNDER, task_id, outgoing=True)

    def leaf_tasks(self) -> list[Task]:
        """Incomplete tasks with no incomplete children."""
        return self._tasks(
            """
            SELECT t.* FROM tasks t
            WHERE t.completed_at IS NULL
            AND NOT EXISTS (
                SELECT 1 FROM task_relationships tr
                INNER JOIN tasks c ON c.id = tr.child_id
                WHERE tr.parent_id = t.id AND c.completed_at IS NULL
            )
            ORDER BY t.created_at ASC, t.id ASC
            """
        )

    def blockers_of(self, task_id: int) -> list[Task]:
        return self._tasks(
            """
            SELECT t.* FROM tasks t
            INNER JOIN task_dependencies td ON t.id = td.depends_on_id
            WHERE td.task_id = ?
            ORDER BY t.created_at ASC, t.id ASC
            """,
            (task_id,),
        )

    def blocked_by_names(self, task_ids: Iterable[int]) -> dict[int, str]:
        """Blocked task id -> name of one unfinished blocker."""
        ids = list(task_ids)
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = self.query(
            f"""
            SELECT td.task_id, b.name FROM task_dependencies td
            INNER JOIN tasks b ON b.id = td.depends_on_id
            WHERE b.completed_at IS NULL AND td.task_id IN ({placeholders})
            ORDER BY b.created_at ASC
            """,
            ids,
        )
        result: dict[int, str] = {}
        for row in rows:
            result.setdefault(row[0], row[1])
        return result

    def blocked_task_ids(self, task_ids: Iterable[int]) -> set[int]:
        """The subset of ``task_ids`` that wait on an unfinished blocker."""
        return set(self.blocked_by_names(task_ids))

    def ancestor_path(self, task_id: int) -> list[Task]:
        """One root-to-task path, for re-resolving a hierarchy location.

        Follows the oldest parent at each level.
        """
        path: list[Task] = []
        seen: set[int] = set()
        current = self.get_task(task_id)
        while current is not None and current.id not in seen:
            seen.add(current.id)
            path.append(current)
            rows = self.query(
                """
                SELECT t.* FROM tasks t
                INNER JOIN task_relationships tr ON t.id = tr.parent_id
                WHERE tr.child_id = ?
                ORDER BY t.created_at ASC, t.id ASC LIMIT 1
                """,
                (current.id,),
            )
            current = self._row_to_task(rows[0]) if rows else None
        path.reverse()
        return path

    def edges(self, kind: EdgeKind) -> list[Edge]:
        table, src, tgt = EDGE_TABLES[kind]
        rows = self.query(f"SELECT {src}, {tgt} FROM {table} ORDER BY {src}, {tgt}")
        return [Edge(r[0], r[1]) for r in rows]

    def edge_status(self, kind: EdgeKind, source: int, target: int) -> Optional[SyncStatus]:
        """Provenance of one edge, or None if it does not exist."""
        table, src, tgt = EDGE_TABLES[kind]
        rows = self.query(
            f"SELECT sync_status FROM {table} WHERE {src} = ? AND {tgt} = ?",
            (source, target),
        )
        return SyncStatus(rows[0][0]) if rows else None

    # ------------------------------------------------------------------
    # Sync-facing operations
    # ------------------------------------------------------------------

    def pending_tasks(self) -> list[Task]:
        return self._tasks(
            "SELECT * FROM tasks WHERE sync_status = ? ORDER BY id ASC",
            (SyncStatus.PENDING.value,),
        )

    def all_tasks_with_sync_id(self) -> list[Task]:
        return self._tasks("SELECT * FROM tasks ORDER BY id ASC")

    def mark_tasks_synced(self, tasks: Iterable[Task]) -> int:
        """Mark pushed rows synced.

        A row edited after it was read for the push keeps its pending
        status, because its ``updated_at`` no longer matches.
        """
        count = 0
        with self.transaction(notify=False) as conn:
            for task in tasks:
                count += conn.execute(
                    "UPDATE tasks SET sync_status = ? WHERE id = ? AND updated_at = ?",
                    (SyncStatus.SYNCED.value, task.id, task.updated_at),
                ).rowcount
        return count

    def sync_edges(self, kind: EdgeKind, status: Optional[SyncStatus] = None) -> list[SyncEdge]:
        """Edges of one relation as sync-id pairs, optionally by provenance."""
        table, src, tgt = EDGE_TABLES[kind]
        sql = f"""
            SELECT a.sync_id, b.sync_id FROM {table} e
            INNER JOIN tasks a ON a.id = e.{src}
            INNER JOIN tasks b ON b.id = e.{tgt}
        """
        params: tuple = ()
        if status is not None:
            sql += " WHERE e.sync_status = ?"
            params = (status.value,)
        return [SyncEdge(r[0], r[1]) for r in self.query(sql, params)]

    def synced_edges(self, kind: EdgeKind) -> list[SyncEdge]:
        return self.sync_edges(kind, SyncStatus.SYNCED)

    def mark_edge_synced(self, kind: EdgeKind, key1: str, key2: str) -> bool:
        table, src, tgt = EDGE_TABLES[kind]
        with self.transaction(notify=False) as conn:
            a, b = self._local_id(conn, key1), self._local_id(conn, key2)
            if a is None or b is None:
                return False
            return conn.execute(
                f"UPDATE {table} SET sync_status = ? WHERE {src} = ? AND {tgt} = ?",
                (SyncStatus.SYNCED.value, a, b),
            ).rowcount == 1

    def mark_edges_synced(self, kind: EdgeKind, edges: Iterable[SyncEdge]) -> int:
        """Mark uploaded edges synced.

        Edges removed since they were read are gone and stay gone. Edges
        with an undelivered "add" entry stay pending until it is consumed.
        """
        table, src, tgt = EDGE_TABLES[kind]
        entity = EntityType.for_edge(kind)
        count = 0
        with self.transaction(notify=False) as conn:
            for edge in edges:
                a, b = self._local_id(conn, edge.source), self._local_id(conn, edge.target)
                if a is None or b is None:
                    continue
                if self.outbox.pending_action(entity, OutboxAction.ADD, edge.source, edge.target):
                    continue
                count += conn.execute(
                    f"UPDATE {table} SET sync_status = ? "
                    f"WHERE {src} = ? AND {tgt} = ? AND sync_status = ?",
                    (SyncStatus.SYNCED.value, a, b, SyncStatus.PENDING.value),
                ).rowcount
        return count

    def mark_all_synced(self) -> None:
        with self.transaction(notify=False) as conn:
            for table in ("tasks", "task_relationships", "task_dependencies"):
                conn.execute(
                    f"UPDATE {table} SET sync_status = ?", (SyncStatus.SYNCED.value,)
                )

    def upsert_from_remote(self, remote: Task) -> bool:
        """Apply one remote task copy with last-write-wins.

        A copy strictly newer than the local row replaces its fields and
        marks it synced. Equal or older copies are ignored. Unknown
        tasks are inserted, unless a local deletion is still waiting to
        be pushed.

        Returns:
            True if the local row changed.
        """
        with self.transaction(notify=False) as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE sync_id = ?", (remote.sync_id,)
            ).fetchone()
            if row is None:
                if self.outbox.pending_removal(EntityType.TASK, remote.sync_id):
                    return False
                incoming = remote.model_copy(
                    update={
                        "id": None,
                        "sync_status": SyncStatus.SYNCED,
                        "updated_at": remote.updated_at or remote.created_at,
                    }
                )
                self._insert_task(conn, incoming)
                return True

            local = self._row_to_task(row)
            if (remote.updated_at or 0) <= (local.updated_at or 0):
                return False

            fields = remote.model_dump(include=set(TASK_DATA_FIELDS), mode="json")
            fields["sync_status"] = SyncStatus.SYNCED.value
            assignments = ", ".join(f"{column} = ?" for column in fields)
            conn.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ?",
                [*fields.values(), local.id],
            )
            return True

    def apply_remote_edge(self, kind: EdgeKind, key1: str, key2: str) -> EdgeApply:
        """Bring one edge from the remote snapshot into the local graph.

        The edge is re-validated against the local graph. One that would
        close a local cycle is dropped, whatever produced it remotely.
        """
        table, src, tgt = EDGE_TABLES[kind]
        with self.transaction(notify=False) as conn:
            source, target = self._local_id(conn, key1), self._local_id(conn, key2)
            if source is None or target is None:
                return EdgeApply.SKIPPED

            row = conn.execute(
                f"SELECT sync_status FROM {table} WHERE {src} = ? AND {tgt} = ?",
                (source, target),
            ).fetchone()
            if row is not None:
                # An undelivered local "add" keeps the edge pending; the
                # push engine flips it once the entry is consumed.
                unconfirmed = self.outbox.pending_action(
                    EntityType.for_edge(kind), OutboxAction.ADD, key1, key2
                )
                if row[0] != SyncStatus.SYNCED.value and not unconfirmed:
                    conn.execute(
                        f"UPDATE {table} SET sync_status = ? WHERE {src} = ? AND {tgt} = ?",
                        (SyncStatus.SYNCED.value, source, target),
                    )
                return EdgeApply.CONFIRMED

            if self.outbox.pending_removal(EntityType.for_edge(kind), key1, key2):
                return EdgeApply.SKIPPED

            if self._would_cycle(conn, kind, source, target):
                logger.warning(
                    "Dropping remote %s edge %s -> %s: would create a local cycle",
                    kind.value, key1, key2,
                )
                return EdgeApply.REJECTED

            conn.execute(
                f"INSERT INTO {table} ({src}, {tgt}, sync_status) VALUES (?, ?, ?)",
                (source, target, SyncStatus.SYNCED.value),
            )
            return EdgeApply.ADDED

    def remove_edge_from_remote(self, kind: EdgeKind, key1: str, key2: str) -> bool:
        """Delete a synced local edge that vanished remotely.

        Pending edges are never touched. No outbox entry is written:
        the remote already lacks the edge.
        """
        table, src, tgt = EDGE_TABLES[kind]
        with self.transaction(notify=False) as conn:
            source, target = self._local_id(conn, key1), self._local_id(conn, key2)
            if source is None or target is None:
                return False
            return conn.execute(
                f"DELETE FROM {table} WHERE {src} = ? AND {tgt} = ? AND sync_status = ?",
                (source, target, SyncStatus.SYNCED.value),
            ).rowcount == 1

    def wipe(self) -> None:
        """Delete all local tasks, edges, and outbox entries."""
        with self.transaction(notify=False) as conn:
            conn.execute("DELETE FROM tasks")
            self.outbox.clear(conn)
