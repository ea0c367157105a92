"""
Outbox: the durable log of remote operations not yet confirmed.

Entries are written by the graph store inside the same SQLite
transaction as the change they describe, so the local graph and the
outbox can never disagree, not even after a crash.

The push engine reads with peek() and deletes with consume() only
after the remote confirmed the operation. A crash mid-drain leaves
the undelivered tail in place for the next pass.

At most one live entry exists per (entity, key1, key2). Enqueueing an
"add" replaces a pending "remove" for the same key and vice versa, so
the final remote state does not depend on delivery order.
"""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Optional

from .models import EntityType, OutboxAction, OutboxEntry, now_ms

if TYPE_CHECKING:
    from .store import GraphStore

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    action TEXT NOT NULL,
    key1 TEXT NOT NULL,
    key2 TEXT NOT NULL DEFAULT '',
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_key
    ON sync_queue (entity_type, key1, key2);
"""


class Outbox:
    """Queue view over the ``sync_queue`` table of a GraphStore."""

    def __init__(self, store: "GraphStore"):
        self._store = store

    def enqueue(
        self,
        conn: sqlite3.Connection,
        entity_type: EntityType,
        action: OutboxAction,
        key1: str,
        key2: str = "",
    ) -> int:
        """Record a remote operation.

        Must be called with the connection of an open store transaction.

        Returns:
            The new entry id.
        """
        conn.execute(
            "DELETE FROM sync_queue WHERE entity_type = ? AND key1 = ? AND key2 = ?",
            (entity_type.value, key1, key2),
        )
        cursor = conn.execute(
            "INSERT INTO sync_queue (entity_type, action, key1, key2, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (entity_type.value, action.value, key1, key2, now_ms()),
        )
        return cursor.lastrowid

    def cancel(
        self,
        conn: sqlite3.Connection,
        entity_type: EntityType,
        key1: str,
        key2: str = "",
        action: Optional[OutboxAction] = None,
    ) -> int:
        """Drop pending entries for one key. Returns how many were dropped."""
        sql = "DELETE FROM sync_queue WHERE entity_type = ? AND key1 = ? AND key2 = ?"
        params: list = [entity_type.value, key1, key2]
        if action is not None:
            sql += " AND action = ?"
            params.append(action.value)
        return conn.execute(sql, params).rowcount

    def cancel_removals_for(self, conn: sqlite3.Connection, sync_id: str) -> int:
        """Drop every pending "remove" that references a task's sync id.

        Covers the task document itself and every edge naming it on
        either end.
        """
        return conn.execute(
            "DELETE FROM sync_queue WHERE action = ? AND (key1 = ? OR key2 = ?)",
            (OutboxAction.REMOVE.value, sync_id, sync_id),
        ).rowcount

    def clear(self, conn: sqlite3.Connection) -> None:
        conn.execute("DELETE FROM sync_queue")

    def peek(self, limit: Optional[int] = None) -> list[OutboxEntry]:
        """Read pending entries, oldest first, without removing them."""
        sql = "SELECT * FROM sync_queue ORDER BY id ASC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        rows = self._store.query(sql, params)
        return [OutboxEntry(**dict(row)) for row in rows]

    def consume(self, entry_id: int) -> bool:
        """Delete one delivered entry.

        Returns:
            False if the entry was already gone (cancelled or replaced
            by a newer operation while it was in flight).
        """
        with self._store.transaction(notify=False) as conn:
            return conn.execute(
                "DELETE FROM sync_queue WHERE id = ?", (entry_id,)
            ).rowcount == 1

    def pending_action(
        self, entity_type: EntityType, action: OutboxAction, key1: str, key2: str = ""
    ) -> bool:
        """True if ``action`` for this key is still waiting to be pushed."""
        rows = self._store.query(
            "SELECT 1 FROM sync_queue WHERE entity_type = ? AND key1 = ? "
            "AND key2 = ? AND action = ? LIMIT 1",
            (entity_type.value, key1, key2, action.value),
        )
        return bool(rows)

    def pending_removal(
        self, entity_type: EntityType, key1: str, key2: str = ""
    ) -> bool:
        return self.pending_action(entity_type, OutboxAction.REMOVE, key1, key2)

    def __len__(self) -> int:
        rows = self._store.query("SELECT COUNT(*) FROM sync_queue")
        return rows[0][0]
