"""
Push Engine: deliver local changes to the remote store.

A pass has two phases:

    1. pending task rows   batched upserts, each batch marked synced
                           only after its commit succeeded
    2. outbox entries      one at a time, oldest first, consumed only
                           after the remote confirmed them

The first failure raises and ends the pass. Whatever was not confirmed
stays pending or queued, so the next pass picks it up again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..auth import Credentials
from ..models import EdgeKind, EntityType, OutboxAction, OutboxEntry, SyncEdge
from ..store import GraphStore
from .remote import RemoteResult, RemoteStore

logger = logging.getLogger("taskroulette.sync.push")


@dataclass
class PushResult:
    """Counts for one push pass."""

    tasks_pushed: int = 0
    entries_delivered: int = 0
    entries_superseded: int = 0

    @property
    def total(self) -> int:
        return self.tasks_pushed + self.entries_delivered


def _edge_kind(entity_type: EntityType) -> Optional[EdgeKind]:
    if entity_type == EntityType.TASK:
        return None
    return EdgeKind(entity_type.value)


class PushEngine:
    """Pushes pending rows and drains the outbox.

    Args:
        store: The local graph.
        remote: Where changes go.
        batch_size: Task rows per remote commit.
    """

    def __init__(self, store: GraphStore, remote: RemoteStore, batch_size: int = 500):
        self.store = store
        self.remote = remote
        self.batch_size = max(1, min(batch_size, remote.batch_size))

    def push(self, creds: Credentials) -> PushResult:
        """Run one push pass.

        Raises:
            SyncError: On the first remote failure. Everything already
                confirmed stays confirmed.
        """
        result = PushResult()
        result.tasks_pushed = self._push_pending_tasks(creds)
        self._drain_outbox(creds, result)
        if result.total:
            logger.info(
                "Pushed %d task(s) and %d queued operation(s)",
                result.tasks_pushed, result.entries_delivered,
            )
        return result

    def push_all(self, creds: Credentials) -> PushResult:
        """Upload the entire local graph, then drain the outbox.

        Used for the first sync of a device that already has data.
        """
        result = PushResult()
        tasks = self.store.all_tasks_with_sync_id()
        for start in range(0, len(tasks), self.batch_size):
            batch = tasks[start:start + self.batch_size]
            self.remote.put_tasks(creds, batch)
            self.store.mark_tasks_synced(batch)
            result.tasks_pushed += len(batch)

        for kind in EdgeKind:
            edges = self.store.sync_edges(kind)
            for start in range(0, len(edges), self.batch_size):
                batch = edges[start:start + self.batch_size]
                self.remote.put_edges(creds, kind, batch)
                self.store.mark_edges_synced(kind, batch)

        self._drain_outbox(creds, result)
        logger.info("Uploaded %d task(s) for initial migration", result.tasks_pushed)
        return result

    def _push_pending_tasks(self, creds: Credentials) -> int:
        pending = self.store.pending_tasks()
        pushed = 0
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            self.remote.put_tasks(creds, batch)
            self.store.mark_tasks_synced(batch)
            pushed += len(batch)
        return pushed

    def _drain_outbox(self, creds: Credentials, result: PushResult) -> None:
        for entry in self.store.outbox.peek():
            self._deliver(creds, entry)
            if self.store.outbox.consume(entry.id):
                result.entries_delivered += 1
                if entry.action == OutboxAction.ADD and entry.entity_type != EntityType.TASK:
                    self.store.mark_edge_synced(
                        EdgeKind(entry.entity_type.value), entry.key1, entry.key2
                    )
            else:
                # Replaced by a newer operation while in flight; that one
                # is delivered on a later pass.
                result.entries_superseded += 1

    def _deliver(self, creds: Credentials, entry: OutboxEntry) -> RemoteResult:
        kind = _edge_kind(entry.entity_type)
        if kind is None:
            if entry.action == OutboxAction.REMOVE:
                return self.remote.delete_task(creds, entry.key1)
            # Task upserts travel through the pending-row phase.
            return RemoteResult.SUCCESS

        edge = SyncEdge(entry.key1, entry.key2)
        if entry.action == OutboxAction.ADD:
            return self.remote.put_edges(creds, kind, [edge])
        return self.remote.delete_edge(creds, kind, edge)
