"""
Pull Engine: bring remote changes into the local graph.

    1. tasks updated since the checkpoint   last-write-wins upserts
    2. full snapshot of both edge relations
    3. remote edges missing locally         re-validated, then inserted
    4. synced local edges missing remotely  deleted

Tasks land before edges so that edges between tasks created on another
device find both endpoints. Step 4 never touches an edge that is still
pending, so a local link made during the pass survives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..auth import Credentials
from ..models import EdgeKind, now_ms
from ..store import EdgeApply, GraphStore
from .remote import RemoteStore

logger = logging.getLogger("taskroulette.sync.pull")


@dataclass
class PullResult:
    """Outcome of one pull pass.

    ``started_at`` was captured before the first fetch. The caller
    stores it as the next checkpoint once the pass completed.
    """

    started_at: int
    tasks_fetched: int = 0
    tasks_applied: int = 0
    edges_added: dict = field(default_factory=dict)
    edges_removed: dict = field(default_factory=dict)
    edges_rejected: dict = field(default_factory=dict)
    edges_skipped: dict = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(
            self.tasks_applied
            or any(self.edges_added.values())
            or any(self.edges_removed.values())
        )


class PullEngine:
    """Applies the remote state to the local graph.

    Args:
        store: The local graph.
        remote: Where changes come from.
        clock: Epoch-ms clock used for the pass start time.
    """

    def __init__(
        self,
        store: GraphStore,
        remote: RemoteStore,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.remote = remote
        self._clock = clock

    def pull(self, creds: Credentials, checkpoint: Optional[int] = None) -> PullResult:
        """Run one pull pass.

        Args:
            creds: Identity and token for the remote calls.
            checkpoint: Only tasks updated strictly after this are
                fetched. None fetches everything.

        Raises:
            SyncError: On any remote failure. Already-applied writes
                are idempotent and stay.
        """
        result = PullResult(started_at=self._clock())

        for remote_task in self.remote.iter_tasks(creds, since=checkpoint):
            result.tasks_fetched += 1
            if self.store.upsert_from_remote(remote_task):
                result.tasks_applied += 1

        snapshots = {kind: set(self.remote.iter_edges(creds, kind)) for kind in EdgeKind}
        for kind, remote_edges in snapshots.items():
            self._reconcile_edges(kind, remote_edges, result)

        logger.info(
            "Pulled %d task(s), applied %d; edges added %s removed %s rejected %s",
            result.tasks_fetched,
            result.tasks_applied,
            sum(result.edges_added.values()),
            sum(result.edges_removed.values()),
            sum(result.edges_rejected.values()),
        )
        return result

    def _reconcile_edges(self, kind: EdgeKind, remote_edges: set, result: PullResult) -> None:
        added = rejected = skipped = removed = 0
        for edge in sorted(remote_edges):
            outcome = self.store.apply_remote_edge(kind, edge.source, edge.target)
            if outcome is EdgeApply.ADDED:
                added += 1
            elif outcome is EdgeApply.REJECTED:
                rejected += 1
            elif outcome is EdgeApply.SKIPPED:
                skipped += 1

        for edge in self.store.synced_edges(kind):
            if edge not in remote_edges:
                if self.store.remove_edge_from_remote(kind, edge.source, edge.target):
                    removed += 1

        result.edges_added[kind.value] = added
        result.edges_rejected[kind.value] = rejected
        result.edges_skipped[kind.value] = skipped
        result.edges_removed[kind.value] = removed
