"""
Pydantic models for tasks, edges, and outbox entries.

All timestamps are integer epoch milliseconds, the same unit the
remote document store uses on the wire.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import NamedTuple, Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_sync_id() -> str:
    """Generate a globally unique, immutable sync identifier."""
    return uuid.uuid4().hex


class SyncStatus(str, Enum):
    """Whether a local record matches confirmed remote state."""

    PENDING = "pending"
    SYNCED = "synced"


class EdgeKind(str, Enum):
    """The two independent edge relations of the task graph."""

    LISTED_UNDER = "listed_under"
    DEPENDS_ON = "depends_on"


class EntityType(str, Enum):
    """What an outbox entry refers to."""

    TASK = "task"
    LISTED_UNDER = "listed_under"
    DEPENDS_ON = "depends_on"

    @classmethod
    def for_edge(cls, kind: EdgeKind) -> "EntityType":
        return cls(kind.value)


class OutboxAction(str, Enum):
    """Remote operation recorded by an outbox entry."""

    ADD = "add"
    REMOVE = "remove"


class Task(BaseModel):
    """A node of the task graph.

    ``id`` is assigned by the local database and never leaves the
    device. ``sync_id`` is assigned once at creation and identifies the
    task on every replica.
    """

    id: Optional[int] = None
    sync_id: str = Field(default_factory=new_sync_id)
    name: str
    created_at: int = Field(default_factory=now_ms)
    completed_at: Optional[int] = None
    started_at: Optional[int] = None
    skipped_at: Optional[int] = None
    last_worked_at: Optional[int] = None
    url: Optional[str] = None
    priority: int = 0
    quick_task: int = 0
    sync_status: SyncStatus = SyncStatus.PENDING
    updated_at: Optional[int] = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def is_started(self) -> bool:
        return self.started_at is not None

    @property
    def is_skipped(self) -> bool:
        return self.skipped_at is not None

    @property
    def worked_on_today(self) -> bool:
        """True if last_worked_at falls on the current local calendar day."""
        if self.last_worked_at is None:
            return False
        worked = datetime.fromtimestamp(self.last_worked_at / 1000)
        return worked.date() == datetime.now().date()


# Fields copied verbatim between replicas. Local id, sync status and
# sync id are replica bookkeeping and never overwritten by a pull.
TASK_DATA_FIELDS = (
    "name",
    "created_at",
    "completed_at",
    "started_at",
    "skipped_at",
    "last_worked_at",
    "url",
    "priority",
    "quick_task",
    "updated_at",
)


class Edge(NamedTuple):
    """An edge between two tasks, by local id."""

    source: int
    target: int


class SyncEdge(NamedTuple):
    """An edge between two tasks, by sync id.

    For listed-under edges ``source`` is the parent and ``target`` the
    child. For depends-on edges ``source`` is the blocked task and
    ``target`` its blocker.
    """

    source: str
    target: str


class OutboxEntry(BaseModel):
    """A durable record of one remote operation not yet confirmed."""

    id: int
    entity_type: EntityType
    action: OutboxAction
    key1: str
    key2: str = ""
    created_at: int


class DeletedTask(BaseModel):
    """Everything needed to undo a task deletion.

    ``added_links`` holds listed-under edges created by reparenting,
    which the undo removes again.
    """

    task: Task
    parent_ids: list[int] = Field(default_factory=list)
    child_ids: list[int] = Field(default_factory=list)
    blocker_ids: list[int] = Field(default_factory=list)
    dependent_ids: list[int] = Field(default_factory=list)
    added_links: list[tuple[int, int]] = Field(default_factory=list)


class DeletedSubtree(BaseModel):
    """Everything needed to undo a subtree deletion."""

    tasks: list[Task] = Field(default_factory=list)
    listed_under: list[tuple[int, int]] = Field(default_factory=list)
    depends_on: list[tuple[int, int]] = Field(default_factory=list)
