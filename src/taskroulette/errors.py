"""
Exception hierarchy for the graph store and the sync engine.

StructuralViolation is a caller mistake and is never retried.
Everything under SyncError aborts the current sync pass and leaves
durable state (outbox, pending flags, checkpoint) untouched for the
next attempt.
"""

from __future__ import annotations

from typing import Optional


class TaskRouletteError(Exception):
    """Base class for all taskroulette errors."""


class TaskNotFound(TaskRouletteError):
    """Raised when an operation names a task id that does not exist."""

    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class StructuralViolation(TaskRouletteError):
    """Raised when an edge would close a cycle in its relation."""

    def __init__(self, relation: str, source: int, target: int):
        super().__init__(
            f"Edge {source} -> {target} would create a cycle in {relation}"
        )
        self.relation = relation
        self.source = source
        self.target = target


class SyncError(TaskRouletteError):
    """Base class for failures that abort a sync pass."""


class TransientNetworkFailure(SyncError):
    """Timeout, refused connection, DNS failure, and friends."""


class AuthFailure(SyncError):
    """Token refresh or authorization failed.

    Attributes:
        permanent: True when the credentials were revoked and the user
            must sign in again. False for failures a later retry may fix.
    """

    def __init__(self, message: str, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


class RemoteProtocolError(SyncError):
    """The remote store answered with an unexpected non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
