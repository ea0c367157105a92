"""
Sync: keep the local graph and the cloud copy converging.

Push drains local changes, pull reconciles remote ones, and the
coordinator makes sure the two never run at the same time.

Backends: Firestore (REST) and a local directory (NAS, USB, tests).
"""

from .coordinator import SyncCoordinator, SyncState, create_coordinator
from .pull import PullEngine
from .push import PushEngine
from .remote import create_remote

__all__ = [
    "PullEngine",
    "PushEngine",
    "SyncCoordinator",
    "SyncState",
    "create_coordinator",
    "create_remote",
]
