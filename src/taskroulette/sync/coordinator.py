"""
Sync Coordinator: decides when push and pull run, and never both at once.

    local mutation ──> schedule_push() ──(debounce)──> push()
    periodic timer ──────────────────────────────────> sync_now()
    caller ──────────────────────────────────────────> push() / pull()

A boolean guard under a lock keeps passes exclusive. A push requested
while a pass is running is remembered and runs right after it. A pull
requested while busy is dropped; the next periodic cycle catches up.

Every pass starts by obtaining a token that stays valid for at least
the refresh margin. A permanent auth failure signs the user out and
halts scheduling until resume() is called after a fresh sign-in.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..audit import audit_event
from ..auth import AuthProvider, Credentials, FirebaseAuth, StaticAuth
from ..config import AppConfig, RemoteBackendType, SyncConfig
from ..errors import AuthFailure, SyncError, TransientNetworkFailure
from ..models import EdgeKind, now_ms
from ..store import GraphStore
from .checkpoint import CheckpointStore, SyncCheckpoint
from .pull import PullEngine
from .push import PushEngine
from .remote import RemoteStore, create_remote

logger = logging.getLogger("taskroulette.sync.coordinator")

ERROR_SYNC_FAILED = "sync failed"
ERROR_SIGNED_OUT = "signed out"


class SyncState(str, Enum):
    """Coordinator state as shown to observers."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class MigrationOutcome(str, Enum):
    """What initial_migration() did."""

    NOTHING = "nothing"
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    CONFLICT = "conflict"


@dataclass
class CoordinatorStatus:
    """Point-in-time view for status displays."""

    state: SyncState
    uid: Optional[str]
    last_error: Optional[str]
    last_synced_at: Optional[float]
    pending_tasks: int
    pending_operations: int
    halted: bool
    checkpoint: Optional[SyncCheckpoint]


class SyncCoordinator:
    """Schedules and serialises sync passes.

    Args:
        store: The local graph.
        remote: The remote document store.
        auth: Token source.
        checkpoints: Per-identity checkpoint persistence.
        config: Timing and batching knobs.
        home: TaskRoulette home, for the audit log. None disables auditing.
        clock: Epoch-seconds clock, used for token expiry.
    """

    def __init__(
        self,
        store: GraphStore,
        remote: RemoteStore,
        auth: AuthProvider,
        checkpoints: CheckpointStore,
        config: Optional[SyncConfig] = None,
        home: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.remote = remote
        self.auth = auth
        self.checkpoints = checkpoints
        self.config = config or SyncConfig()
        self.home = home
        self._clock = clock

        self.push_engine = PushEngine(store, remote, batch_size=self.config.batch_size)
        self.pull_engine = PullEngine(store, remote)

        self.state = SyncState.IDLE
        self.last_error: Optional[str] = None
        self.last_synced_at: Optional[float] = None
        self.pending_push = False
        self.halted = False

        self._guard = threading.Lock()
        self._syncing = False
        self._timer_lock = threading.Lock()
        self._push_timer: Optional[threading.Timer] = None
        self._stop_event = threading.Event()
        self._pull_thread: Optional[threading.Thread] = None
        self._status_listeners: list[Callable[[SyncState], None]] = []
        self._data_listeners: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_status_listener(self, callback: Callable[[SyncState], None]) -> None:
        self._status_listeners.append(callback)

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` after a pass changed local data."""
        self._data_listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._data_listeners:
            self._data_listeners.remove(callback)

    def _set_state(self, state: SyncState, error: Optional[str] = None) -> None:
        self.state = state
        if state == SyncState.ERROR:
            self.last_error = error or ERROR_SYNC_FAILED
        elif state == SyncState.IDLE:
            self.last_error = None
        for callback in list(self._status_listeners):
            try:
                callback(state)
            except Exception as exc:
                logger.error("Status listener failed: %s", exc)

    def _notify_data_changed(self) -> None:
        for callback in list(self._data_listeners):
            try:
                callback()
            except Exception as exc:
                logger.error("Data listener failed: %s", exc)

    def _audit(self, event_type: str, detail: str, metadata: Optional[dict] = None) -> None:
        if self.home is None:
            return
        try:
            audit_event(self.home, event_type, detail, uid=self.auth.uid, metadata=metadata)
        except OSError as exc:
            logger.warning("Failed to write audit entry: %s", exc)

    def status(self) -> CoordinatorStatus:
        uid = self.auth.uid
        return CoordinatorStatus(
            state=self.state,
            uid=uid,
            last_error=self.last_error,
            last_synced_at=self.last_synced_at,
            pending_tasks=len(self.store.pending_tasks()),
            pending_operations=len(self.store.outbox),
            halted=self.halted,
            checkpoint=self.checkpoints.load(uid) if uid else None,
        )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def _credentials(self) -> Credentials:
        """A token valid for at least the refresh margin.

        Raises:
            AuthFailure: If nobody is signed in or the refresh failed.
        """
        uid = self.auth.uid
        if uid is None:
            raise AuthFailure("Not signed in", permanent=True)

        margin = self.config.token_refresh_margin_seconds
        token = self.auth.current_token()
        if token is None or token.expires_at - margin <= self._clock():
            self.auth.refresh()
            token = self.auth.current_token()
            if token is None:
                raise AuthFailure("Refresh returned no token", permanent=False)
        return Credentials(uid, token.token)

    # ------------------------------------------------------------------
    # Exclusive passes
    # ------------------------------------------------------------------

    def _exclusive(self, name: str, work: Callable[[Credentials], None], is_push: bool) -> bool:
        with self._guard:
            if self.halted:
                logger.debug("Sync halted, ignoring %s", name)
                return False
            if self._syncing:
                if is_push:
                    self.pending_push = True
                    logger.debug("Push requested while syncing, deferred")
                else:
                    logger.debug("Pull requested while syncing, dropped")
                return False
            self._syncing = True
            if is_push:
                self.pending_push = False

        try:
            ok = self._run_pass(name, work)
            while True:
                with self._guard:
                    if self.halted or not self.pending_push:
                        self._syncing = False
                        break
                    self.pending_push = False
                self._run_pass("push", self._do_push)
        except BaseException:
            with self._guard:
                self._syncing = False
            raise
        return ok

    def _run_pass(self, name: str, work: Callable[[Credentials], None]) -> bool:
        self._set_state(SyncState.SYNCING)
        try:
            creds = self._credentials()
            work(creds)
        except AuthFailure as exc:
            if exc.permanent:
                self._handle_revoked(exc)
            else:
                logger.warning("%s aborted, auth temporarily unavailable: %s", name, exc)
                self._fail(name, exc)
            return False
        except TransientNetworkFailure as exc:
            logger.warning("%s aborted, network unavailable: %s", name, exc)
            self._fail(name, exc)
            return False
        except (SyncError, sqlite3.Error) as exc:
            logger.error("%s failed: %s", name, exc)
            self._fail(name, exc)
            return False
        except Exception as exc:
            logger.exception("%s failed unexpectedly: %s", name, exc)
            self._fail(name, exc)
            return False

        self.last_synced_at = self._clock()
        self._set_state(SyncState.IDLE)
        return True

    def _fail(self, name: str, exc: BaseException) -> None:
        self._set_state(SyncState.ERROR, ERROR_SYNC_FAILED)
        self._audit("SYNC_ERROR", f"{name} failed", {"error": type(exc).__name__})

    def _handle_revoked(self, exc: AuthFailure) -> None:
        logger.error("Credentials revoked, signing out: %s", exc)
        uid = self.auth.uid
        self.halted = True
        self._cancel_push_timer()
        self.auth.sign_out()
        self._set_state(SyncState.ERROR, ERROR_SIGNED_OUT)
        if self.home is not None:
            try:
                audit_event(self.home, "AUTH_SIGN_OUT", "Credentials revoked", uid=uid)
            except OSError as err:
                logger.warning("Failed to write audit entry: %s", err)

    # ------------------------------------------------------------------
    # Pass bodies
    # ------------------------------------------------------------------

    def _do_push(self, creds: Credentials) -> None:
        result = self.push_engine.push(creds)
        checkpoint = self.checkpoints.load(creds.uid)
        checkpoint.last_push_at = now_ms()
        self.checkpoints.save(checkpoint)
        if result.total:
            self._audit(
                "SYNC_PUSH",
                f"Pushed {result.tasks_pushed} task(s), {result.entries_delivered} operation(s)",
            )

    def _do_pull(self, creds: Credentials, since_checkpoint: bool = True) -> None:
        checkpoint = self.checkpoints.load(creds.uid)
        since = checkpoint.last_pull_at if since_checkpoint else None
        result = self.pull_engine.pull(creds, since)
        checkpoint.last_pull_at = result.started_at
        self.checkpoints.save(checkpoint)
        if result.changed:
            self._audit(
                "SYNC_PULL",
                f"Pulled {result.tasks_applied} task change(s)",
                {
                    "edges_added": result.edges_added,
                    "edges_removed": result.edges_removed,
                    "edges_rejected": result.edges_rejected,
                },
            )
            self._notify_data_changed()

    def push(self) -> bool:
        """Push local changes now. Returns True if the pass succeeded."""
        return self._exclusive("push", self._do_push, is_push=True)

    def pull(self) -> bool:
        """Pull remote changes now. Returns True if the pass succeeded."""
        return self._exclusive("pull", self._do_pull, is_push=False)

    def sync_now(self) -> bool:
        """Push, then pull."""
        pushed = self.push()
        pulled = self.pull()
        return pushed and pulled

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_push(self) -> None:
        """Push after the debounce delay. Each call restarts the delay."""
        if self.halted:
            return
        with self._timer_lock:
            if self._push_timer is not None:
                self._push_timer.cancel()
            self._push_timer = threading.Timer(
                self.config.push_debounce_seconds, self._debounced_push
            )
            self._push_timer.daemon = True
            self._push_timer.start()

    def _debounced_push(self) -> None:
        with self._timer_lock:
            self._push_timer = None
        self.push()

    def _cancel_push_timer(self) -> None:
        with self._timer_lock:
            if self._push_timer is not None:
                self._push_timer.cancel()
                self._push_timer = None

    def start(self) -> None:
        """Push on local changes and sync periodically until stop()."""
        if self._pull_thread is not None and self._pull_thread.is_alive():
            return
        self._stop_event.clear()
        self.store.add_listener(self.schedule_push)
        self._pull_thread = threading.Thread(
            target=self._periodic_loop, name="taskroulette-sync", daemon=True
        )
        self._pull_thread.start()
        logger.info(
            "Sync scheduling started: push debounce %ss, pull every %ss",
            self.config.push_debounce_seconds,
            self.config.pull_interval_seconds,
        )

    def stop(self) -> None:
        self._stop_event.set()
        self.store.remove_listener(self.schedule_push)
        self._cancel_push_timer()
        if self._pull_thread is not None and self._pull_thread is not threading.current_thread():
            self._pull_thread.join(timeout=5)
        self._pull_thread = None

    def _periodic_loop(self) -> None:
        # Changes made by other processes never reach our store listener,
        # so each cycle pushes before it pulls.
        while not self._stop_event.is_set():
            if not self.halted:
                try:
                    self.sync_now()
                except Exception as exc:
                    logger.error("Periodic sync error: %s", exc)
            self._stop_event.wait(timeout=self.config.pull_interval_seconds)

    def resume(self) -> None:
        """Lift the halt after a fresh sign-in."""
        self.halted = False
        self._set_state(SyncState.IDLE)

    def sign_out(self) -> None:
        """Stop all scheduling and forget credentials. Local data stays."""
        uid = self.auth.uid
        self.halted = True
        self.stop()
        self.auth.sign_out()
        self._set_state(SyncState.IDLE)
        if self.home is not None:
            audit_event(self.home, "AUTH_SIGN_OUT", "User signed out", uid=uid)

    # ------------------------------------------------------------------
    # First sync of an identity on this device
    # ------------------------------------------------------------------

    def needs_initial_migration(self) -> bool:
        uid = self.auth.uid
        if uid is None:
            return False
        return not self.checkpoints.load(uid).initial_migration_done

    def has_cloud_data(self) -> bool:
        """True if the signed-in identity already has remote tasks.

        Raises:
            SyncError: If the remote cannot be asked.
        """
        return self.remote.has_data(self._credentials())

    def _mark_migrated(self, uid: str, detail: str) -> None:
        checkpoint = self.checkpoints.load(uid)
        checkpoint.initial_migration_done = True
        self.checkpoints.save(checkpoint)
        self._audit("MIGRATION", detail)

    def _reset_pull_checkpoint(self, uid: str) -> None:
        checkpoint = self.checkpoints.load(uid)
        checkpoint.last_pull_at = None
        self.checkpoints.save(checkpoint)

    def initial_migration(self) -> Optional[MigrationOutcome]:
        """Bring a device and an identity together for the first time.

        Empty cloud: upload everything. Empty device: download
        everything. Both non-empty: CONFLICT, and nothing is changed;
        the caller picks replace_local_with_cloud(),
        replace_cloud_with_local() or merge_both().

        Returns:
            The outcome, or None if the pass failed.
        """
        outcome: list[MigrationOutcome] = []

        def work(creds: Credentials) -> None:
            cloud = self.remote.has_data(creds)
            local = bool(self.store.all_tasks_with_sync_id())
            if cloud and local:
                outcome.append(MigrationOutcome.CONFLICT)
                return
            if local:
                self.push_engine.push_all(creds)
                outcome.append(MigrationOutcome.UPLOADED)
            elif cloud:
                self._do_pull(creds, since_checkpoint=False)
                outcome.append(MigrationOutcome.DOWNLOADED)
            else:
                outcome.append(MigrationOutcome.NOTHING)
            self._mark_migrated(creds.uid, f"Initial migration: {outcome[0].value}")

        if not self._exclusive("initial migration", work, is_push=False):
            return None
        return outcome[0] if outcome else None

    def replace_local_with_cloud(self) -> bool:
        """Discard local data and download the remote graph."""

        def work(creds: Credentials) -> None:
            self.store.wipe()
            self._reset_pull_checkpoint(creds.uid)
            self._do_pull(creds, since_checkpoint=False)
            self._mark_migrated(creds.uid, "Replaced local data with cloud data")
            self._notify_data_changed()

        return self._exclusive("replace local", work, is_push=False)

    def replace_cloud_with_local(self) -> bool:
        """Delete every remote document, then upload the local graph."""

        def work(creds: Credentials) -> None:
            for kind in EdgeKind:
                for edge in list(self.remote.iter_edges(creds, kind)):
                    self.remote.delete_edge(creds, kind, edge)
            for task in list(self.remote.iter_tasks(creds)):
                self.remote.delete_task(creds, task.sync_id)
            self.push_engine.push_all(creds)
            self._reset_pull_checkpoint(creds.uid)
            self._mark_migrated(creds.uid, "Replaced cloud data with local data")

        return self._exclusive("replace cloud", work, is_push=False)

    def merge_both(self) -> bool:
        """Upload the local graph, then download the remote one on top."""

        def work(creds: Credentials) -> None:
            self.push_engine.push_all(creds)
            self._do_pull(creds, since_checkpoint=False)
            self._mark_migrated(creds.uid, "Merged local and cloud data")

        return self._exclusive("merge", work, is_push=False)


def create_coordinator(
    config: AppConfig, store: GraphStore, auth: Optional[AuthProvider] = None
) -> Optional[SyncCoordinator]:
    """Wire a coordinator from configuration.

    Args:
        config: Loaded application config.
        store: The open local graph.
        auth: Token source; defaults to Firebase for the firestore
            backend and a fixed identity for the local one.

    Returns:
        The coordinator, or None when no remote is configured.
    """
    remote = create_remote(config.sync)
    if remote is None:
        return None
    if auth is None:
        if config.sync.backend == RemoteBackendType.LOCAL:
            auth = StaticAuth(config.sync.local_uid)
        else:
            auth = FirebaseAuth(
                config.home,
                config.sync.api_key,
                timeout=config.sync.request_timeout_seconds,
            )
    return SyncCoordinator(
        store,
        remote,
        auth,
        CheckpointStore(config.home),
        config=config.sync,
        home=config.home,
    )
