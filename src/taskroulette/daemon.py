"""
TaskRoulette Daemon: keeps this device in sync in the background.

Opens the local graph, wires a SyncCoordinator, and lets it push after
local edits and sync on a timer. The latest coordinator state is
written to <home>/daemon-status.json so `taskroulette daemon status`
can show it without talking to the process.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from . import TASKROULETTE_HOME
from .config import AppConfig, load_config
from .store import GraphStore
from .sync.coordinator import SyncCoordinator, SyncState, create_coordinator

logger = logging.getLogger("taskroulette.daemon")

PID_FILE = "daemon.pid"
STATUS_FILE = "daemon-status.json"
LOG_DIR = "logs"


class DaemonConfig:
    """Configuration for the daemon process.

    Attributes:
        home: TaskRoulette home directory.
        app: Loaded application config (sync knobs live here).
        log_file: Path for daemon log output.
    """

    def __init__(self, home: Optional[Path] = None, app: Optional[AppConfig] = None):
        self.home = Path(home or TASKROULETTE_HOME).expanduser()
        self.app = app or load_config(self.home)

        log_dir = self.home / LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = log_dir / "daemon.log"


class DaemonState:
    """Thread-safe record of what the daemon has been doing."""

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_sync: Optional[datetime] = None
        self.sync_state: str = SyncState.IDLE.value
        self.syncs_completed: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "last_sync": self.last_sync.isoformat() if self.last_sync else None,
                "sync_state": self.sync_state,
                "syncs_completed": self.syncs_completed,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }

    def record_state(self, state: SyncState, error: Optional[str] = None) -> None:
        with self._lock:
            previous = self.sync_state
            self.sync_state = state.value
            if state == SyncState.IDLE and previous == SyncState.SYNCING.value:
                self.last_sync = datetime.now(timezone.utc)
                self.syncs_completed += 1
            elif state == SyncState.ERROR:
                ts = datetime.now(timezone.utc).isoformat()
                self.errors.append(f"[{ts}] {error or 'sync failed'}")
                if len(self.errors) > 50:
                    self.errors = self.errors[-50:]


class DaemonService:
    """The background sync process.

    Args:
        config: Daemon configuration.
    """

    def __init__(self, config: DaemonConfig):
        self.config = config
        self.state = DaemonState()
        self._stop_event = threading.Event()
        self._store: Optional[GraphStore] = None
        self._coordinator: Optional[SyncCoordinator] = None

    @property
    def coordinator(self) -> Optional[SyncCoordinator]:
        return self._coordinator

    def start(self) -> None:
        """Open the store, start sync scheduling, write the PID file.

        Raises:
            RuntimeError: If no remote is configured.
        """
        self._setup_logging()
        self._store = GraphStore(self.config.app.db_path)
        self._coordinator = create_coordinator(self.config.app, self._store)
        if self._coordinator is None:
            self._store.close()
            raise RuntimeError("Sync is not configured; see `taskroulette init`")

        self._write_pid()
        self._setup_signals()
        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)

        self._coordinator.add_status_listener(self._on_state)
        self._coordinator.start()
        self._write_status()
        logger.info(
            "Daemon started, PID %d, backend %s",
            os.getpid(), self.config.app.sync.backend.value,
        )

    def stop(self) -> None:
        """Stop scheduling and release the store."""
        logger.info("Daemon stopping...")
        self._stop_event.set()
        self.state.running = False
        if self._coordinator is not None:
            self._coordinator.stop()
        if self._store is not None:
            self._store.close()
        self._write_status()
        self._remove_pid()
        logger.info("Daemon stopped.")

    def run_forever(self) -> None:
        """Block until a signal or KeyboardInterrupt, then stop."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _on_state(self, state: SyncState) -> None:
        error = self._coordinator.last_error if self._coordinator else None
        self.state.record_state(state, error)
        if state != SyncState.SYNCING:
            self._write_status()

    def _write_status(self) -> None:
        path = self.config.home / STATUS_FILE
        tmp = path.with_suffix(f".{threading.get_ident()}.tmp")
        try:
            tmp.write_text(json.dumps(self.state.snapshot(), indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.warning("Failed to write daemon status: %s", exc)

    def _setup_logging(self) -> None:
        handler = logging.FileHandler(self.config.log_file)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
        )
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    def _setup_signals(self) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _write_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        (self.config.home / PID_FILE).unlink(missing_ok=True)


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the daemon PID, or None if it is not running.

    A stale PID file is removed.
    """
    home = Path(home or TASKROULETTE_HOME).expanduser()
    pid_path = home / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def is_running(home: Optional[Path] = None) -> bool:
    return read_pid(home) is not None


def read_status(home: Optional[Path] = None) -> Optional[dict]:
    """Last status the daemon wrote, or None."""
    home = Path(home or TASKROULETTE_HOME).expanduser()
    path = home / STATUS_FILE
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
