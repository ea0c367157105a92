"""
Per-identity sync bookkeeping.

One JSON file per signed-in identity:

    ~/.taskroulette/sync/state-<uid>.json

Switching accounts on the same device therefore never reuses another
identity's pull checkpoint or migration flag.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger("taskroulette.sync.checkpoint")


class SyncCheckpoint(BaseModel):
    """Progress markers for one identity.

    ``last_pull_at`` is the epoch-ms start of the last fully successful
    pull. The next pull asks for tasks updated strictly after it.
    """

    uid: str
    last_pull_at: Optional[int] = None
    last_push_at: Optional[int] = None
    initial_migration_done: bool = False

    @property
    def last_pull_display(self) -> str:
        if self.last_pull_at is None:
            return "never"
        return datetime.fromtimestamp(self.last_pull_at / 1000).strftime("%Y-%m-%d %H:%M:%S")


class CheckpointStore:
    """Loads and saves SyncCheckpoint files under <home>/sync/."""

    def __init__(self, home: Path):
        self.sync_dir = Path(home).expanduser() / "sync"

    def _path(self, uid: str) -> Path:
        return self.sync_dir / f"state-{uid}.json"

    def load(self, uid: str) -> SyncCheckpoint:
        """Return the stored checkpoint, or a fresh one for a new identity."""
        path = self._path(uid)
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                return SyncCheckpoint(**data)
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning("Failed to load sync state for %s: %s", uid, exc)
        return SyncCheckpoint(uid=uid)

    def save(self, checkpoint: SyncCheckpoint) -> None:
        self.sync_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(checkpoint.uid)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(checkpoint.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)

    def clear(self, uid: str) -> None:
        self._path(uid).unlink(missing_ok=True)
