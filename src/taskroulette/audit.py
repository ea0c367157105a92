"""
Sync audit log.

JSONL (one JSON object per line), append-only. Each entry carries a
timestamp, event type, detail, and the host that wrote it, so logs
from several devices can be concatenated and still make sense.
"""

from __future__ import annotations

import json
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

AUDIT_DIR = "security"
AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    uid: Optional[str] = None
    metadata: Optional[dict] = None


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    uid: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Append a structured event to the audit log.

    Args:
        home: TaskRoulette home directory.
        event_type: Event category (SYNC_PUSH, SYNC_PULL, SYNC_ERROR,
            AUTH_SIGN_OUT, MIGRATION, ...).
        detail: Human-readable event description.
        uid: Signed-in identity, if any.
        metadata: Optional dict of extra structured data.

    Returns:
        AuditEntry: The entry that was written.
    """
    audit_dir = home / AUDIT_DIR
    audit_dir.mkdir(parents=True, exist_ok=True)

    entry = AuditEntry(
        event_type=event_type,
        detail=detail,
        uid=uid,
        metadata=metadata,
    )
    with (audit_dir / AUDIT_LOG_NAME).open("a", encoding="utf-8") as f:
        f.write(entry.model_dump_json() + "\n")
    return entry


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Read and parse the audit log.

    Lines that are not valid entries are skipped.

    Args:
        home: TaskRoulette home directory.
        limit: If > 0, return only the last N entries.

    Returns:
        list[AuditEntry]: Parsed entries, oldest first.
    """
    audit_log = home / AUDIT_DIR / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValueError):
            continue

    if limit > 0:
        return entries[-limit:]
    return entries
