"""
Remote document stores: where the task graph travels.

Each store keeps one collection per entity type, scoped per identity:

    users/<uid>/tasks/<sync_id>
    users/<uid>/relationships/<parent_sync_id>_<child_sync_id>
    users/<uid>/dependencies/<task_sync_id>_<depends_on_sync_id>

Firestore: the Firestore v1 REST API, authenticated with a Firebase ID token.
Local: plain JSON files in a directory. For USB drives, NAS, and tests.

Both speak the same document format (Firestore typed field values), so
the codec below is shared.

Write calls return SUCCESS or NOT_FOUND. Any other outcome raises a
SyncError subclass, which aborts the current pass.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, NamedTuple, Optional, Sequence

import requests

from ..auth import Credentials
from ..config import RemoteBackendType, SyncConfig
from ..errors import AuthFailure, RemoteProtocolError, TransientNetworkFailure
from ..models import EdgeKind, EntityType, SyncEdge, SyncStatus, Task

logger = logging.getLogger("taskroulette.sync.remote")

FIRESTORE_ROOT = "https://firestore.googleapis.com/v1"
MAX_BATCH_WRITES = 500

COLLECTIONS = {
    EntityType.TASK: "tasks",
    EntityType.LISTED_UNDER: "relationships",
    EntityType.DEPENDS_ON: "dependencies",
}

EDGE_FIELDS = {
    EdgeKind.LISTED_UNDER: ("parent_sync_id", "child_sync_id"),
    EdgeKind.DEPENDS_ON: ("task_sync_id", "depends_on_sync_id"),
}

_INT_FIELDS = (
    "created_at",
    "completed_at",
    "started_at",
    "skipped_at",
    "last_worked_at",
    "priority",
    "quick_task",
    "updated_at",
)
_STRING_FIELDS = ("name", "url")


class RemoteResult(str, Enum):
    """Classified outcome of a remote write."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"


class Page(NamedTuple):
    """One page of a listing. ``cursor`` is None on the last page."""

    items: list
    cursor: Optional[str]


# ---------------------------------------------------------------------------
# Wire codec
# ---------------------------------------------------------------------------


def collection_for_edge(kind: EdgeKind) -> str:
    return COLLECTIONS[EntityType.for_edge(kind)]


def edge_doc_id(edge: SyncEdge) -> str:
    return f"{edge.source}_{edge.target}"


def task_to_fields(task: Task) -> dict[str, Any]:
    """Encode a task as Firestore typed fields. Nulls are omitted."""
    fields: dict[str, Any] = {}
    for key in _STRING_FIELDS:
        value = getattr(task, key)
        if value is not None:
            fields[key] = {"stringValue": value}
    for key in _INT_FIELDS:
        value = getattr(task, key)
        if value is not None:
            fields[key] = {"integerValue": str(value)}
    return fields


def _string_field(fields: dict, key: str) -> Optional[str]:
    field = fields.get(key)
    return field.get("stringValue") if isinstance(field, dict) else None


def _int_field(fields: dict, key: str) -> Optional[int]:
    field = fields.get(key)
    if not isinstance(field, dict):
        return None
    value = field.get("integerValue")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def task_from_document(doc: dict) -> Optional[Task]:
    """Decode a Firestore document into a synced Task.

    The sync id is the last segment of the document name.
    """
    fields = doc.get("fields")
    if not isinstance(fields, dict):
        return None
    sync_id = (doc.get("name") or "").split("/")[-1]
    if not sync_id:
        return None
    created_at = _int_field(fields, "created_at") or 0
    return Task(
        sync_id=sync_id,
        name=_string_field(fields, "name") or "",
        created_at=created_at,
        completed_at=_int_field(fields, "completed_at"),
        started_at=_int_field(fields, "started_at"),
        skipped_at=_int_field(fields, "skipped_at"),
        last_worked_at=_int_field(fields, "last_worked_at"),
        url=_string_field(fields, "url"),
        priority=_int_field(fields, "priority") or 0,
        quick_task=_int_field(fields, "quick_task") or 0,
        updated_at=_int_field(fields, "updated_at"),
        sync_status=SyncStatus.SYNCED,
    )


def edge_to_fields(kind: EdgeKind, edge: SyncEdge) -> dict[str, Any]:
    first, second = EDGE_FIELDS[kind]
    return {
        first: {"stringValue": edge.source},
        second: {"stringValue": edge.target},
    }


def edge_from_document(kind: EdgeKind, doc: dict) -> Optional[SyncEdge]:
    fields = doc.get("fields")
    if not isinstance(fields, dict):
        return None
    first, second = EDGE_FIELDS[kind]
    source, target = _string_field(fields, first), _string_field(fields, second)
    if source is None or target is None:
        return None
    return SyncEdge(source, target)


def _chunks(items: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ---------------------------------------------------------------------------
# Abstract store
# ---------------------------------------------------------------------------


class RemoteStore(ABC):
    """A remote document store the sync engine can push to and pull from."""

    batch_size: int = MAX_BATCH_WRITES

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable store name."""

    @abstractmethod
    def put_tasks(self, creds: Credentials, tasks: Sequence[Task]) -> RemoteResult:
        """Upsert task documents, one atomic commit per batch."""

    @abstractmethod
    def delete_task(self, creds: Credentials, sync_id: str) -> RemoteResult:
        """Delete one task document. NOT_FOUND is a successful outcome."""

    @abstractmethod
    def put_edges(
        self, creds: Credentials, kind: EdgeKind, edges: Sequence[SyncEdge]
    ) -> RemoteResult:
        """Upsert edge documents. Replaying an edge is a no-op."""

    @abstractmethod
    def delete_edge(
        self, creds: Credentials, kind: EdgeKind, edge: SyncEdge
    ) -> RemoteResult:
        """Delete one edge document. NOT_FOUND is a successful outcome."""

    @abstractmethod
    def list_tasks_page(
        self, creds: Credentials, since: Optional[int], cursor: Optional[str] = None
    ) -> Page:
        """One page of tasks updated strictly after ``since`` (all if None)."""

    @abstractmethod
    def list_edges_page(
        self, creds: Credentials, kind: EdgeKind, cursor: Optional[str] = None
    ) -> Page:
        """One page of the complete edge snapshot for ``kind``."""

    def iter_tasks(self, creds: Credentials, since: Optional[int] = None) -> Iterator[Task]:
        cursor: Optional[str] = None
        while True:
            page = self.list_tasks_page(creds, since, cursor)
            yield from page.items
            if page.cursor is None:
                return
            cursor = page.cursor

    def iter_edges(self, creds: Credentials, kind: EdgeKind) -> Iterator[SyncEdge]:
        cursor: Optional[str] = None
        while True:
            page = self.list_edges_page(creds, kind, cursor)
            yield from page.items
            if page.cursor is None:
                return
            cursor = page.cursor

    def has_data(self, creds: Credentials) -> bool:
        """True if the identity has at least one task document."""
        return bool(self.list_tasks_page(creds, None).items)


# ---------------------------------------------------------------------------
# Firestore
# ---------------------------------------------------------------------------


class FirestoreStore(RemoteStore):
    """Firestore v1 REST API.

    Args:
        project_id: Firebase project id.
        timeout: Seconds before any single request is abandoned.
        page_size: Documents per listing page.
        batch_size: Writes per commit (Firestore caps this at 500).
        session: HTTP session, injectable for tests.
    """

    def __init__(
        self,
        project_id: str,
        timeout: float = 30.0,
        page_size: int = 300,
        batch_size: int = MAX_BATCH_WRITES,
        session: Optional[requests.Session] = None,
    ):
        self.project_id = project_id
        self.timeout = timeout
        self.page_size = page_size
        self.batch_size = min(batch_size, MAX_BATCH_WRITES)
        self._session = session or requests.Session()

    @property
    def name(self) -> str:
        return "firestore"

    @property
    def _database(self) -> str:
        return f"projects/{self.project_id}/databases/(default)/documents"

    def _doc_name(self, uid: str, collection: str, doc_id: str) -> str:
        return f"{self._database}/users/{uid}/{collection}/{doc_id}"

    def _url(self, path: str) -> str:
        return f"{FIRESTORE_ROOT}/{path}"

    def _request(
        self, method: str, url: str, creds: Credentials, **kwargs: Any
    ) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {creds.token}",
            "Content-Type": "application/json",
        }
        try:
            return self._session.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.Timeout as exc:
            raise TransientNetworkFailure(f"{method} timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise TransientNetworkFailure(f"{method} failed: {exc}") from exc

    @staticmethod
    def _classify(resp: requests.Response, operation: str) -> RemoteResult:
        if 200 <= resp.status_code < 300:
            return RemoteResult.SUCCESS
        if resp.status_code == 404:
            return RemoteResult.NOT_FOUND
        logger.debug("%s -> %s %s", operation, resp.status_code, resp.text[:500])
        if resp.status_code == 401:
            raise AuthFailure(f"{operation} unauthorized", permanent=False)
        raise RemoteProtocolError(
            f"{operation} failed: {resp.status_code}", status_code=resp.status_code
        )

    def _expect_success(self, resp: requests.Response, operation: str) -> RemoteResult:
        if self._classify(resp, operation) is RemoteResult.NOT_FOUND:
            raise RemoteProtocolError(f"{operation} failed: 404", status_code=404)
        return RemoteResult.SUCCESS

    def _commit(self, creds: Credentials, writes: list[dict], operation: str) -> None:
        resp = self._request(
            "POST",
            self._url(f"{self._database}:commit"),
            creds,
            json={"writes": writes},
        )
        self._expect_success(resp, operation)

    def put_tasks(self, creds: Credentials, tasks: Sequence[Task]) -> RemoteResult:
        for batch in _chunks(list(tasks), self.batch_size):
            writes = [
                {
                    "update": {
                        "name": self._doc_name(creds.uid, "tasks", task.sync_id),
                        "fields": task_to_fields(task),
                    }
                }
                for task in batch
            ]
            self._commit(creds, writes, "Push tasks")
        return RemoteResult.SUCCESS

    def delete_task(self, creds: Credentials, sync_id: str) -> RemoteResult:
        resp = self._request(
            "DELETE",
            self._url(self._doc_name(creds.uid, "tasks", sync_id)),
            creds,
        )
        return self._classify(resp, "Delete task")

    def put_edges(
        self, creds: Credentials, kind: EdgeKind, edges: Sequence[SyncEdge]
    ) -> RemoteResult:
        collection = collection_for_edge(kind)
        for batch in _chunks(list(edges), self.batch_size):
            writes = [
                {
                    "update": {
                        "name": self._doc_name(creds.uid, collection, edge_doc_id(edge)),
                        "fields": edge_to_fields(kind, edge),
                    }
                }
                for edge in batch
            ]
            self._commit(creds, writes, f"Push {collection}")
        return RemoteResult.SUCCESS

    def delete_edge(
        self, creds: Credentials, kind: EdgeKind, edge: SyncEdge
    ) -> RemoteResult:
        collection = collection_for_edge(kind)
        resp = self._request(
            "DELETE",
            self._url(self._doc_name(creds.uid, collection, edge_doc_id(edge))),
            creds,
        )
        return self._classify(resp, f"Delete {collection}")

    def _list_page(
        self, creds: Credentials, collection: str, cursor: Optional[str]
    ) -> tuple[list[dict], Optional[str]]:
        params: dict[str, Any] = {"pageSize": self.page_size}
        if cursor:
            params["pageToken"] = cursor
        resp = self._request(
            "GET",
            self._url(f"{self._database}/users/{creds.uid}/{collection}"),
            creds,
            params=params,
        )
        if self._classify(resp, f"List {collection}") is RemoteResult.NOT_FOUND:
            return [], None
        body = resp.json()
        return body.get("documents") or [], body.get("nextPageToken") or None

    def _query_tasks_since(
        self, creds: Credentials, since: int, cursor: Optional[str]
    ) -> Page:
        query: dict[str, Any] = {
            "from": [{"collectionId": "tasks"}],
            "where": {
                "fieldFilter": {
                    "field": {"fieldPath": "updated_at"},
                    "op": "GREATER_THAN",
                    "value": {"integerValue": str(since)},
                }
            },
            "orderBy": [
                {"field": {"fieldPath": "updated_at"}, "direction": "ASCENDING"},
                {"field": {"fieldPath": "__name__"}, "direction": "ASCENDING"},
            ],
            "limit": self.page_size,
        }
        if cursor:
            updated_at, doc_name = json.loads(cursor)
            query["startAt"] = {
                "values": [
                    {"integerValue": str(updated_at)},
                    {"referenceValue": doc_name},
                ],
                "before": False,
            }
        resp = self._request(
            "POST",
            self._url(f"{self._database}/users/{creds.uid}:runQuery"),
            creds,
            json={"structuredQuery": query},
        )
        if self._classify(resp, "Query tasks") is RemoteResult.NOT_FOUND:
            return Page([], None)

        docs = [r["document"] for r in resp.json() if isinstance(r, dict) and r.get("document")]
        tasks = [t for t in (task_from_document(d) for d in docs) if t is not None]
        next_cursor = None
        if len(docs) >= self.page_size:
            last = docs[-1]
            last_updated = _int_field(last.get("fields") or {}, "updated_at") or 0
            next_cursor = json.dumps([last_updated, last["name"]])
        return Page(tasks, next_cursor)

    def list_tasks_page(
        self, creds: Credentials, since: Optional[int], cursor: Optional[str] = None
    ) -> Page:
        if since is not None:
            return self._query_tasks_since(creds, since, cursor)
        docs, next_cursor = self._list_page(creds, "tasks", cursor)
        tasks = [t for t in (task_from_document(d) for d in docs) if t is not None]
        return Page(tasks, next_cursor)

    def list_edges_page(
        self, creds: Credentials, kind: EdgeKind, cursor: Optional[str] = None
    ) -> Page:
        docs, next_cursor = self._list_page(creds, collection_for_edge(kind), cursor)
        edges = [e for e in (edge_from_document(kind, d) for d in docs) if e is not None]
        return Page(edges, next_cursor)


# ---------------------------------------------------------------------------
# Local directory
# ---------------------------------------------------------------------------


class LocalStore(RemoteStore):
    """Document store in a plain directory tree.

    Documents are stored as ``{"name": ..., "fields": ...}`` JSON files,
    the same shape Firestore returns. Cursors are page offsets.
    """

    def __init__(
        self,
        root: Path,
        page_size: int = 300,
        batch_size: int = MAX_BATCH_WRITES,
    ):
        self.root = Path(root).expanduser()
        self.page_size = page_size
        self.batch_size = min(batch_size, MAX_BATCH_WRITES)

    @property
    def name(self) -> str:
        return "local"

    def _collection_dir(self, uid: str, collection: str) -> Path:
        return self.root / "users" / uid / collection

    def _write(self, uid: str, collection: str, doc_id: str, fields: dict) -> None:
        directory = self._collection_dir(uid, collection)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / f"{doc_id}.json"
        tmp = target.with_suffix(".json.tmp")
        tmp.write_text(
            json.dumps({"name": f"users/{uid}/{collection}/{doc_id}", "fields": fields}),
            encoding="utf-8",
        )
        tmp.replace(target)

    def _delete(self, uid: str, collection: str, doc_id: str) -> RemoteResult:
        path = self._collection_dir(uid, collection) / f"{doc_id}.json"
        if not path.exists():
            return RemoteResult.NOT_FOUND
        path.unlink()
        return RemoteResult.SUCCESS

    def _documents(self, uid: str, collection: str) -> list[dict]:
        directory = self._collection_dir(uid, collection)
        if not directory.exists():
            return []
        docs = []
        for path in sorted(directory.glob("*.json")):
            try:
                docs.append(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable document %s: %s", path.name, exc)
        return docs

    def _page(self, items: list, cursor: Optional[str]) -> Page:
        offset = int(cursor) if cursor else 0
        end = offset + self.page_size
        return Page(items[offset:end], str(end) if end < len(items) else None)

    def put_tasks(self, creds: Credentials, tasks: Sequence[Task]) -> RemoteResult:
        for task in tasks:
            self._write(creds.uid, "tasks", task.sync_id, task_to_fields(task))
        return RemoteResult.SUCCESS

    def delete_task(self, creds: Credentials, sync_id: str) -> RemoteResult:
        return self._delete(creds.uid, "tasks", sync_id)

    def put_edges(
        self, creds: Credentials, kind: EdgeKind, edges: Sequence[SyncEdge]
    ) -> RemoteResult:
        collection = collection_for_edge(kind)
        for edge in edges:
            self._write(creds.uid, collection, edge_doc_id(edge), edge_to_fields(kind, edge))
        return RemoteResult.SUCCESS

    def delete_edge(
        self, creds: Credentials, kind: EdgeKind, edge: SyncEdge
    ) -> RemoteResult:
        return self._delete(creds.uid, collection_for_edge(kind), edge_doc_id(edge))

    def list_tasks_page(
        self, creds: Credentials, since: Optional[int], cursor: Optional[str] = None
    ) -> Page:
        tasks = [
            t for t in (task_from_document(d) for d in self._documents(creds.uid, "tasks"))
            if t is not None
        ]
        if since is not None:
            tasks = [t for t in tasks if (t.updated_at or 0) > since]
        tasks.sort(key=lambda t: (t.updated_at or 0, t.sync_id))
        return self._page(tasks, cursor)

    def list_edges_page(
        self, creds: Credentials, kind: EdgeKind, cursor: Optional[str] = None
    ) -> Page:
        docs = self._documents(creds.uid, collection_for_edge(kind))
        edges = [e for e in (edge_from_document(kind, d) for d in docs) if e is not None]
        return self._page(edges, cursor)


def create_remote(
    config: SyncConfig, session: Optional[requests.Session] = None
) -> Optional[RemoteStore]:
    """Factory for the configured remote store.

    Returns:
        The store, or None when sync is disabled or unconfigured.
    """
    if not config.is_configured:
        return None
    if config.backend == RemoteBackendType.FIRESTORE:
        return FirestoreStore(
            config.project_id,
            timeout=config.request_timeout_seconds,
            page_size=config.page_size,
            batch_size=config.batch_size,
            session=session,
        )
    if config.backend == RemoteBackendType.LOCAL:
        return LocalStore(
            config.local_path,
            page_size=config.page_size,
            batch_size=config.batch_size,
        )
    raise ValueError(f"Unsupported backend: {config.backend}")
