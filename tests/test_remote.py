"""Tests for the remote document stores and the wire codec."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
import requests

from taskroulette.config import SyncConfig
from taskroulette.errors import AuthFailure, RemoteProtocolError, TransientNetworkFailure
from taskroulette.models import EdgeKind, SyncEdge, SyncStatus, Task
from taskroulette.sync.remote import (
    FirestoreStore,
    LocalStore,
    RemoteResult,
    create_remote,
    edge_doc_id,
    edge_from_document,
    edge_to_fields,
    task_from_document,
    task_to_fields,
)


def _response(status: int, body=None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body if body is not None else {}
    resp.text = json.dumps(body or {})
    return resp


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def firestore(session):
    return FirestoreStore("proj", timeout=7, page_size=2, session=session)


class TestCodec:
    """Tests for Firestore typed-value encoding."""

    def test_task_round_trip(self):
        task = Task(name="Read", created_at=10, completed_at=20, url="https://x", priority=2, updated_at=30)
        fields = task_to_fields(task)
        assert fields["name"] == {"stringValue": "Read"}
        assert fields["created_at"] == {"integerValue": "10"}
        assert "started_at" not in fields

        decoded = task_from_document({"name": f"a/b/tasks/{task.sync_id}", "fields": fields})
        assert decoded.sync_id == task.sync_id
        assert decoded.sync_status == SyncStatus.SYNCED
        for key in ("name", "created_at", "completed_at", "url", "priority", "updated_at"):
            assert getattr(decoded, key) == getattr(task, key)

    def test_task_from_bad_document(self):
        assert task_from_document({"name": "x"}) is None
        assert task_from_document({"fields": {}, "name": ""}) is None
        doc = {"name": "tasks/s1", "fields": {"priority": {"integerValue": "nope"}}}
        assert task_from_document(doc).priority == 0

    def test_edge_fields(self):
        edge = SyncEdge("p", "c")
        assert edge_doc_id(edge) == "p_c"
        fields = edge_to_fields(EdgeKind.DEPENDS_ON, edge)
        assert set(fields) == {"task_sync_id", "depends_on_sync_id"}
        assert edge_from_document(EdgeKind.DEPENDS_ON, {"fields": fields}) == edge
        assert edge_from_document(EdgeKind.LISTED_UNDER, {"fields": fields}) is None


class TestFirestoreStore:
    """Tests for request shape and response classification."""

    def test_put_tasks_batches_commits(self, session, creds):
        session.request.return_value = _response(200)
        store = FirestoreStore("proj", batch_size=2, session=session)
        tasks = [Task(name=f"t{i}", updated_at=i) for i in range(5)]
        assert store.put_tasks(creds, tasks) == RemoteResult.SUCCESS
        assert session.request.call_count == 3

        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        assert method == "POST"
        assert url.endswith("/documents:commit")
        assert kwargs["timeout"] == 30.0
        assert kwargs["headers"]["Authorization"] == "Bearer token"
        writes = kwargs["json"]["writes"]
        assert len(writes) == 1
        assert writes[0]["update"]["name"].endswith(f"/users/user-1/tasks/{tasks[4].sync_id}")

    def test_batch_size_capped_at_500(self, session):
        assert FirestoreStore("proj", batch_size=1000, session=session).batch_size == 500

    def test_delete_not_found_is_reported(self, firestore, session, creds):
        session.request.return_value = _response(404)
        assert firestore.delete_task(creds, "gone") == RemoteResult.NOT_FOUND
        assert session.request.call_args.args[0] == "DELETE"
        assert session.request.call_args.kwargs["timeout"] == 7

    def test_put_edges_upserts_by_doc_id(self, firestore, session, creds):
        session.request.return_value = _response(200)
        firestore.put_edges(creds, EdgeKind.LISTED_UNDER, [SyncEdge("p", "c")])
        write = session.request.call_args.kwargs["json"]["writes"][0]["update"]
        assert write["name"].endswith("/users/user-1/relationships/p_c")
        assert write["fields"]["parent_sync_id"] == {"stringValue": "p"}

    def test_delete_edge_path(self, firestore, session, creds):
        session.request.return_value = _response(200)
        assert firestore.delete_edge(creds, EdgeKind.DEPENDS_ON, SyncEdge("a", "b")) == RemoteResult.SUCCESS
        assert session.request.call_args.args[1].endswith("/users/user-1/dependencies/a_b")

    def test_401_is_transient_auth_failure(self, firestore, session, creds):
        session.request.return_value = _response(401)
        with pytest.raises(AuthFailure) as info:
            firestore.delete_task(creds, "x")
        assert info.value.permanent is False

    def test_other_status_is_protocol_error(self, firestore, session, creds):
        session.request.return_value = _response(500, {"error": {"message": "boom"}})
        with pytest.raises(RemoteProtocolError) as info:
            firestore.put_tasks(creds, [Task(name="x")])
        assert info.value.status_code == 500

    def test_commit_404_is_protocol_error(self, firestore, session, creds):
        session.request.return_value = _response(404)
        with pytest.raises(RemoteProtocolError):
            firestore.put_tasks(creds, [Task(name="x")])

    @pytest.mark.parametrize("exc", [requests.Timeout("slow"), requests.ConnectionError("down")])
    def test_transport_errors_are_transient(self, firestore, session, creds, exc):
        session.request.side_effect = exc
        with pytest.raises(TransientNetworkFailure):
            firestore.delete_task(creds, "x")

    def test_full_listing_follows_page_tokens(self, firestore, session, creds):
        t1, t2 = Task(name="a", updated_at=1), Task(name="b", updated_at=2)
        session.request.side_effect = [
            _response(200, {
                "documents": [{"name": f"x/tasks/{t1.sync_id}", "fields": task_to_fields(t1)}],
                "nextPageToken": "tok",
            }),
            _response(200, {
                "documents": [{"name": f"x/tasks/{t2.sync_id}", "fields": task_to_fields(t2)}],
            }),
        ]
        names = [t.name for t in firestore.iter_tasks(creds)]
        assert names == ["a", "b"]
        second = session.request.call_args_list[1]
        assert second.kwargs["params"] == {"pageSize": 2, "pageToken": "tok"}

    def test_delta_query_uses_filter_and_cursor(self, firestore, session, creds):
        tasks = [Task(name=n, updated_at=u) for n, u in (("a", 11), ("b", 12), ("c", 13))]
        docs = [
            {"document": {"name": f"projects/proj/x/tasks/{t.sync_id}", "fields": task_to_fields(t)}}
            for t in tasks
        ]
        session.request.side_effect = [
            _response(200, docs[:2]),
            _response(200, docs[2:] + [{"readTime": "now"}]),
        ]
        names = [t.name for t in firestore.iter_tasks(creds, since=10)]
        assert names == ["a", "b", "c"]

        first_query = session.request.call_args_list[0].kwargs["json"]["structuredQuery"]
        flt = first_query["where"]["fieldFilter"]
        assert flt["op"] == "GREATER_THAN"
        assert flt["value"] == {"integerValue": "10"}
        assert first_query["limit"] == 2
        assert "startAt" not in first_query

        second_query = session.request.call_args_list[1].kwargs["json"]["structuredQuery"]
        start = second_query["startAt"]
        assert start["before"] is False
        assert start["values"][0] == {"integerValue": "12"}
        assert start["values"][1]["referenceValue"].endswith(tasks[1].sync_id)

    def test_listing_missing_collection_is_empty(self, firestore, session, creds):
        session.request.return_value = _response(404)
        assert list(firestore.iter_edges(creds, EdgeKind.LISTED_UNDER)) == []
        assert not firestore.has_data(creds)


class TestLocalStore:
    """Tests for the directory-backed store."""

    def test_tasks_round_trip(self, remote, creds):
        task = Task(name="x", created_at=1, updated_at=5)
        remote.put_tasks(creds, [task])
        (fetched,) = list(remote.iter_tasks(creds))
        assert fetched.sync_id == task.sync_id
        assert fetched.updated_at == 5
        assert remote.has_data(creds)

    def test_since_filter_and_paging(self, remote, creds):
        remote.put_tasks(creds, [Task(name=f"t{i}", updated_at=i) for i in range(5)])
        page = remote.list_tasks_page(creds, since=1)
        assert [t.updated_at for t in page.items] == [2, 3]
        assert page.cursor is not None
        assert [t.updated_at for t in remote.iter_tasks(creds, since=1)] == [2, 3, 4]

    def test_identities_are_isolated(self, remote, creds):
        from taskroulette.auth import Credentials

        remote.put_tasks(creds, [Task(name="mine")])
        assert not remote.has_data(Credentials("someone-else", "t"))

    def test_edges_idempotent_and_delete(self, remote, creds):
        edge = SyncEdge("p", "c")
        remote.put_edges(creds, EdgeKind.LISTED_UNDER, [edge])
        remote.put_edges(creds, EdgeKind.LISTED_UNDER, [edge])
        assert list(remote.iter_edges(creds, EdgeKind.LISTED_UNDER)) == [edge]
        assert remote.delete_edge(creds, EdgeKind.LISTED_UNDER, edge) == RemoteResult.SUCCESS
        assert remote.delete_edge(creds, EdgeKind.LISTED_UNDER, edge) == RemoteResult.NOT_FOUND
        assert list(remote.iter_edges(creds, EdgeKind.LISTED_UNDER)) == []

    def test_unreadable_document_skipped(self, remote, creds):
        remote.put_tasks(creds, [Task(name="ok")])
        (remote.root / "users" / "user-1" / "tasks" / "bad.json").write_text("{broken")
        assert [t.name for t in remote.iter_tasks(creds)] == ["ok"]


class TestCreateRemote:
    """Tests for the factory."""

    def test_unconfigured(self):
        assert create_remote(SyncConfig()) is None
        assert create_remote(SyncConfig(backend="none")) is None

    def test_firestore(self):
        store = create_remote(SyncConfig(project_id="p", request_timeout_seconds=3))
        assert isinstance(store, FirestoreStore)
        assert store.timeout == 3

    def test_local(self, tmp_path):
        store = create_remote(SyncConfig(backend="local", local_path=tmp_path))
        assert isinstance(store, LocalStore)
        assert store.root == tmp_path
