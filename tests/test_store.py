"""Tests for the SQLite graph store."""

from __future__ import annotations

import itertools
import random

import pytest

from taskroulette.errors import StructuralViolation, TaskNotFound
from taskroulette.models import EdgeKind, EntityType, OutboxAction, SyncStatus, Task
from taskroulette.store import EdgeApply, GraphStore


def _graph_state(store: GraphStore):
    return (
        store.edges(EdgeKind.LISTED_UNDER),
        store.edges(EdgeKind.DEPENDS_ON),
        [e.model_dump() for e in store.outbox.peek()],
        [t.model_dump() for t in store.all_tasks_with_sync_id()],
    )


@pytest.fixture
def chain(store):
    """a -> b -> c listed-under chain."""
    a = store.add_task("a")
    b = store.add_task("b", [a.id])
    c = store.add_task("c", [b.id])
    return a, b, c


class TestAddTask:
    """Tests for task creation."""

    def test_add_task_is_pending(self, store):
        task = store.add_task("Write report")
        assert task.id is not None
        assert task.sync_status == SyncStatus.PENDING
        assert store.get_task(task.id).name == "Write report"
        assert store.get_task_by_sync_id(task.sync_id).id == task.id

    def test_add_task_with_parents(self, store):
        p1 = store.add_task("p1")
        p2 = store.add_task("p2")
        child = store.add_task("child", [p1.id, p2.id])
        assert sorted(store.parent_ids(child.id)) == [p1.id, p2.id]
        assert len(store.outbox) == 2

    def test_add_task_unknown_parent_rolls_back(self, store):
        with pytest.raises(TaskNotFound):
            store.add_task("orphan", [999])
        assert store.all_tasks() == []

    def test_add_tasks_batch(self, store):
        parent = store.add_task("parent")
        created = store.add_tasks_batch(["x", "y", "z"], parent.id)
        assert [t.name for t in created] == ["x", "y", "z"]
        assert [t.name for t in store.children_of(parent.id)] == ["x", "y", "z"]


class TestStructuralOps:
    """Tests for link/unlink and dependencies."""

    def test_link_enqueues_add(self, store):
        a, b = store.add_task("a"), store.add_task("b")
        assert store.link_edge(a.id, b.id)
        entries = store.outbox.peek()
        assert len(entries) == 1
        assert entries[0].entity_type == EntityType.LISTED_UNDER
        assert entries[0].action == OutboxAction.ADD
        assert (entries[0].key1, entries[0].key2) == (a.sync_id, b.sync_id)
        assert store.edge_status(EdgeKind.LISTED_UNDER, a.id, b.id) == SyncStatus.PENDING

    def test_link_existing_edge_is_noop(self, store):
        a, b = store.add_task("a"), store.add_task("b")
        store.link_edge(a.id, b.id)
        assert store.link_edge(a.id, b.id) is False
        assert len(store.outbox) == 1

    def test_self_link_rejected(self, store):
        a = store.add_task("a")
        with pytest.raises(StructuralViolation):
            store.link_edge(a.id, a.id)

    def test_cycle_rejected_and_graph_unchanged(self, store, chain):
        a, _, c = chain
        before = _graph_state(store)
        with pytest.raises(StructuralViolation):
            store.link_edge(c.id, a.id)
        assert _graph_state(store) == before

    def test_link_unknown_task(self, store):
        a = store.add_task("a")
        with pytest.raises(TaskNotFound):
            store.link_edge(a.id, 42)

    def test_random_links_stay_acyclic(self, store):
        rng = random.Random(7)
        tasks = [store.add_task(f"t{i}") for i in range(8)]
        for _ in range(60):
            a, b = rng.sample(tasks, 2)
            before = _graph_state(store)
            try:
                store.link_edge(a.id, b.id)
            except StructuralViolation:
                assert _graph_state(store) == before
        for t in tasks:
            assert not store.has_path(t.id, t.id)

    def test_unlink_enqueues_remove_replacing_add(self, store):
        a, b = store.add_task("a"), store.add_task("b")
        store.link_edge(a.id, b.id)
        assert store.unlink_edge(a.id, b.id)
        entries = store.outbox.peek()
        assert len(entries) == 1
        assert entries[0].action == OutboxAction.REMOVE
        assert store.unlink_edge(a.id, b.id) is False

    def test_move_task(self, store):
        p1, p2 = store.add_task("p1"), store.add_task("p2")
        child = store.add_task("child", [p1.id])
        store.move_task(child.id, p1.id, p2.id)
        assert store.parent_ids(child.id) == [p2.id]

    def test_move_into_own_subtree_rejected(self, store, chain):
        a, b, c = chain
        root = store.add_task("root")
        store.link_edge(root.id, a.id)
        with pytest.raises(StructuralViolation):
            store.move_task(a.id, root.id, c.id)
        assert store.parent_ids(a.id) == [root.id]

    def test_dependencies_acyclic_independently(self, store, chain):
        a, b, c = chain
        # depends-on is a separate relation: a may depend on its own
        # descendant c.
        assert store.add_dependency(a.id, c.id)
        assert store.has_dependency_path(a.id, c.id)
        with pytest.raises(StructuralViolation):
            store.add_dependency(c.id, a.id)
        assert store.blockers_of(a.id)[0].id == c.id

    def test_remove_dependency(self, store):
        a, b = store.add_task("a"), store.add_task("b")
        store.add_dependency(a.id, b.id)
        assert store.remove_dependency(a.id, b.id)
        assert store.blockers_of(a.id) == []


class TestDeleteRestore:
    """Tests for deletion and the undo-delete command."""

    def test_delete_enqueues_removes(self, store, chain):
        a, b, c = chain
        store.add_dependency(c.id, a.id)
        with store.transaction() as conn:
            store.outbox.clear(conn)
        snapshot = store.delete_task(b.id)
        assert snapshot.parent_ids == [a.id]
        assert snapshot.child_ids == [c.id]
        assert store.get_task(b.id) is None
        removes = {(e.entity_type, e.key1, e.key2) for e in store.outbox.peek()}
        assert (EntityType.TASK, b.sync_id, "") in removes
        assert (EntityType.LISTED_UNDER, a.sync_id, b.sync_id) in removes
        assert (EntityType.LISTED_UNDER, b.sync_id, c.sync_id) in removes

    def test_delete_then_restore(self, store, chain):
        a, b, c = chain
        store.mark_all_synced()
        with store.transaction() as conn:
            store.outbox.clear(conn)
        snapshot = store.delete_task(b.id)
        restored = store.restore_task(snapshot)

        assert restored.id == b.id
        assert restored.sync_id == b.sync_id
        assert restored.sync_status == SyncStatus.PENDING
        assert restored.updated_at > b.updated_at
        removes = [e for e in store.outbox.peek() if e.action == OutboxAction.REMOVE]
        assert not any(b.sync_id in (e.key1, e.key2) for e in removes)
        assert store.parent_ids(b.id) == [a.id]
        assert store.child_ids(b.id) == [c.id]

    def test_restore_skips_vanished_neighbours(self, store, chain):
        a, b, c = chain
        snapshot = store.delete_task(b.id)
        store.delete_task(c.id)
        restored = store.restore_task(snapshot)
        assert store.parent_ids(restored.id) == [a.id]
        assert store.child_ids(restored.id) == []

    def test_delete_and_reparent(self, store, chain):
        a, b, c = chain
        snapshot = store.delete_task_and_reparent(b.id)
        assert store.parent_ids(c.id) == [a.id]
        assert snapshot.added_links == [(a.id, c.id)]

        store.restore_task(snapshot)
        assert store.parent_ids(c.id) == [b.id]
        assert store.parent_ids(b.id) == [a.id]

    def test_delete_subtree_and_restore(self, store, chain):
        a, b, c = chain
        other = store.add_task("other")
        store.add_dependency(other.id, c.id)
        snapshot = store.delete_subtree(a.id)
        assert {t.id for t in snapshot.tasks} == {a.id, b.id, c.id}
        assert [t.id for t in store.all_tasks()] == [other.id]

        store.restore_subtree(snapshot)
        assert store.child_ids(a.id) == [b.id]
        assert store.child_ids(b.id) == [c.id]
        assert store.blockers_of(other.id)[0].id == c.id
        assert all(t.sync_status == SyncStatus.PENDING for t in store.all_tasks())
        for task in snapshot.tasks:
            assert not store.outbox.pending_removal(EntityType.TASK, task.sync_id)

    def test_delete_unknown(self, store):
        with pytest.raises(TaskNotFound):
            store.delete_task(1)


class TestFieldMutations:
    """Tests for per-field task updates."""

    def test_update_marks_pending_and_bumps_timestamp(self, store):
        task = store.add_task("x")
        store.mark_all_synced()
        renamed = store.rename_task(task.id, "y")
        assert renamed.name == "y"
        assert renamed.sync_status == SyncStatus.PENDING
        assert renamed.updated_at > task.updated_at

    def test_updated_at_is_monotonic_with_slow_clock(self):
        s = GraphStore(":memory:", clock=lambda: 500)
        task = s.add_task("x")
        first = s.set_priority(task.id, 2).updated_at
        second = s.set_priority(task.id, 3).updated_at
        assert first < second
        s.close()

    def test_state_toggles(self, store):
        task = store.add_task("x")
        assert store.complete_task(task.id).is_completed
        assert not store.uncomplete_task(task.id).is_completed
        assert store.skip_task(task.id).is_skipped
        assert not store.unskip_task(task.id).is_skipped
        assert store.start_task(task.id).is_started
        assert not store.unstart_task(task.id).is_started
        assert store.set_url(task.id, "https://example.com").url == "https://example.com"
        assert store.set_quick_task(task.id, 1).quick_task == 1

    def test_worked_on_and_undo(self, store):
        task = store.add_task("x")
        marked = store.mark_worked_on(task.id)
        assert marked.last_worked_at is not None
        assert store.unmark_worked_on(task.id, restore_to=123).last_worked_at == 123
        assert store.unmark_worked_on(task.id).last_worked_at is None

    def test_field_updates_do_not_touch_outbox(self, store):
        task = store.add_task("x")
        store.rename_task(task.id, "y")
        assert len(store.outbox) == 0


class TestQueries:
    """Tests for read-only consumer queries."""

    def test_roots_children_parents(self, store, chain):
        a, b, c = chain
        assert [t.id for t in store.root_tasks()] == [a.id]
        assert [t.id for t in store.children_of(a.id)] == [b.id]
        assert [t.id for t in store.parents_of(c.id)] == [b.id]

    def test_leaf_tasks(self, store, chain):
        a, b, c = chain
        assert [t.id for t in store.leaf_tasks()] == [c.id]
        store.complete_task(c.id)
        assert [t.id for t in store.leaf_tasks()] == [b.id]

    def test_completed_tasks_hidden(self, store, chain):
        a, b, c = chain
        store.complete_task(b.id)
        assert store.children_of(a.id) == []
        assert [t.id for t in store.completed_tasks()] == [b.id]
        assert len(store.all_tasks(include_completed=True)) == 3

    def test_blocked_task_ids(self, store):
        a, b, c = (store.add_task(n) for n in "abc")
        store.add_dependency(a.id, b.id)
        store.add_dependency(c.id, b.id)
        assert store.blocked_task_ids([a.id, b.id, c.id]) == {a.id, c.id}
        assert store.blocked_by_names([a.id]) == {a.id: "b"}
        store.complete_task(b.id)
        assert store.blocked_task_ids([a.id, b.id, c.id]) == set()
        assert store.blocked_task_ids([]) == set()

    def test_ancestor_path(self, store, chain):
        a, b, c = chain
        assert [t.id for t in store.ancestor_path(c.id)] == [a.id, b.id, c.id]
        assert store.ancestor_path(999) == []

    def test_has_path(self, store, chain):
        a, _, c = chain
        assert store.has_path(a.id, c.id)
        assert not store.has_path(c.id, a.id)


class TestSyncFacing:
    """Tests for the operations push and pull rely on."""

    def test_mark_tasks_synced_skips_rows_edited_since_read(self, store):
        x, y = store.add_task("x"), store.add_task("y")
        pending = store.pending_tasks()
        store.rename_task(y.id, "y2")
        assert store.mark_tasks_synced(pending) == 1
        assert store.get_task(x.id).sync_status == SyncStatus.SYNCED
        assert store.get_task(y.id).sync_status == SyncStatus.PENDING

    def test_sync_edges_by_status(self, store):
        a, b, c = (store.add_task(n) for n in "abc")
        store.link_edge(a.id, b.id)
        store.link_edge(a.id, c.id)
        assert store.mark_edge_synced(EdgeKind.LISTED_UNDER, a.sync_id, b.sync_id)
        assert [tuple(e) for e in store.synced_edges(EdgeKind.LISTED_UNDER)] == [
            (a.sync_id, b.sync_id)
        ]
        pending = store.sync_edges(EdgeKind.LISTED_UNDER, SyncStatus.PENDING)
        assert [tuple(e) for e in pending] == [(a.sync_id, c.sync_id)]
        assert len(store.sync_edges(EdgeKind.LISTED_UNDER)) == 2

    def test_upsert_inserts_unknown_as_synced(self, store):
        remote = Task(name="from cloud", created_at=5, updated_at=50)
        assert store.upsert_from_remote(remote)
        local = store.get_task_by_sync_id(remote.sync_id)
        assert local.sync_status == SyncStatus.SYNCED
        assert local.name == "from cloud"

    def test_upsert_last_write_wins(self, store):
        task = store.add_task("local")
        newer = task.model_copy(update={"name": "remote", "updated_at": task.updated_at + 10})
        older = task.model_copy(update={"name": "stale", "updated_at": task.updated_at - 10})
        same = task.model_copy(update={"name": "tie", "updated_at": task.updated_at})

        assert not store.upsert_from_remote(older)
        assert not store.upsert_from_remote(same)
        assert store.get_task(task.id).name == "local"
        assert store.get_task(task.id).sync_status == SyncStatus.PENDING

        assert store.upsert_from_remote(newer)
        assert store.get_task(task.id).name == "remote"
        assert store.get_task(task.id).sync_status == SyncStatus.SYNCED
        assert store.get_task(task.id).id == task.id

    def test_upsert_skips_task_deleted_locally(self, store):
        task = store.add_task("gone")
        store.delete_task(task.id)
        assert not store.upsert_from_remote(task.model_copy(update={"id": None}))
        assert store.get_task_by_sync_id(task.sync_id) is None

    def test_apply_remote_edge_outcomes(self, store, chain):
        a, b, c = chain
        d = store.add_task("d")
        kind = EdgeKind.LISTED_UNDER
        with store.transaction() as conn:
            store.outbox.clear(conn)
        assert store.apply_remote_edge(kind, a.sync_id, b.sync_id) == EdgeApply.CONFIRMED
        assert store.edge_status(kind, a.id, b.id) == SyncStatus.SYNCED
        assert store.apply_remote_edge(kind, "unknown", a.sync_id) == EdgeApply.SKIPPED
        assert store.apply_remote_edge(kind, c.sync_id, a.sync_id) == EdgeApply.REJECTED
        assert store.apply_remote_edge(kind, c.sync_id, d.sync_id) == EdgeApply.ADDED
        assert store.edge_status(kind, c.id, d.id) == SyncStatus.SYNCED

    def test_apply_remote_edge_keeps_undelivered_add_pending(self, store, chain):
        a, b, _ = chain
        kind = EdgeKind.LISTED_UNDER
        assert store.apply_remote_edge(kind, a.sync_id, b.sync_id) == EdgeApply.CONFIRMED
        assert store.edge_status(kind, a.id, b.id) == SyncStatus.PENDING
        assert store.outbox.pending_action(EntityType.LISTED_UNDER, OutboxAction.ADD, a.sync_id, b.sync_id)

    def test_apply_remote_edge_respects_pending_unlink(self, store, chain):
        a, b, _ = chain
        store.unlink_edge(a.id, b.id)
        result = store.apply_remote_edge(EdgeKind.LISTED_UNDER, a.sync_id, b.sync_id)
        assert result == EdgeApply.SKIPPED
        assert store.edge_status(EdgeKind.LISTED_UNDER, a.id, b.id) is None

    def test_remove_edge_from_remote_only_synced(self, store):
        a, b, c = (store.add_task(n) for n in "abc")
        store.link_edge(a.id, b.id)
        store.link_edge(a.id, c.id)
        store.mark_edge_synced(EdgeKind.LISTED_UNDER, a.sync_id, b.sync_id)
        queued = len(store.outbox)

        assert store.remove_edge_from_remote(EdgeKind.LISTED_UNDER, a.sync_id, b.sync_id)
        assert not store.remove_edge_from_remote(EdgeKind.LISTED_UNDER, a.sync_id, c.sync_id)
        assert store.child_ids(a.id) == [c.id]
        assert len(store.outbox) == queued

    def test_listeners_notified_for_local_changes_only(self, store):
        calls = []
        store.add_listener(lambda: calls.append(1))
        task = store.add_task("x")
        assert calls == [1]
        store.upsert_from_remote(Task(name="remote", updated_at=1))
        store.mark_tasks_synced([task])
        assert calls == [1]

    def test_failing_listener_does_not_break_commit(self, store):
        def boom():
            raise RuntimeError("listener bug")

        store.add_listener(boom)
        task = store.add_task("x")
        assert store.get_task(task.id) is not None

    def test_wipe(self, store, chain):
        store.wipe()
        assert store.all_tasks_with_sync_id() == []
        assert store.edges(EdgeKind.LISTED_UNDER) == []
        assert len(store.outbox) == 0

    def test_file_backed_store_persists(self, tmp_path):
        path = tmp_path / "db" / "tasks.db"
        with GraphStore(path) as s:
            task = s.add_task("persist me")
        with GraphStore(path) as s:
            assert s.get_task(task.id).name == "persist me"
            assert len(s.outbox) == 0


class TestTransactions:
    """Tests for atomicity."""

    def test_exception_rolls_back(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as conn:
                conn.execute(
                    "INSERT INTO tasks (sync_id, name, created_at, updated_at) "
                    "VALUES ('s', 'n', 1, 1)"
                )
                raise RuntimeError("abort")
        assert store.all_tasks() == []

    def test_nested_transactions_join(self, store):
        with store.transaction():
            store.add_task("a")
            store.add_task("b")
        assert len(store.all_tasks()) == 2

    def test_every_ordering_of_a_triangle_rejects_exactly_one(self):
        for order in itertools.permutations([("a", "b"), ("b", "c"), ("c", "a")]):
            with GraphStore(":memory:") as s:
                ids = {n: s.add_task(n).id for n in "abc"}
                rejected = 0
                for src, tgt in order:
                    try:
                        s.link_edge(ids[src], ids[tgt])
                    except StructuralViolation:
                        rejected += 1
                assert rejected == 1
                assert len(s.edges(EdgeKind.LISTED_UNDER)) == 2
