"""Tests for the durable outbox."""

from __future__ import annotations

from taskroulette.models import EntityType, OutboxAction


def _enqueue(store, entity, action, key1, key2=""):
    with store.transaction() as conn:
        return store.outbox.enqueue(conn, entity, action, key1, key2)


class TestOutbox:
    """Tests for enqueue/peek/consume semantics."""

    def test_peek_is_non_destructive_and_ordered(self, store):
        _enqueue(store, EntityType.TASK, OutboxAction.REMOVE, "t1")
        _enqueue(store, EntityType.LISTED_UNDER, OutboxAction.ADD, "p", "c")
        first = store.outbox.peek()
        assert [e.key1 for e in first] == ["t1", "p"]
        assert store.outbox.peek() == first
        assert [e.key1 for e in store.outbox.peek(limit=1)] == ["t1"]

    def test_consume_deletes_one(self, store):
        entry_id = _enqueue(store, EntityType.TASK, OutboxAction.REMOVE, "t1")
        _enqueue(store, EntityType.TASK, OutboxAction.REMOVE, "t2")
        assert store.outbox.consume(entry_id)
        assert [e.key1 for e in store.outbox.peek()] == ["t2"]
        assert not store.outbox.consume(entry_id)

    def test_one_live_entry_per_key(self, store):
        _enqueue(store, EntityType.LISTED_UNDER, OutboxAction.ADD, "p", "c")
        _enqueue(store, EntityType.LISTED_UNDER, OutboxAction.REMOVE, "p", "c")
        _enqueue(store, EntityType.DEPENDS_ON, OutboxAction.ADD, "p", "c")
        entries = store.outbox.peek()
        assert len(entries) == 2
        assert entries[0].entity_type == EntityType.LISTED_UNDER
        assert entries[0].action == OutboxAction.REMOVE

    def test_replaced_entry_cannot_be_consumed(self, store):
        old_id = _enqueue(store, EntityType.LISTED_UNDER, OutboxAction.ADD, "p", "c")
        _enqueue(store, EntityType.LISTED_UNDER, OutboxAction.REMOVE, "p", "c")
        assert not store.outbox.consume(old_id)
        assert len(store.outbox) == 1

    def test_cancel_by_action(self, store):
        _enqueue(store, EntityType.TASK, OutboxAction.REMOVE, "t1")
        with store.transaction() as conn:
            assert store.outbox.cancel(conn, EntityType.TASK, "t1", action=OutboxAction.ADD) == 0
            assert store.outbox.cancel(conn, EntityType.TASK, "t1", action=OutboxAction.REMOVE) == 1
        assert len(store.outbox) == 0

    def test_cancel_removals_for_matches_either_key(self, store):
        _enqueue(store, EntityType.TASK, OutboxAction.REMOVE, "x")
        _enqueue(store, EntityType.LISTED_UNDER, OutboxAction.REMOVE, "p", "x")
        _enqueue(store, EntityType.DEPENDS_ON, OutboxAction.REMOVE, "x", "q")
        _enqueue(store, EntityType.LISTED_UNDER, OutboxAction.ADD, "x", "y")
        _enqueue(store, EntityType.TASK, OutboxAction.REMOVE, "other")
        with store.transaction() as conn:
            assert store.outbox.cancel_removals_for(conn, "x") == 3
        assert sorted((e.action.value, e.key1) for e in store.outbox.peek()) == [
            ("add", "x"),
            ("remove", "other"),
        ]

    def test_pending_removal(self, store):
        _enqueue(store, EntityType.DEPENDS_ON, OutboxAction.REMOVE, "a", "b")
        assert store.outbox.pending_removal(EntityType.DEPENDS_ON, "a", "b")
        assert not store.outbox.pending_removal(EntityType.DEPENDS_ON, "b", "a")
        assert not store.outbox.pending_removal(EntityType.LISTED_UNDER, "a", "b")

    def test_rolled_back_transaction_leaves_no_entry(self, store):
        try:
            with store.transaction() as conn:
                store.outbox.enqueue(conn, EntityType.TASK, OutboxAction.REMOVE, "t1")
                raise ValueError("abort")
        except ValueError:
            pass
        assert len(store.outbox) == 0
