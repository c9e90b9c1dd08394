"""Tests for the Conversation facade (threadloom.conversation).

Tests cover:
- End-to-end edit scenarios: delete, branch round-trip, rejected graft,
  toggle with undo/redo
- Every manual mutation is recorded and persisted
- A mutation that raises leaves the tree unchanged
- Queries: active path, LLM context, siblings
- Open/load through a SessionStore with orphan repair
"""

from __future__ import annotations

import pytest

from threadloom import (
    CharTokenCounter,
    Conversation,
    HistoryActionTag,
    HistoryConfig,
    InvalidNodeRoleError,
    NodeNotFoundError,
    NodeStatus,
    RootNodeError,
    ThreadloomConfig,
)
from threadloom.models.node import GENERATION_INTERRUPTED, META_ERROR

from tests.conftest import RecordingPersister


@pytest.fixture
def chat(convo):
    """convo with root -> q (user) -> a (assistant)."""
    q = convo.create_node(convo.session.root_node_id, "q")
    a = convo.create_node(q.id, "a", role="assistant")
    convo.switch_branch(a.id)
    convo.clear_history()
    return convo, q, a


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_delete_only_branch_resets_to_root(self, chat):
        convo, q, a = chat
        removed = convo.delete_node(q.id)
        assert {n.id for n in removed} == {q.id, a.id}
        assert convo.active_leaf.id == convo.session.root_node_id
        assert convo.active_path() == []

    def test_branch_switch_round_trip(self, chat):
        convo, q, a = chat
        b = convo.create_node(q.id, "b", role="assistant")
        convo.switch_branch(b.id)
        assert convo.active_leaf.id == b.id
        convo.switch_branch(a.id)
        assert convo.active_leaf.id == a.id

    def test_graft_into_descendant_rejected(self, chat):
        convo, q, a = chat
        before = convo.session.model_dump(exclude={"updated_at"})
        assert convo.graft_branch(q.id, a.id) is False
        assert convo.session.model_dump(exclude={"updated_at"}) == before
        assert not convo.can_undo()

    def test_toggle_undo_redo(self, chat):
        convo, q, a = chat
        assert convo.toggle_enabled(a.id) is False
        assert convo.undo()
        assert convo.get_node(a.id).is_enabled is True
        assert convo.redo()
        assert convo.get_node(a.id).is_enabled is False


# ---------------------------------------------------------------------------
# Recording and persistence
# ---------------------------------------------------------------------------


class TestRecording:
    @pytest.mark.parametrize(
        ("action", "tag"),
        [
            (lambda c, q, a: c.edit_message(a.id, "edited"), HistoryActionTag.NODE_EDIT),
            (lambda c, q, a: c.update_node_data(a.id, content="x"), HistoryActionTag.NODE_DATA_UPDATE),
            (lambda c, q, a: c.toggle_enabled(q.id), HistoryActionTag.NODE_TOGGLE_ENABLED),
            (lambda c, q, a: c.delete_node(a.id), HistoryActionTag.NODES_DELETE),
            (lambda c, q, a: c.create_branch(a.id), HistoryActionTag.BRANCH_CREATE),
            (lambda c, q, a: c.create_branch_from_edit(q.id, "q2"), HistoryActionTag.BRANCH_CREATE_FROM_EDIT),
            (lambda c, q, a: c.graft_branch(a.id, c.session.root_node_id), HistoryActionTag.BRANCH_GRAFT),
            (lambda c, q, a: c.move_node(q.id, a.id), HistoryActionTag.NODE_MOVE),
        ],
    )
    def test_action_recorded_and_undoable(self, chat, persister, action, tag):
        convo, q, a = chat
        original = {k: v.model_dump() for k, v in convo.session.nodes.items()}
        leaf = convo.session.active_leaf_id
        saved = len(persister.saved)

        action(convo, q, a)

        assert convo.history_entries()[-1].action_tag == tag
        assert len(persister.saved) == saved + 1
        convo.undo()
        assert {k: v.model_dump() for k, v in convo.session.nodes.items()} == original
        assert convo.session.active_leaf_id == leaf

    def test_switch_to_sibling_recorded(self, chat):
        convo, q, a = chat
        b = convo.create_node(q.id, "b", role="assistant")
        convo.switch_to_sibling(a.id, "next")
        assert convo.active_leaf.id == b.id
        assert convo.history_entries()[-1].action_tag == HistoryActionTag.ACTIVE_NODE_SWITCH

    def test_branch_from_edit_becomes_active(self, chat):
        convo, q, a = chat
        edited = convo.create_branch_from_edit(q.id, "better q")
        assert convo.active_leaf.id == edited.id
        assert convo.get_node(q.id).children_ids == [a.id]

    def test_jump_to_state(self, chat):
        convo, q, a = chat
        convo.edit_message(a.id, "one")
        convo.edit_message(a.id, "two")
        convo.jump_to_state(0)
        assert convo.get_node(a.id).content == "a"
        convo.jump_to_state(2)
        assert convo.get_node(a.id).content == "two"

    def test_history_limit_from_config(self, invoker):
        convo = Conversation.create(
            invoker=invoker,
            token_counter=CharTokenCounter(),
            config=ThreadloomConfig(history=HistoryConfig(max_length=3)),
        )
        node = convo.create_node(convo.session.root_node_id, "x")
        for _ in range(5):
            convo.toggle_enabled(node.id)
        assert len(convo.history_entries()) == 3

    def test_persist_failure_keeps_change(self, invoker, caplog):
        convo = Conversation.create(
            invoker=invoker,
            persister=RecordingPersister(fail=True),
            token_counter=CharTokenCounter(),
        )
        with caplog.at_level("WARNING"):
            node = convo.create_node(convo.session.root_node_id, "x")
        assert node.id in convo.session.nodes
        assert "Failed to persist" in caplog.text


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


class TestRollback:
    def test_failed_mutation_leaves_tree_unchanged(self, chat):
        convo, q, a = chat
        before = {k: v.model_dump() for k, v in convo.session.nodes.items()}
        with pytest.raises(ValueError):
            convo.update_node_data(a.id, content="changed", colour="red")
        assert {k: v.model_dump() for k, v in convo.session.nodes.items()} == before
        assert convo.history_entries() == []

    def test_errors_propagate(self, chat):
        convo, q, a = chat
        with pytest.raises(RootNodeError):
            convo.delete_node(convo.session.root_node_id)
        with pytest.raises(NodeNotFoundError):
            convo.toggle_enabled("missing")
        with pytest.raises(InvalidNodeRoleError):
            convo.edit_message(convo.session.root_node_id, "x")
        assert convo.validate() == (True, [])


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_llm_context_skips_disabled_and_system(self, chat):
        convo, q, a = chat
        note = convo.create_node(a.id, "note", role="system")
        convo.switch_branch(note.id)
        convo.toggle_enabled(q.id)
        assert [n.id for n in convo.active_path()] == [q.id, a.id, note.id]
        assert [n.id for n in convo.llm_context()] == [a.id]

    def test_active_path_membership(self, chat):
        convo, q, a = chat
        assert convo.is_node_in_active_path(a.id)
        assert not convo.is_node_in_active_path(convo.session.root_node_id)

    def test_build_context(self, chat):
        convo, q, a = chat
        context = convo.build_context()
        assert context.to_dicts() == [
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "a"},
        ]


# ---------------------------------------------------------------------------
# Storage-backed conversations
# ---------------------------------------------------------------------------


class TestStoreBacked:
    def test_load_repairs_orphans(self, store, invoker):
        convo = Conversation.create(
            invoker=invoker, persister=store, token_counter=CharTokenCounter(),
        )
        q = convo.create_node(convo.session.root_node_id, "q")
        stuck = convo.create_node(q.id, "", role="assistant")
        convo.update_node_data(stuck.id, status="generating")

        loaded = Conversation.load(
            convo.session.id, store, invoker=invoker, token_counter=CharTokenCounter(),
        )
        node = loaded.get_node(stuck.id)
        assert node.status == NodeStatus.ERROR
        assert node.metadata[META_ERROR] == GENERATION_INTERRUPTED
        assert store.load(convo.session.id).nodes[stuck.id].status == NodeStatus.ERROR

    def test_load_repairs_dangling_leaf(self, store, invoker):
        convo = Conversation.create(
            invoker=invoker, persister=store, token_counter=CharTokenCounter(),
        )
        convo.session.active_leaf_id = "vanished"
        store.persist(convo.session)
        loaded = Conversation.load(
            convo.session.id, store, invoker=invoker, token_counter=CharTokenCounter(),
        )
        assert loaded.active_leaf.id == loaded.session.root_node_id

    def test_open_in_memory(self, invoker):
        convo = Conversation.open(invoker=invoker, token_counter=CharTokenCounter())
        assert convo.session.active_leaf_id == convo.session.root_node_id

    def test_open_existing(self, tmp_path, invoker):
        config = ThreadloomConfig(db_path=str(tmp_path / "chat.db"))
        first = Conversation.open(config=config, invoker=invoker, token_counter=CharTokenCounter())
        first.create_node(first.session.root_node_id, "remember me")
        again = Conversation.open(
            first.session.id, config=config, invoker=invoker, token_counter=CharTokenCounter(),
        )
        contents = [n.content for n in again.session.nodes.values() if n.content]
        assert contents == ["remember me"]
