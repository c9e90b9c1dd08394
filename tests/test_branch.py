"""Tests for branch operations (threadloom.operations.branch).

Tests cover:
- Sibling listing and indexing, including the root
- Branch switching with selection memory round-trips and the
  creation-time fallback
- Sibling navigation with wrap-around
- Active-path membership
- Grafting (structural checks only)
- Branch copies and in-place edits
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from threadloom import InvalidNodeRoleError, NodeStatus, RootNodeError
from threadloom.models.node import META_ERROR
from threadloom.operations import branch, tree

from tests.conftest import build_chain


@pytest.fixture
def forked(session):
    """root -> q -> (a1 -> f1, a2 -> f2); active leaf f2."""
    q, a1, f1 = build_chain(
        session, ("user", "q"), ("assistant", "a1"), ("user", "f1")
    )
    a2, f2 = build_chain(session, ("assistant", "a2"), ("user", "f2"), parent_id=q.id)
    return {"q": q, "a1": a1, "f1": f1, "a2": a2, "f2": f2}


# ---------------------------------------------------------------------------
# Siblings
# ---------------------------------------------------------------------------


class TestSiblings:
    def test_in_child_order(self, session, forked):
        ids = [n.id for n in branch.get_siblings(session, forked["a2"].id)]
        assert ids == [forked["a1"].id, forked["a2"].id]

    def test_root_is_own_sibling(self, session):
        assert branch.get_siblings(session, session.root_node_id) == [session.root]

    def test_sibling_index(self, session, forked):
        assert branch.sibling_index(session, forked["a1"].id) == 0
        assert branch.sibling_index(session, forked["a2"].id) == 1


# ---------------------------------------------------------------------------
# Switching
# ---------------------------------------------------------------------------


class TestSwitchBranch:
    def test_round_trip_restores_exact_leaf(self, session, forked):
        # go deeper on branch 1 first so memory matters
        deeper = build_chain(session, ("assistant", "deep"), parent_id=forked["f1"].id)[0]
        branch.switch_branch(session, forked["a2"].id)
        assert session.active_leaf_id == forked["f2"].id
        branch.switch_branch(session, forked["a1"].id)
        assert session.active_leaf_id == deeper.id

    def test_follows_remembered_child_over_newest(self, session, forked):
        a1 = forked["a1"]
        tree.create_node(session, a1.id, content="newer")
        leaf = branch.switch_branch(session, a1.id)
        assert leaf.id == forked["f1"].id

    def test_falls_back_to_newest_child(self, session, forked):
        a1 = forked["a1"]
        a1.last_selected_child_id = None
        newer = tree.create_node(session, a1.id, content="newer")
        assert branch.switch_branch(session, a1.id).id == newer.id

    def test_fallback_picks_newest_by_creation_time(self, session, forked):
        a1 = forked["a1"]
        a1.last_selected_child_id = None
        newest = tree.create_node(session, a1.id, content="newest")
        grafted = tree.create_node(session, forked["q"].id, content="older graft")
        grafted.timestamp = newest.timestamp - timedelta(minutes=5)
        assert tree.reparent_subtree(session, grafted.id, a1.id)

        assert a1.children_ids[-1] == grafted.id
        assert branch.switch_branch(session, a1.id).id == newest.id
        assert a1.last_selected_child_id == newest.id

    def test_writes_memory_along_path(self, session, forked):
        branch.switch_branch(session, forked["a1"].id)
        assert forked["q"].last_selected_child_id == forked["a1"].id

    def test_switch_to_leaf_itself(self, session, forked):
        branch.switch_branch(session, forked["f1"].id)
        assert session.active_leaf_id == forked["f1"].id


class TestSwitchToSibling:
    def test_next_wraps(self, session, forked):
        leaf = branch.switch_to_sibling(session, forked["a2"].id, "next")
        assert leaf.id == forked["f1"].id

    def test_prev(self, session, forked):
        leaf = branch.switch_to_sibling(session, forked["a2"].id, "prev")
        assert leaf.id == forked["f1"].id
        leaf = branch.switch_to_sibling(session, forked["a1"].id, "prev")
        assert leaf.id == forked["f2"].id

    def test_only_child_is_noop(self, session, forked):
        before = session.active_leaf_id
        branch.switch_to_sibling(session, forked["q"].id, "next")
        assert session.active_leaf_id == before


class TestActivePath:
    def test_membership(self, session, forked):
        assert branch.is_node_in_active_path(session, forked["q"].id)
        assert branch.is_node_in_active_path(session, forked["f2"].id)
        assert not branch.is_node_in_active_path(session, forked["a1"].id)

    def test_root_never_in_path(self, session, forked):
        assert branch.is_node_in_active_path(session, session.root_node_id) is False


# ---------------------------------------------------------------------------
# Graft
# ---------------------------------------------------------------------------


class TestGraft:
    def test_moves_subtree(self, session, forked):
        assert branch.graft_branch(session, forked["f2"].id, forked["a1"].id)
        assert forked["f2"].parent_id == forked["a1"].id
        assert forked["a1"].children_ids == [forked["f1"].id, forked["f2"].id]

    def test_role_alternation_not_enforced(self, session, forked):
        # user under user is structurally fine
        assert branch.graft_branch(session, forked["f2"].id, forked["q"].id)
        assert tree.validate_tree(session)[0]

    def test_cycle_rejected(self, session, forked):
        assert not branch.graft_branch(session, forked["q"].id, forked["f1"].id)
        assert forked["q"].parent_id == session.root_node_id

    def test_success_logged(self, session, forked, caplog):
        with caplog.at_level("INFO", logger="threadloom.operations.branch"):
            branch.graft_branch(session, forked["f2"].id, forked["a1"].id)
        assert "Grafted" in caplog.text


# ---------------------------------------------------------------------------
# Create / edit
# ---------------------------------------------------------------------------


class TestCreateBranch:
    def test_copies_as_childless_sibling(self, session, forked):
        a1 = forked["a1"]
        a1.metadata[META_ERROR] = "old failure"
        a1.metadata["note"] = "keep"
        copy = branch.create_branch(session, a1.id)
        assert copy.parent_id == forked["q"].id
        assert copy.content == "a1"
        assert copy.children_ids == []
        assert copy.status == NodeStatus.COMPLETE
        assert copy.metadata == {"note": "keep"}
        assert session.active_leaf_id == copy.id

    def test_root_rejected(self, session):
        with pytest.raises(RootNodeError):
            branch.create_branch(session, session.root_node_id)

    def test_system_node_rejected(self, session):
        node = tree.create_node(session, session.root_node_id, role="system")
        with pytest.raises(InvalidNodeRoleError):
            branch.create_branch(session, node.id)


class TestEditMessage:
    def test_edits_in_place(self, session, forked):
        branch.edit_message(session, forked["q"].id, "new question")
        assert forked["q"].content == "new question"
        assert forked["q"].children_ids == [forked["a1"].id, forked["a2"].id]

    def test_system_rejected(self, session):
        with pytest.raises(InvalidNodeRoleError):
            branch.edit_message(session, session.root_node_id, "x")
