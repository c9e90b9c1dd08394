"""Undo/redo engine for Threadloom.

History lives on the session as ``session.history`` and
``session.history_index``. Each entry holds the tree state *after* its
action, either as a full snapshot or as deltas against the previous
entry; ``history[0]`` is always a snapshot of the state before the first
recorded action.

Deltas are computed by diffing the tree before and after a mutation, so
every mutation entry point records history the same way::

    before = capture_state(session)
    tree.toggle_enabled(session, node_id)
    manager.record(session, HistoryActionTag.NODE_TOGGLE_ENABLED, before)

Undo applies an entry's inverse deltas in reverse order; a snapshot entry
is undone by rebuilding the previous state from the nearest earlier
snapshot. Callers must re-validate the active leaf after undo, redo or
jump (see :func:`threadloom.operations.tree.ensure_valid_active_leaf`).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Union

from threadloom.exceptions import HistoryIndexError
from threadloom.models.config import HistoryConfig
from threadloom.models.history import (
    ActiveLeafDelta,
    CreateDelta,
    DeleteDelta,
    HistoryActionTag,
    HistoryContext,
    HistoryDelta,
    HistoryEntry,
    RelationChange,
    RelationDelta,
    TreeSnapshot,
    UpdateDelta,
)

if TYPE_CHECKING:
    from threadloom.models.node import MessageNode
    from threadloom.models.session import ChatSession

logger = logging.getLogger(__name__)

TreeHolder = Union["ChatSession", TreeSnapshot]


# ------------------------------------------------------------------
# State capture and diffing
# ------------------------------------------------------------------


def capture_state(session: ChatSession) -> TreeSnapshot:
    """Deep-copy the session's node map and active leaf."""
    return TreeSnapshot(
        nodes={k: v.model_copy(deep=True) for k, v in session.nodes.items()},
        active_leaf_id=session.active_leaf_id,
    )


def restore_state(target: TreeHolder, state: TreeSnapshot) -> None:
    """Replace *target*'s node map and active leaf with copies from *state*."""
    target.nodes = {k: v.model_copy(deep=True) for k, v in state.nodes.items()}
    target.active_leaf_id = state.active_leaf_id


def _structural_only(before: MessageNode, after: MessageNode) -> bool:
    relinked = before.model_copy(
        update={"parent_id": after.parent_id, "children_ids": after.children_ids}
    )
    return relinked == after


def compute_deltas(before: TreeSnapshot, after: TreeSnapshot) -> list[HistoryDelta]:
    """Describe how to get from *before* to *after*.

    Nodes whose only difference is their parent link or child order are
    grouped into one ``relation`` delta; other changed nodes become
    ``update`` deltas carrying both full states.
    """
    deltas: list[HistoryDelta] = []
    relation_changes: list[RelationChange] = []

    for node_id, old in before.nodes.items():
        if node_id not in after.nodes:
            deltas.append(DeleteDelta(node=old.model_copy(deep=True)))

    for node_id, new in after.nodes.items():
        old = before.nodes.get(node_id)
        if old is None:
            deltas.append(CreateDelta(node=new.model_copy(deep=True)))
        elif old != new:
            if _structural_only(old, new):
                relation_changes.append(RelationChange(
                    node_id=node_id,
                    old_parent_id=old.parent_id,
                    new_parent_id=new.parent_id,
                    old_children_ids=list(old.children_ids),
                    new_children_ids=list(new.children_ids),
                ))
            else:
                deltas.append(UpdateDelta(
                    node_id=node_id,
                    previous=old.model_copy(deep=True),
                    final=new.model_copy(deep=True),
                ))

    if relation_changes:
        deltas.append(RelationDelta(changes=relation_changes))
    if before.active_leaf_id != after.active_leaf_id:
        deltas.append(ActiveLeafDelta(
            old_leaf_id=before.active_leaf_id,
            new_leaf_id=after.active_leaf_id,
        ))
    return deltas


def apply_delta(target: TreeHolder, delta: HistoryDelta, *, inverse: bool = False) -> None:
    """Apply *delta* (or its inverse) to a session or snapshot in place."""
    if isinstance(delta, CreateDelta):
        if inverse:
            target.nodes.pop(delta.node.id, None)
        else:
            target.nodes[delta.node.id] = delta.node.model_copy(deep=True)
    elif isinstance(delta, DeleteDelta):
        if inverse:
            target.nodes[delta.node.id] = delta.node.model_copy(deep=True)
        else:
            target.nodes.pop(delta.node.id, None)
    elif isinstance(delta, UpdateDelta):
        state = delta.previous if inverse else delta.final
        target.nodes[delta.node_id] = state.model_copy(deep=True)
    elif isinstance(delta, RelationDelta):
        for change in delta.changes:
            node = target.nodes.get(change.node_id)
            if node is None:
                logger.warning("Relation delta targets missing node %s", change.node_id)
                continue
            if inverse:
                node.parent_id = change.old_parent_id
                node.children_ids = list(change.old_children_ids)
            else:
                node.parent_id = change.new_parent_id
                node.children_ids = list(change.new_children_ids)
    elif isinstance(delta, ActiveLeafDelta):
        target.active_leaf_id = delta.old_leaf_id if inverse else delta.new_leaf_id
    else:
        raise TypeError(f"Unknown history delta: {delta!r}")


# ------------------------------------------------------------------
# Manager
# ------------------------------------------------------------------


class HistoryManager:
    """Records, undoes and redoes tree mutations on a session.

    Thresholds come from :class:`HistoryConfig`: the stack holds at most
    ``max_length`` entries, and a snapshot replaces deltas once
    ``snapshot_interval`` delta entries or more than
    ``snapshot_complexity_threshold`` touched nodes have accumulated since
    the last snapshot.
    """

    def __init__(self, config: HistoryConfig | None = None) -> None:
        self._config = config or HistoryConfig()

    @property
    def config(self) -> HistoryConfig:
        return self._config

    # ---- Queries ----

    def can_undo(self, session: ChatSession) -> bool:
        return bool(session.history) and session.history_index > 0

    def can_redo(self, session: ChatSession) -> bool:
        return session.history_index < len(session.history) - 1

    def entries(self, session: ChatSession) -> list[HistoryEntry]:
        return list(session.history)

    # ---- Recording ----

    def record(
        self,
        session: ChatSession,
        action_tag: HistoryActionTag,
        before: TreeSnapshot,
        *,
        target_node_id: str | None = None,
        description: str | None = None,
    ) -> HistoryEntry | None:
        """Record the change from *before* to the session's current tree.

        Drops any redo entries past the current index. Returns None (and
        records nothing) when the tree did not change.
        """
        after = capture_state(session)
        deltas = compute_deltas(before, after)
        if not deltas:
            return None

        if not session.history:
            session.history.append(HistoryEntry(
                action_tag=HistoryActionTag.INITIAL_STATE,
                is_snapshot=True,
                snapshot=before,
                context=HistoryContext(affected_count=len(before.nodes)),
            ))
            session.history_index = 0

        del session.history[session.history_index + 1:]

        entry = HistoryEntry(action_tag=action_tag, deltas=deltas)
        entry.context = HistoryContext(
            affected_count=entry.affected_node_count,
            target_node_id=target_node_id,
            description=description,
        )
        if self._needs_snapshot(session, entry):
            entry = HistoryEntry(
                action_tag=action_tag,
                is_snapshot=True,
                snapshot=after,
                context=entry.context,
            )
            logger.debug("History: snapshot entry for %s", action_tag.value)
        else:
            logger.debug(
                "History: %d deltas for %s", len(deltas), action_tag.value
            )

        session.history.append(entry)
        session.history_index = len(session.history) - 1
        self._trim(session)
        return entry

    def _needs_snapshot(self, session: ChatSession, entry: HistoryEntry) -> bool:
        delta_entries = 0
        touched = entry.affected_node_count
        for previous in reversed(session.history[: session.history_index + 1]):
            if previous.is_snapshot:
                break
            delta_entries += 1
            touched += previous.affected_node_count
        return (
            delta_entries >= self._config.snapshot_interval
            or touched > self._config.snapshot_complexity_threshold
        )

    def _trim(self, session: ChatSession) -> None:
        excess = len(session.history) - self._config.max_length
        if excess <= 0:
            return
        head = session.history[excess]
        if not head.is_snapshot:
            head = HistoryEntry(
                action_tag=head.action_tag,
                timestamp=head.timestamp,
                is_snapshot=True,
                snapshot=self.state_at(session, excess),
                context=head.context,
            )
        session.history = [head, *session.history[excess + 1:]]
        session.history_index = max(0, session.history_index - excess)
        logger.debug("History: trimmed %d oldest entries", excess)

    def clear_history(self, session: ChatSession) -> None:
        """Drop every entry. Called at each history breakpoint."""
        if session.history:
            logger.info("History cleared for session %s", session.id)
        session.history = []
        session.history_index = 0

    # ---- Navigation ----

    def state_at(self, session: ChatSession, index: int) -> TreeSnapshot:
        """Rebuild the tree state after entry *index*."""
        if not 0 <= index < len(session.history):
            raise HistoryIndexError(index, len(session.history))
        anchor = index
        while not session.history[anchor].is_snapshot:
            anchor -= 1
            if anchor < 0:
                raise HistoryIndexError(index, len(session.history))

        base = session.history[anchor].snapshot
        assert base is not None
        state = TreeSnapshot(nodes={}, active_leaf_id=base.active_leaf_id)
        restore_state(state, base)
        for entry in session.history[anchor + 1: index + 1]:
            for delta in entry.deltas:
                apply_delta(state, delta)
        return state

    def undo(self, session: ChatSession) -> bool:
        """Step back one entry. Returns False when there is nothing to undo."""
        if not self.can_undo(session):
            return False
        index = session.history_index
        entry = session.history[index]
        if entry.is_snapshot:
            restore_state(session, self.state_at(session, index - 1))
        else:
            for delta in reversed(entry.deltas):
                apply_delta(session, delta, inverse=True)
        session.history_index = index - 1
        session.touch()
        logger.debug("Undo %s -> index %d", entry.action_tag.value, index - 1)
        return True

    def redo(self, session: ChatSession) -> bool:
        """Step forward one entry. Returns False when there is nothing to redo."""
        if not self.can_redo(session):
            return False
        index = session.history_index + 1
        entry = session.history[index]
        if entry.is_snapshot:
            assert entry.snapshot is not None
            restore_state(session, entry.snapshot)
        else:
            for delta in entry.deltas:
                apply_delta(session, delta)
        session.history_index = index
        session.touch()
        logger.debug("Redo %s -> index %d", entry.action_tag.value, index)
        return True

    def jump_to_state(self, session: ChatSession, target_index: int) -> None:
        """Undo or redo until ``history_index == target_index``.

        Raises:
            HistoryIndexError: If *target_index* is outside the stack.
        """
        if not 0 <= target_index < len(session.history):
            raise HistoryIndexError(target_index, len(session.history))
        while session.history_index > target_index:
            self.undo(session)
        while session.history_index < target_index:
            self.redo(session)
