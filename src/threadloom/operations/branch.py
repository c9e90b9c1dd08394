"""Branch operations for Threadloom.

Sibling navigation, branch switching with per-parent selection memory,
branch creation and grafting. Structural work is delegated to
:mod:`threadloom.operations.tree`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

from threadloom.exceptions import InvalidNodeRoleError, RootNodeError
from threadloom.models.node import Attachment, MessageNode, NodeStatus, Role
from threadloom.operations.tree import (
    activate_leaf,
    clean_metadata_for_clone,
    create_node,
    find_remembered_leaf,
    get_node_path,
    reparent_subtree,
    require_node,
    update_selection_memory,
)

if TYPE_CHECKING:
    from threadloom.models.session import ChatSession

logger = logging.getLogger(__name__)

__all__ = [
    "create_branch",
    "edit_message",
    "get_siblings",
    "graft_branch",
    "is_node_in_active_path",
    "sibling_index",
    "switch_branch",
    "switch_to_sibling",
    "update_selection_memory",
]

_EDITABLE_ROLES = (Role.USER, Role.ASSISTANT)


def get_siblings(session: ChatSession, node_id: str) -> list[MessageNode]:
    """Return the nodes sharing *node_id*'s parent, in child order.

    The root has no parent and is its own only sibling.
    """
    node = require_node(session, node_id)
    if node.parent_id is None:
        return [node]
    parent = require_node(session, node.parent_id)
    return [session.nodes[i] for i in parent.children_ids if i in session.nodes]


def sibling_index(session: ChatSession, node_id: str) -> int:
    return [n.id for n in get_siblings(session, node_id)].index(node_id)


def switch_branch(session: ChatSession, node_id: str) -> MessageNode:
    """Make the branch through *node_id* active.

    The new active leaf is found by descending from *node_id* along each
    node's remembered child, falling back to the most recently created child. The
    chosen path is written back into selection memory.

    Returns:
        The new active leaf.
    """
    leaf = activate_leaf(session, find_remembered_leaf(session, node_id).id)
    session.touch()
    logger.debug("Switched to branch %s (leaf %s)", node_id, leaf.id)
    return leaf


def switch_to_sibling(
    session: ChatSession,
    node_id: str,
    direction: Literal["prev", "next"],
) -> MessageNode:
    """Switch to the previous or next sibling of *node_id*, wrapping around."""
    siblings = get_siblings(session, node_id)
    if len(siblings) <= 1:
        return session.active_leaf
    ids = [n.id for n in siblings]
    step = -1 if direction == "prev" else 1
    target = ids[(ids.index(node_id) + step) % len(ids)]
    return switch_branch(session, target)


def is_node_in_active_path(session: ChatSession, node_id: str) -> bool:
    """True if *node_id* lies on the active branch. The root never does."""
    if node_id == session.root_node_id:
        return False
    return any(n.id == node_id for n in get_node_path(session, session.active_leaf_id))


def graft_branch(session: ChatSession, node_id: str, new_parent_id: str) -> bool:
    """Move a subtree under a new parent.

    Only structural legality is checked (no cycles, both nodes exist);
    role alternation between the new parent and the moved node is not
    enforced.
    """
    old_parent_id = session.nodes[node_id].parent_id if node_id in session.nodes else None
    ok = reparent_subtree(session, node_id, new_parent_id)
    if ok:
        logger.info("Grafted %s from %s to %s", node_id, old_parent_id, new_parent_id)
    else:
        logger.warning("Graft of %s onto %s rejected", node_id, new_parent_id)
    return ok


def create_branch(session: ChatSession, node_id: str) -> MessageNode:
    """Copy a user or assistant node as a new childless sibling and switch to it."""
    node = require_node(session, node_id)
    if node_id == session.root_node_id:
        raise RootNodeError("branch from")
    if node.role not in _EDITABLE_ROLES:
        raise InvalidNodeRoleError(node_id, node.role.value, "branch from")

    copy = create_node(
        session,
        node.parent_id,  # type: ignore[arg-type]
        content=node.content,
        role=node.role,
        status=NodeStatus.COMPLETE,
        is_enabled=node.is_enabled,
        metadata=clean_metadata_for_clone(node.metadata),
        attachments=[a.model_copy() for a in node.attachments],
    )
    switch_branch(session, copy.id)
    return copy


def edit_message(
    session: ChatSession,
    node_id: str,
    content: str,
    *,
    attachments: list[Attachment] | None = None,
) -> MessageNode:
    """Replace a user or assistant node's content in place.

    Raises:
        InvalidNodeRoleError: If the node is a system node.
    """
    node = require_node(session, node_id)
    if node.role not in _EDITABLE_ROLES:
        raise InvalidNodeRoleError(node_id, node.role.value, "edit")
    node.content = content
    if attachments is not None:
        node.attachments = list(attachments)
    session.touch()
    return node
