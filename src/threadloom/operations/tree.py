"""Tree operations for Threadloom -- node CRUD over the session arena.

Every function takes the session explicitly and mutates it in place. These
are the only call sites that write ``parent_id``, ``children_ids`` or
``active_leaf_id``; after each one returns, parent/child links are
bidirectionally consistent and the active leaf resolves to a node.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable, Literal

from threadloom.exceptions import (
    InvalidNodeRoleError,
    InvalidParentError,
    NodeNotFoundError,
    RootNodeError,
    TreeIntegrityError,
)
from threadloom.models.node import (
    META_CONTINUATION_PREFIX,
    META_ERROR,
    META_IS_CONTINUATION,
    META_IS_TRUNCATED,
    META_REASONING,
    META_REQUEST_ENDED_AT,
    META_REQUEST_STARTED_AT,
    META_USAGE,
    Attachment,
    MessageNode,
    NodeStatus,
    Role,
)

if TYPE_CHECKING:
    from threadloom.models.session import ChatSession

logger = logging.getLogger(__name__)

Relationship = Literal["self", "ancestor", "descendant", "sibling", "other"]

_PROTECTED_FIELDS = frozenset({"id", "parent_id", "children_ids"})

# Metadata produced by a generation run; not carried over to copies.
_CLONE_DROPPED_METADATA = frozenset({
    META_ERROR,
    META_USAGE,
    META_IS_TRUNCATED,
    META_REASONING,
    META_REQUEST_STARTED_AT,
    META_REQUEST_ENDED_AT,
})


# ------------------------------------------------------------------
# Lookup and traversal
# ------------------------------------------------------------------


def get_node(session: ChatSession, node_id: str | None) -> MessageNode | None:
    if node_id is None:
        return None
    return session.nodes.get(node_id)


def require_node(session: ChatSession, node_id: str) -> MessageNode:
    """Return the node or raise NodeNotFoundError."""
    node = session.nodes.get(node_id)
    if node is None:
        raise NodeNotFoundError(node_id)
    return node


def get_node_path(session: ChatSession, node_id: str) -> list[MessageNode]:
    """Return the path from the root to *node_id*, root first and included.

    Raises:
        NodeNotFoundError: If *node_id* does not exist.
    """
    path: list[MessageNode] = []
    current = require_node(session, node_id)
    seen: set[str] = set()
    while current is not None and current.id not in seen:
        seen.add(current.id)
        path.append(current)
        current = get_node(session, current.parent_id)
    path.reverse()
    return path


def get_active_path(session: ChatSession) -> list[MessageNode]:
    """Return the active branch, root excluded, oldest first."""
    return [
        n for n in get_node_path(session, session.active_leaf_id)
        if n.id != session.root_node_id
    ]


def iter_descendant_ids(session: ChatSession, node_id: str) -> Iterable[str]:
    """Yield descendant ids of *node_id* in pre-order, excluding itself."""
    stack = list(reversed(require_node(session, node_id).children_ids))
    seen: set[str] = set()
    while stack:
        child_id = stack.pop()
        if child_id in seen:
            continue
        seen.add(child_id)
        yield child_id
        child = session.nodes.get(child_id)
        if child is not None:
            stack.extend(reversed(child.children_ids))


def get_descendants(session: ChatSession, node_id: str) -> list[MessageNode]:
    return [
        session.nodes[i] for i in iter_descendant_ids(session, node_id)
        if i in session.nodes
    ]


def get_ancestors(session: ChatSession, node_id: str) -> list[MessageNode]:
    """Return the ancestors of *node_id*, nearest first, root last."""
    return list(reversed(get_node_path(session, node_id)[:-1]))


def node_relationship(session: ChatSession, a_id: str, b_id: str) -> Relationship:
    """Describe how node *a* relates to node *b*."""
    if a_id == b_id:
        return "self"
    a = require_node(session, a_id)
    b = require_node(session, b_id)
    if a_id in {n.id for n in get_ancestors(session, b_id)}:
        return "ancestor"
    if b_id in {n.id for n in get_ancestors(session, a_id)}:
        return "descendant"
    if a.parent_id is not None and a.parent_id == b.parent_id:
        return "sibling"
    return "other"


def find_deepest_leaf(session: ChatSession, node_id: str) -> MessageNode:
    """Follow the most recently added child down to a leaf."""
    node = require_node(session, node_id)
    seen = {node.id}
    while node.children_ids:
        child = session.nodes.get(node.children_ids[-1])
        if child is None or child.id in seen:
            break
        seen.add(child.id)
        node = child
    return node


def update_selection_memory(session: ChatSession, leaf_id: str) -> None:
    """Record each node on the path to *leaf_id* as its parent's last choice."""
    path = get_node_path(session, leaf_id)
    for parent, child in zip(path, path[1:]):
        parent.last_selected_child_id = child.id


def activate_leaf(session: ChatSession, node_id: str) -> MessageNode:
    """Make *node_id* the active leaf and remember the path to it."""
    node = require_node(session, node_id)
    session.active_leaf_id = node.id
    update_selection_memory(session, node.id)
    return node


# ------------------------------------------------------------------
# Create / update
# ------------------------------------------------------------------


def create_node(
    session: ChatSession,
    parent_id: str,
    *,
    content: str = "",
    role: Role | str = Role.USER,
    status: NodeStatus | str = NodeStatus.COMPLETE,
    is_enabled: bool = True,
    metadata: dict[str, Any] | None = None,
    attachments: list[Attachment] | None = None,
    node_id: str | None = None,
) -> MessageNode:
    """Insert a new node as the last child of *parent_id*.

    Returns:
        The new node; its id is ``node.id``.

    Raises:
        InvalidParentError: If *parent_id* does not exist.
        ValueError: If *node_id* is given and already in use.
    """
    parent = session.nodes.get(parent_id)
    if parent is None:
        raise InvalidParentError(parent_id)

    fields: dict[str, Any] = {
        "parent_id": parent_id,
        "content": content,
        "role": Role(role),
        "status": NodeStatus(status),
        "is_enabled": is_enabled,
        "metadata": dict(metadata or {}),
        "attachments": list(attachments or []),
    }
    if node_id is not None:
        if node_id in session.nodes:
            raise ValueError(f"Node id already in use: {node_id}")
        fields["id"] = node_id
    node = MessageNode(**fields)

    session.nodes[node.id] = node
    parent.children_ids.append(node.id)
    session.touch()
    logger.debug("Created %s node %s under %s", node.role.value, node.id, parent_id)
    return node


def update_node_data(
    session: ChatSession, node_id: str, changes: dict[str, Any]
) -> MessageNode:
    """Shallow-merge *changes* into a node.

    ``metadata`` is merged key by key; every other field is replaced.
    Structural fields (``id``, ``parent_id``, ``children_ids``) are ignored;
    use the reparent operations to change structure.
    """
    node = require_node(session, node_id)
    for key, value in changes.items():
        if key in _PROTECTED_FIELDS:
            logger.debug("Ignoring protected field %r on %s", key, node_id)
            continue
        if key not in MessageNode.model_fields:
            raise ValueError(f"Unknown node field: {key}")
        if key == "metadata":
            node.metadata = {**node.metadata, **(value or {})}
        elif key == "role":
            node.role = Role(value)
        elif key == "status":
            node.status = NodeStatus(value)
        else:
            setattr(node, key, value)
    session.touch()
    return node


def remove_metadata(session: ChatSession, node_id: str, *keys: str) -> MessageNode:
    """Drop *keys* from a node's metadata; missing keys are ignored."""
    node = require_node(session, node_id)
    node.metadata = {k: v for k, v in node.metadata.items() if k not in keys}
    session.touch()
    return node


def toggle_enabled(session: ChatSession, node_id: str) -> bool:
    """Flip a node's ``is_enabled`` flag. Descendants keep their own flags.

    Returns:
        The new value.
    """
    node = require_node(session, node_id)
    node.is_enabled = not node.is_enabled
    session.touch()
    return node.is_enabled


def clean_metadata_for_clone(metadata: dict[str, Any]) -> dict[str, Any]:
    """Copy *metadata* without the keys produced by a generation run."""
    return {k: v for k, v in metadata.items() if k not in _CLONE_DROPPED_METADATA}


# ------------------------------------------------------------------
# Delete
# ------------------------------------------------------------------


def _detach(session: ChatSession, node: MessageNode) -> int:
    """Remove *node* from its parent's children; return its former index."""
    parent = get_node(session, node.parent_id)
    if parent is None or node.id not in parent.children_ids:
        return -1
    index = parent.children_ids.index(node.id)
    parent.children_ids.pop(index)
    if parent.last_selected_child_id == node.id:
        parent.last_selected_child_id = None
    return index


def _repair_active_leaf(session: ChatSession, ancestor_id: str | None) -> None:
    """Point the active leaf at *ancestor_id*, the nearest surviving node.

    When that turns out to be the root and the root still has children,
    descend to a leaf along the remembered selection.
    """
    target = get_node(session, ancestor_id) or session.root
    if target.id == session.root_node_id and target.children_ids:
        target = find_remembered_leaf(session, target.id)
    session.active_leaf_id = target.id


def _newest_child(session: ChatSession, node: MessageNode) -> MessageNode | None:
    newest = None
    for child_id in node.children_ids:
        child = session.nodes.get(child_id)
        # later siblings win ties
        if child is not None and (newest is None or child.timestamp >= newest.timestamp):
            newest = child
    return newest


def find_remembered_leaf(session: ChatSession, node_id: str) -> MessageNode:
    """Descend from *node_id* along each node's remembered child.

    Falls back to the most recently created child where nothing is
    remembered.
    """
    node = require_node(session, node_id)
    seen = {node.id}
    while node.children_ids:
        child = session.nodes.get(node.last_selected_child_id or "")
        if child is None or child.id not in node.children_ids:
            child = _newest_child(session, node)
        if child is None or child.id in seen:
            break
        seen.add(child.id)
        node = child
    return node


def delete_subtree(session: ChatSession, node_id: str) -> list[MessageNode]:
    """Delete a node and all of its descendants.

    A compression node is removed on its own instead: its children are
    spliced into its parent at its former position.

    If the active leaf is removed, it moves to the nearest surviving
    ancestor (descending from the root along the remembered selection
    when only the root survives).

    Returns:
        The removed nodes, the target first.

    Raises:
        NodeNotFoundError: If *node_id* does not exist.
        RootNodeError: If *node_id* is the root.
    """
    node = require_node(session, node_id)
    if node_id == session.root_node_id:
        raise RootNodeError("delete")

    if node.is_compression_node:
        return [_delete_compression_node(session, node)]

    removed_ids = [node_id, *iter_descendant_ids(session, node_id)]
    _detach(session, node)
    removed = [session.nodes.pop(i) for i in removed_ids if i in session.nodes]

    if session.active_leaf_id in set(removed_ids):
        _repair_active_leaf(session, node.parent_id)
    session.touch()
    logger.debug("Deleted subtree %s (%d nodes)", node_id, len(removed))
    return removed


def _delete_compression_node(session: ChatSession, node: MessageNode) -> MessageNode:
    parent = require_node(session, node.parent_id)  # type: ignore[arg-type]
    index = _detach(session, node)
    for offset, child_id in enumerate(node.children_ids):
        child = session.nodes.get(child_id)
        if child is None:
            continue
        child.parent_id = parent.id
        parent.children_ids.insert(index + offset, child_id)
    del session.nodes[node.id]
    if session.active_leaf_id == node.id:
        _repair_active_leaf(session, parent.id)
    session.touch()
    logger.debug(
        "Deleted compression node %s, %d children moved to %s",
        node.id, len(node.children_ids), parent.id,
    )
    return node


# ------------------------------------------------------------------
# Reparent
# ------------------------------------------------------------------


def _reject(reason: str, *args: object) -> bool:
    logger.warning("Reparent rejected: " + reason, *args)
    return False


def reparent_subtree(session: ChatSession, node_id: str, new_parent_id: str) -> bool:
    """Move *node_id* and its whole subtree under *new_parent_id*.

    Rejections leave the tree untouched and return False: missing node or
    parent, moving the root, attaching a node to itself or to one of its
    own descendants. Reparenting to the current parent is a successful
    no-op.
    """
    node = session.nodes.get(node_id)
    new_parent = session.nodes.get(new_parent_id)
    if node is None:
        return _reject("node %s does not exist", node_id)
    if new_parent is None:
        return _reject("target parent %s does not exist", new_parent_id)
    if node_id == session.root_node_id:
        return _reject("cannot move the root node")
    if node_id == new_parent_id:
        return _reject("cannot attach %s to itself", node_id)
    if new_parent_id in set(iter_descendant_ids(session, node_id)):
        return _reject("%s is a descendant of %s", new_parent_id, node_id)
    if node.parent_id == new_parent_id:
        return True

    _detach(session, node)
    new_parent.children_ids.append(node_id)
    node.parent_id = new_parent_id
    session.touch()
    return True


def reparent_node(session: ChatSession, node_id: str, new_parent_id: str) -> bool:
    """Move a single node under *new_parent_id*, leaving its children behind.

    The node's children are adopted by its old parent at the node's former
    position, so the target may be one of the node's current descendants.
    """
    node = session.nodes.get(node_id)
    new_parent = session.nodes.get(new_parent_id)
    if node is None:
        return _reject("node %s does not exist", node_id)
    if new_parent is None:
        return _reject("target parent %s does not exist", new_parent_id)
    if node_id == session.root_node_id:
        return _reject("cannot move the root node")
    if node_id == new_parent_id:
        return _reject("cannot attach %s to itself", node_id)

    old_parent = require_node(session, node.parent_id)  # type: ignore[arg-type]
    index = _detach(session, node)
    for offset, child_id in enumerate(node.children_ids):
        child = session.nodes.get(child_id)
        if child is None:
            continue
        child.parent_id = old_parent.id
        old_parent.children_ids.insert(index + offset, child_id)
    node.children_ids = []
    node.last_selected_child_id = None

    new_parent.children_ids.append(node_id)
    node.parent_id = new_parent_id
    session.touch()
    return True


# ------------------------------------------------------------------
# Generation-round node creation
# ------------------------------------------------------------------


def create_message_pair(
    session: ChatSession,
    content: str,
    *,
    attachments: list[Attachment] | None = None,
    metadata: dict[str, Any] | None = None,
) -> tuple[MessageNode, MessageNode]:
    """Append a user message and an empty generating reply to the active leaf.

    The active leaf moves to the reply.
    """
    user = create_node(
        session,
        session.active_leaf_id,
        content=content,
        role=Role.USER,
        attachments=attachments,
    )
    assistant = create_node(
        session,
        user.id,
        role=Role.ASSISTANT,
        status=NodeStatus.GENERATING,
        metadata=metadata,
    )
    activate_leaf(session, assistant.id)
    return user, assistant


def create_regenerate_branch(
    session: ChatSession,
    node_id: str,
    *,
    metadata: dict[str, Any] | None = None,
) -> MessageNode:
    """Create a fresh generating reply as a new branch.

    From a user node the reply becomes its new child; from an assistant
    node it becomes a sibling under the same user message. The active leaf
    moves to the new reply.

    Raises:
        InvalidNodeRoleError: If the reply would not sit under a user node.
    """
    node = require_node(session, node_id)
    if node.role == Role.USER:
        parent = node
    else:
        parent = get_node(session, node.parent_id)
        if parent is None or parent.role != Role.USER:
            raise InvalidNodeRoleError(node_id, node.role.value, "regenerate from")

    reply = create_node(
        session,
        parent.id,
        role=Role.ASSISTANT,
        status=NodeStatus.GENERATING,
        metadata=metadata,
    )
    activate_leaf(session, reply.id)
    return reply


def create_continuation_branch(session: ChatSession, node_id: str) -> MessageNode:
    """Create a branch that continues *node_id*'s reply.

    For an assistant node the new sibling starts with a copy of the
    original content, which is kept as ``continuation_prefix``. For a user
    node this is an ordinary new reply.
    """
    node = require_node(session, node_id)
    if node.role == Role.USER:
        return create_regenerate_branch(session, node_id)
    if node.role != Role.ASSISTANT or node.parent_id is None:
        raise InvalidNodeRoleError(node_id, node.role.value, "continue")

    metadata = clean_metadata_for_clone(node.metadata)
    metadata[META_CONTINUATION_PREFIX] = node.content
    metadata[META_IS_CONTINUATION] = True
    branch = create_node(
        session,
        node.parent_id,
        content=node.content,
        role=Role.ASSISTANT,
        status=NodeStatus.GENERATING,
        metadata=metadata,
    )
    activate_leaf(session, branch.id)
    return branch


def create_branch_from_edit(
    session: ChatSession,
    node_id: str,
    content: str,
    *,
    attachments: list[Attachment] | None = None,
) -> MessageNode:
    """Create a sibling of *node_id* carrying edited content.

    The original node and its subtree are left intact.
    """
    node = require_node(session, node_id)
    if node_id == session.root_node_id:
        raise RootNodeError("branch from")
    return create_node(
        session,
        node.parent_id,  # type: ignore[arg-type]
        content=content,
        role=node.role,
        metadata=clean_metadata_for_clone(node.metadata),
        attachments=attachments if attachments is not None else [
            a.model_copy() for a in node.attachments
        ],
    )


# ------------------------------------------------------------------
# Integrity
# ------------------------------------------------------------------


def ensure_valid_active_leaf(session: ChatSession) -> bool:
    """Reset a dangling active leaf to the root. Returns True if repaired."""
    if session.active_leaf_id in session.nodes:
        return False
    logger.warning(
        "Active leaf %s no longer exists; resetting to root", session.active_leaf_id
    )
    session.active_leaf_id = session.root_node_id
    return True


def validate_tree(session: ChatSession) -> tuple[bool, list[str]]:
    """Check the session's structural invariants.

    Returns:
        ``(ok, errors)`` where *errors* lists every violation found.
    """
    errors: list[str] = []
    root = session.nodes.get(session.root_node_id)
    if root is None:
        errors.append(f"root {session.root_node_id} missing")
    elif root.parent_id is not None:
        errors.append(f"root has parent {root.parent_id}")

    if session.active_leaf_id not in session.nodes:
        errors.append(f"active leaf {session.active_leaf_id} missing")

    for node in session.nodes.values():
        if len(set(node.children_ids)) != len(node.children_ids):
            errors.append(f"{node.id} has duplicate children")
        for child_id in node.children_ids:
            child = session.nodes.get(child_id)
            if child is None:
                errors.append(f"{node.id} lists missing child {child_id}")
            elif child.parent_id != node.id:
                errors.append(
                    f"{node.id} lists {child_id} whose parent is {child.parent_id}"
                )
        if node.id == session.root_node_id:
            continue
        parent = session.nodes.get(node.parent_id) if node.parent_id else None
        if parent is None:
            errors.append(f"{node.id} has missing parent {node.parent_id}")
        elif node.id not in parent.children_ids:
            errors.append(f"{node.id} not listed by parent {parent.id}")

    if root is not None:
        reachable = {root.id, *iter_descendant_ids(session, root.id)}
        for node_id in session.nodes.keys() - reachable:
            errors.append(f"{node_id} unreachable from root (cycle or orphan)")

    return (not errors, errors)


def assert_valid_tree(session: ChatSession) -> None:
    """Raise TreeIntegrityError if the tree is inconsistent."""
    ok, errors = validate_tree(session)
    if not ok:
        raise TreeIntegrityError(errors)
