"""Threadloom exception hierarchy.

All Threadloom-specific exceptions inherit from ThreadloomError.
Structural rejections that the tree manager reports as ``False``
(illegal grafts) are not exceptions.
"""


class ThreadloomError(Exception):
    """Base exception for all Threadloom errors."""


class NodeNotFoundError(ThreadloomError):
    """Raised when a node id lookup fails."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class InvalidParentError(ThreadloomError):
    """Raised when a node is created under a parent that does not exist."""

    def __init__(self, parent_id: str) -> None:
        self.parent_id = parent_id
        super().__init__(f"Parent node does not exist: {parent_id}")


class RootNodeError(ThreadloomError):
    """Raised when an operation is not permitted on the session root."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Cannot {operation} the root node")


class InvalidNodeRoleError(ThreadloomError):
    """Raised when a node's role does not permit the requested operation.

    Editing is limited to user and assistant nodes; regenerating requires
    a user parent.
    """

    def __init__(self, node_id: str, role: str, operation: str) -> None:
        self.node_id = node_id
        self.role = role
        self.operation = operation
        super().__init__(
            f"Cannot {operation} node {node_id} with role '{role}'"
        )


class TreeIntegrityError(ThreadloomError):
    """Raised when a session's tree violates its structural invariants."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        summary = "; ".join(errors[:5])
        if len(errors) > 5:
            summary += f" (+{len(errors) - 5} more)"
        super().__init__(f"Tree integrity check failed: {summary}")


class HistoryIndexError(ThreadloomError):
    """Raised when jumping to a history index outside the stack."""

    def __init__(self, index: int, length: int) -> None:
        self.index = index
        self.length = length
        super().__init__(
            f"History index {index} out of range (stack has {length} entries)"
        )


class GenerationInProgressError(ThreadloomError):
    """Raised when a node is already being generated."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node is already generating: {node_id}")


class PipelineError(ThreadloomError):
    """Base for context pipeline registry errors."""


class ProcessorNotFoundError(PipelineError):
    """Raised when a processor id is not registered."""

    def __init__(self, processor_id: str) -> None:
        self.processor_id = processor_id
        super().__init__(f"Processor not registered: {processor_id}")


class SessionNotFoundError(ThreadloomError):
    """Raised when a stored session cannot be found."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")
