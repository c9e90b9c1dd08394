"""Generation orchestrator: send, regenerate and continue with cancellation.

Each generating node owns one abort handle (an ``asyncio.Event``) and one
entry in the in-flight set. The in-flight set, not the persisted node
status, is the source of truth for "is node X generating": whenever it
shrinks, any node still marked ``generating`` but not in flight is an
orphan and is finalised.

Every generation round starts with a history breakpoint: undo/redo covers
manual tree edits between model calls, never across them.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable

from threadloom.exceptions import GenerationInProgressError, InvalidNodeRoleError
from threadloom.models.config import AgentConfig
from threadloom.models.node import (
    GENERATION_INTERRUPTED,
    META_ERROR,
    META_MODEL_ID,
    META_PROFILE_ID,
    META_REASONING,
    META_REQUEST_ENDED_AT,
    META_REQUEST_STARTED_AT,
    META_USAGE,
    Attachment,
    MessageNode,
    NodeStatus,
    Role,
)
from threadloom.operations import tree
from threadloom.operations.history import HistoryManager
from threadloom.pipeline.base import PipelineContext

if TYPE_CHECKING:
    from threadloom.models.session import ChatSession
    from threadloom.pipeline.pipeline import ContextPipeline
    from threadloom.protocols import (
        AgentResolver,
        ModelInvoker,
        SessionPersister,
        WorldbookProvider,
    )

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def finalize_interrupted(session: ChatSession, node_id: str) -> MessageNode:
    """Settle a node whose generation stopped early.

    Keeps whatever content arrived; an empty node becomes an error.
    """
    node = tree.require_node(session, node_id)
    metadata: dict[str, str] = {}
    if META_REQUEST_ENDED_AT not in node.metadata:
        metadata[META_REQUEST_ENDED_AT] = _now()
    if node.content.strip():
        status = NodeStatus.COMPLETE
    else:
        status = NodeStatus.ERROR
        metadata[META_ERROR] = GENERATION_INTERRUPTED
    return tree.update_node_data(session, node_id, {"status": status, "metadata": metadata})


class StaticAgentResolver:
    """Resolves every session to the same agent."""

    def __init__(self, agent: AgentConfig) -> None:
        self._agent = agent

    def resolve(self, session: ChatSession) -> AgentConfig:
        return self._agent


class GenerationOrchestrator:
    """Coordinates model generations over one or more sessions.

    Args:
        invoker: Streams model output for a request.
        pipeline: Builds the request from the active branch.
        history: Cleared at every generation breakpoint.
        persister: Optional durable storage, called after each state change.
        agent_resolver: Supplies the agent for a session; a default
            AgentConfig is used when absent.
        worldbook: Optional source of worldbook entries.
    """

    def __init__(
        self,
        invoker: ModelInvoker,
        pipeline: ContextPipeline,
        *,
        history: HistoryManager | None = None,
        persister: SessionPersister | None = None,
        agent_resolver: AgentResolver | None = None,
        worldbook: WorldbookProvider | None = None,
    ) -> None:
        self._invoker = invoker
        self._pipeline = pipeline
        self._history = history or HistoryManager()
        self._persister = persister
        self._agent_resolver = agent_resolver
        self._worldbook = worldbook
        self._abort_handles: dict[str, asyncio.Event] = {}
        self._in_flight: set[str] = set()
        self._owners: dict[str, ChatSession] = {}
        self._sessions: dict[str, ChatSession] = {}

    # ---- State ----

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def is_generating(self, node_id: str) -> bool:
        return node_id in self._in_flight

    def track(self, session: ChatSession) -> None:
        """Include *session* in orphan reconciliation."""
        self._sessions[session.id] = session

    def _register(self, session: ChatSession, node_id: str) -> asyncio.Event:
        if node_id in self._in_flight:
            raise GenerationInProgressError(node_id)
        abort = asyncio.Event()
        self._abort_handles[node_id] = abort
        self._in_flight.add(node_id)
        self._owners[node_id] = session
        self.track(session)
        return abort

    def _owns(self, node_id: str, abort: asyncio.Event) -> bool:
        return self._abort_handles.get(node_id) is abort

    def _release(self, node_id: str, abort: asyncio.Event | None = None) -> None:
        """Forget *node_id*'s generation.

        With *abort* given, nothing happens unless that handle is still
        the registered one; a newer generation of the node keeps running.
        """
        if abort is not None and not self._owns(node_id, abort):
            return
        self._abort_handles.pop(node_id, None)
        self._owners.pop(node_id, None)
        if node_id in self._in_flight:
            self._in_flight.discard(node_id)
            self.reconcile_orphans()

    def _persist(self, session: ChatSession) -> None:
        if self._persister is None:
            return
        try:
            self._persister.persist(session)
        except Exception:
            logger.warning("Failed to persist session %s", session.id, exc_info=True)

    # ---- Context ----

    def resolve_agent(self, session: ChatSession) -> AgentConfig:
        agent = self._agent_resolver.resolve(session) if self._agent_resolver else None
        return agent or AgentConfig()

    def build_context(self, session: ChatSession, path: list[MessageNode]) -> PipelineContext:
        """Run the pipeline over *path* and return the filled context."""
        agent = self.resolve_agent(session)
        context = PipelineContext(
            session=session,
            path=path,
            agent=agent,
            model_id=agent.model_id,
            profile_id=agent.profile_id,
            parameters={**agent.parameters, **session.parameter_overrides},
        )
        if self._worldbook is not None:
            context.worldbook_entries = list(self._worldbook.entries_for(
                session,
                [{"role": n.role.value, "content": n.content} for n in path],
            ))
        self._pipeline.execute(context)
        for failure in context.failures:
            logger.warning("Context degraded for session %s: %s", session.id, failure)
        return context

    # ---- Generation rounds ----

    async def send_message(
        self,
        session: ChatSession,
        content: str,
        *,
        attachments: list[Attachment] | None = None,
    ) -> MessageNode:
        """Append a user message under the active leaf and generate a reply.

        Returns:
            The settled reply node.

        Raises:
            GenerationInProgressError: If the active leaf is still generating.
        """
        if self.is_generating(session.active_leaf_id):
            raise GenerationInProgressError(session.active_leaf_id)
        self._history.clear_history(session)
        _, reply = tree.create_message_pair(session, content, attachments=attachments)
        return await self._generate(session, reply.id)

    async def regenerate_from_node(self, session: ChatSession, node_id: str) -> MessageNode:
        """Generate a new reply as a sibling branch; *node_id* is left intact."""
        self._history.clear_history(session)
        reply = tree.create_regenerate_branch(session, node_id)
        return await self._generate(session, reply.id)

    async def continue_generation(
        self,
        session: ChatSession,
        node_id: str,
        *,
        as_branch: bool = False,
    ) -> MessageNode:
        """Continue an assistant reply.

        By default the model output is appended to *node_id* itself. With
        ``as_branch=True`` a sibling copy is continued instead. Continuing
        from a user node starts a new reply.
        """
        node = tree.require_node(session, node_id)
        if self.is_generating(node_id):
            raise GenerationInProgressError(node_id)
        if node.role == Role.SYSTEM:
            raise InvalidNodeRoleError(node_id, node.role.value, "continue")
        self._history.clear_history(session)

        if as_branch or node.role == Role.USER:
            target = tree.create_continuation_branch(session, node_id)
        else:
            tree.remove_metadata(session, node.id, META_ERROR, META_REQUEST_ENDED_AT)
            tree.update_node_data(session, node.id, {"status": NodeStatus.GENERATING})
            target = tree.activate_leaf(session, node.id)
        return await self._generate(session, target.id)

    async def _generate(self, session: ChatSession, node_id: str) -> MessageNode:
        abort = self._register(session, node_id)
        node = tree.update_node_data(
            session, node_id, {"metadata": {META_REQUEST_STARTED_AT: _now()}}
        )
        self._persist(session)
        logger.info("Generation started for %s in session %s", node_id, session.id)

        try:
            path = [
                n for n in tree.get_node_path(session, node_id)
                if n.id != session.root_node_id
            ]
            context = self.build_context(session, path)
            defaults = {META_MODEL_ID: context.model_id, META_PROFILE_ID: context.profile_id}
            tree.update_node_data(session, node_id, {"metadata": {
                k: v for k, v in defaults.items() if k not in node.metadata
            }})
            self._persist(session)
            await self._consume(session, node_id, context, abort)
        except asyncio.CancelledError:
            if self._owns(node_id, abort):
                self._settle(session, node_id, interrupted=True)
            raise
        except Exception as exc:
            logger.warning("Generation failed for %s: %s", node_id, exc)
            if self._owns(node_id, abort):
                self._settle(session, node_id, error=str(exc) or type(exc).__name__)
        else:
            # A stream aborted and then superseded by a new generation of
            # the same node leaves the node to its successor.
            if self._owns(node_id, abort):
                self._settle(session, node_id, interrupted=abort.is_set())
        finally:
            self._release(node_id, abort)
            self._persist(session)

        logger.info("Generation finished for %s", node_id)
        return session.nodes.get(node_id, node)

    async def _consume(
        self,
        session: ChatSession,
        node_id: str,
        context: PipelineContext,
        abort: asyncio.Event,
    ) -> None:
        async for chunk in self._invoker.stream(context.to_request(), abort):
            if abort.is_set():
                break
            # Looked up per chunk: undo/redo may have replaced the node object.
            node = session.nodes.get(node_id)
            if node is None:
                logger.debug("Node %s removed during generation", node_id)
                break
            changes: dict[str, Any] = {}
            metadata: dict[str, Any] = {}
            if chunk.text:
                changes["content"] = node.content + chunk.text
            if chunk.reasoning:
                metadata[META_REASONING] = node.metadata.get(META_REASONING, "") + chunk.reasoning
            if chunk.usage is not None:
                metadata[META_USAGE] = chunk.usage.to_dict()
            if chunk.model_id:
                metadata[META_MODEL_ID] = chunk.model_id
            if metadata:
                changes["metadata"] = metadata
            if changes:
                tree.update_node_data(session, node_id, changes)

    def _settle(
        self,
        session: ChatSession,
        node_id: str,
        *,
        interrupted: bool = False,
        error: str | None = None,
    ) -> None:
        node = session.nodes.get(node_id)
        if node is None or node.status != NodeStatus.GENERATING:
            return
        if error is not None:
            tree.update_node_data(session, node_id, {
                "status": NodeStatus.ERROR,
                "metadata": {META_ERROR: error, META_REQUEST_ENDED_AT: _now()},
            })
        elif interrupted:
            finalize_interrupted(session, node_id)
        else:
            tree.update_node_data(session, node_id, {
                "status": NodeStatus.COMPLETE,
                "metadata": {META_REQUEST_ENDED_AT: _now()},
            })

    # ---- Cancellation ----

    def abort_node_generation(self, node_id: str) -> bool:
        """Stop one generation. Returns False if *node_id* was not in flight.

        The node keeps the content received so far; it is settled here
        rather than when the stream notices the abort.
        """
        abort = self._abort_handles.get(node_id)
        if abort is None:
            return False
        abort.set()
        session = self._owners.get(node_id)
        if session is not None:
            self._settle(session, node_id, interrupted=True)
        logger.info("Generation aborted for %s", node_id)
        self._release(node_id)
        if session is not None:
            self._persist(session)
        return True

    def abort_sending(self) -> int:
        """Stop every in-flight generation. Returns how many were stopped."""
        return sum(self.abort_node_generation(i) for i in list(self._in_flight))

    def prune(self, node_ids: Iterable[str]) -> None:
        """Forget generations for nodes that no longer exist."""
        for node_id in node_ids:
            abort = self._abort_handles.get(node_id)
            if abort is not None:
                abort.set()
                self._release(node_id)

    # ---- Reconciliation ----

    def reconcile_orphans(self, session: ChatSession | None = None) -> list[str]:
        """Settle nodes marked ``generating`` that are not in flight.

        Scans *session*, or every tracked session when omitted. Repaired
        sessions are persisted.

        Returns:
            Ids of the repaired nodes.
        """
        sessions = [session] if session is not None else list(self._sessions.values())
        repaired: list[str] = []
        for s in sessions:
            orphans = [
                n for n in s.nodes.values()
                if n.status == NodeStatus.GENERATING and n.id not in self._in_flight
            ]
            for orphan in orphans:
                node = finalize_interrupted(s, orphan.id)
                repaired.append(node.id)
                logger.warning(
                    "Repaired orphaned generating node %s (now %s)",
                    node.id, node.status.value,
                )
            if orphans:
                self._persist(s)
        return repaired
