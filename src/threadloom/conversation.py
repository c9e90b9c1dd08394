"""Conversation -- the public entry point for Threadloom.

Ties a ChatSession to the tree/branch managers, the history engine, the
context pipeline and the generation orchestrator. Every manual mutation
goes through the same path: capture the tree, apply the manager call,
record history, persist. A mutation that raises is rolled back so the
tree is never left half-changed.

Usage::

    convo = Conversation.create(invoker=my_invoker, token_counter=CharTokenCounter())
    reply = await convo.send_message("hello")
    convo.toggle_enabled(reply.parent_id)
    convo.undo()

Not thread-safe; intended for a single asyncio event loop.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterator, Literal

from threadloom.generation import GenerationOrchestrator
from threadloom.models.config import HistoryConfig, ThreadloomConfig
from threadloom.models.history import HistoryActionTag, HistoryEntry
from threadloom.models.node import Role
from threadloom.models.session import ChatSession
from threadloom.operations import branch, tree
from threadloom.operations.history import HistoryManager, capture_state, restore_state
from threadloom.pipeline import build_default_pipeline
from threadloom.tokens import TiktokenCounter

if TYPE_CHECKING:
    from threadloom.models.node import Attachment, MessageNode
    from threadloom.pipeline.base import PipelineContext
    from threadloom.pipeline.pipeline import ContextPipeline
    from threadloom.protocols import (
        AgentResolver,
        ModelInvoker,
        ModelRequest,
        SessionPersister,
        StreamChunk,
        TokenCounter,
        WorldbookProvider,
    )

logger = logging.getLogger(__name__)


class _NullInvoker:
    """Invoker used when a conversation is only edited, never generated."""

    def stream(self, request: ModelRequest, abort: asyncio.Event) -> AsyncIterator[StreamChunk]:
        raise RuntimeError("No model invoker configured for this conversation")


class Conversation:
    """A chat session plus the machinery that edits and extends it."""

    def __init__(
        self,
        session: ChatSession,
        *,
        pipeline: ContextPipeline,
        history: HistoryManager,
        orchestrator: GenerationOrchestrator,
        persister: SessionPersister | None = None,
    ) -> None:
        self._session = session
        self._pipeline = pipeline
        self._history = history
        self._orchestrator = orchestrator
        self._persister = persister
        orchestrator.track(session)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        name: str = "New chat",
        *,
        config: ThreadloomConfig | None = None,
        session: ChatSession | None = None,
        invoker: ModelInvoker | None = None,
        persister: SessionPersister | None = None,
        pipeline: ContextPipeline | None = None,
        token_counter: TokenCounter | None = None,
        history_config: HistoryConfig | None = None,
        agent_resolver: AgentResolver | None = None,
        worldbook: WorldbookProvider | None = None,
        orchestrator: GenerationOrchestrator | None = None,
    ) -> Conversation:
        """Build a conversation around *session* (or a new one).

        Args:
            name: Name for a new session; ignored when *session* is given.
            config: Top-level settings (history limits, tokenizer encoding).
            session: Existing session to wrap.
            invoker: Model invoker for generation rounds.
            persister: Called after every committed mutation.
            pipeline: Context pipeline. Defaults to every built-in processor.
            token_counter: Counter for the default pipeline's token limiter.
                A TiktokenCounter for ``config.tokenizer_encoding`` by default.
            history_config: Undo/redo limits; overrides ``config.history``.
            agent_resolver: Supplies the agent for context building.
            worldbook: Supplies worldbook entries for injection.
            orchestrator: Share one orchestrator between conversations so
                cancellation and orphan repair see every session.
        """
        config = config or ThreadloomConfig()
        session = session or ChatSession.create(name)
        if pipeline is None:
            if token_counter is None:
                token_counter = TiktokenCounter(encoding_name=config.tokenizer_encoding)
            pipeline = build_default_pipeline(token_counter)
        history = HistoryManager(history_config or config.history)
        if orchestrator is None:
            orchestrator = GenerationOrchestrator(
                invoker or _NullInvoker(),
                pipeline,
                history=history,
                persister=persister,
                agent_resolver=agent_resolver,
                worldbook=worldbook,
            )
        convo = cls(
            session,
            pipeline=pipeline,
            history=history,
            orchestrator=orchestrator,
            persister=persister,
        )
        convo._persist()
        return convo

    @classmethod
    def open(
        cls,
        session_id: str | None = None,
        *,
        config: ThreadloomConfig | None = None,
        **kwargs: Any,
    ) -> Conversation:
        """Open a conversation backed by a SessionStore at ``config.db_path``.

        Loads *session_id* when given, otherwise starts a new session.
        """
        from threadloom.storage.store import SessionStore

        config = config or ThreadloomConfig()
        store = SessionStore.open(config.db_path)
        if session_id is not None:
            return cls.load(session_id, store, config=config, **kwargs)
        return cls.create(config=config, persister=store, **kwargs)

    @classmethod
    def load(
        cls,
        session_id: str,
        persister: SessionPersister,
        **kwargs: Any,
    ) -> Conversation:
        """Load a stored session and repair nodes left ``generating``."""
        session = persister.load(session_id)
        convo = cls.create(session=session, persister=persister, **kwargs)
        tree.ensure_valid_active_leaf(session)
        convo._orchestrator.reconcile_orphans(session)
        return convo

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def session(self) -> ChatSession:
        return self._session

    @property
    def pipeline(self) -> ContextPipeline:
        return self._pipeline

    @property
    def orchestrator(self) -> GenerationOrchestrator:
        return self._orchestrator

    @property
    def active_leaf(self) -> MessageNode:
        return self._session.active_leaf

    def get_node(self, node_id: str) -> MessageNode:
        return tree.require_node(self._session, node_id)

    def active_path(self) -> list[MessageNode]:
        """The active branch, root excluded."""
        return tree.get_active_path(self._session)

    def llm_context(self) -> list[MessageNode]:
        """Active-path nodes eligible for the model: enabled, non-system."""
        return [
            n for n in self.active_path()
            if n.is_enabled and n.role != Role.SYSTEM
        ]

    def siblings(self, node_id: str) -> list[MessageNode]:
        return branch.get_siblings(self._session, node_id)

    def is_node_in_active_path(self, node_id: str) -> bool:
        return branch.is_node_in_active_path(self._session, node_id)

    # ------------------------------------------------------------------
    # Mutation plumbing
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        if self._persister is None:
            return
        try:
            self._persister.persist(self._session)
        except Exception:
            logger.warning("Failed to persist session %s", self._session.id, exc_info=True)

    @contextmanager
    def _mutation(
        self,
        action: HistoryActionTag,
        *,
        target_node_id: str | None = None,
        description: str | None = None,
    ) -> Iterator[None]:
        before = capture_state(self._session)
        try:
            yield
        except BaseException:
            restore_state(self._session, before)
            raise
        tree.ensure_valid_active_leaf(self._session)
        self._history.record(
            self._session,
            action,
            before,
            target_node_id=target_node_id,
            description=description,
        )
        self._persist()

    # ------------------------------------------------------------------
    # Tree edits
    # ------------------------------------------------------------------

    def create_node(
        self,
        parent_id: str,
        content: str = "",
        *,
        role: str = "user",
        attachments: list[Attachment] | None = None,
    ) -> MessageNode:
        """Add a complete node under *parent_id* without generating."""
        with self._mutation(HistoryActionTag.BRANCH_CREATE, target_node_id=parent_id):
            node = tree.create_node(
                self._session, parent_id, content=content, role=role,
                attachments=attachments,
            )
        return node

    def delete_node(self, node_id: str) -> list[MessageNode]:
        """Delete *node_id* and its subtree (or just it, for compression nodes)."""
        with self._mutation(HistoryActionTag.NODES_DELETE, target_node_id=node_id):
            removed = tree.delete_subtree(self._session, node_id)
        self._orchestrator.prune(
            n.id for n in removed if n.id not in self._session.nodes
        )
        return removed

    def edit_message(
        self,
        node_id: str,
        content: str,
        *,
        attachments: list[Attachment] | None = None,
    ) -> MessageNode:
        with self._mutation(HistoryActionTag.NODE_EDIT, target_node_id=node_id):
            node = branch.edit_message(
                self._session, node_id, content, attachments=attachments
            )
        return node

    def update_node_data(self, node_id: str, **changes: Any) -> MessageNode:
        """Shallow-merge field changes. Structural fields are ignored."""
        with self._mutation(HistoryActionTag.NODE_DATA_UPDATE, target_node_id=node_id):
            node = tree.update_node_data(self._session, node_id, changes)
        return node

    def toggle_enabled(self, node_id: str) -> bool:
        with self._mutation(HistoryActionTag.NODE_TOGGLE_ENABLED, target_node_id=node_id):
            enabled = tree.toggle_enabled(self._session, node_id)
        return enabled

    def graft_branch(self, node_id: str, new_parent_id: str) -> bool:
        """Move a subtree. Returns False (tree unchanged) if illegal."""
        with self._mutation(HistoryActionTag.BRANCH_GRAFT, target_node_id=node_id):
            ok = branch.graft_branch(self._session, node_id, new_parent_id)
        return ok

    def move_node(self, node_id: str, new_parent_id: str) -> bool:
        """Move one node; its children stay with the old parent."""
        with self._mutation(HistoryActionTag.NODE_MOVE, target_node_id=node_id):
            ok = tree.reparent_node(self._session, node_id, new_parent_id)
        return ok

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def switch_branch(self, node_id: str) -> MessageNode:
        with self._mutation(HistoryActionTag.ACTIVE_NODE_SWITCH, target_node_id=node_id):
            leaf = branch.switch_branch(self._session, node_id)
        return leaf

    def switch_to_sibling(
        self, node_id: str, direction: Literal["prev", "next"]
    ) -> MessageNode:
        with self._mutation(HistoryActionTag.ACTIVE_NODE_SWITCH, target_node_id=node_id):
            leaf = branch.switch_to_sibling(self._session, node_id, direction)
        return leaf

    def create_branch(self, node_id: str) -> MessageNode:
        with self._mutation(HistoryActionTag.BRANCH_CREATE, target_node_id=node_id):
            node = branch.create_branch(self._session, node_id)
        return node

    def create_branch_from_edit(
        self,
        node_id: str,
        content: str,
        *,
        attachments: list[Attachment] | None = None,
    ) -> MessageNode:
        """Create an edited sibling of *node_id* and make it active."""
        with self._mutation(HistoryActionTag.BRANCH_CREATE_FROM_EDIT, target_node_id=node_id):
            node = tree.create_branch_from_edit(
                self._session, node_id, content, attachments=attachments
            )
            branch.switch_branch(self._session, node.id)
        return node

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def can_undo(self) -> bool:
        return self._history.can_undo(self._session)

    def can_redo(self) -> bool:
        return self._history.can_redo(self._session)

    def history_entries(self) -> list[HistoryEntry]:
        return self._history.entries(self._session)

    def _after_history_move(self) -> None:
        tree.ensure_valid_active_leaf(self._session)
        # Restored snapshots may carry a generating status with no stream behind it
        self._orchestrator.reconcile_orphans(self._session)
        self._persist()

    def undo(self) -> bool:
        changed = self._history.undo(self._session)
        if changed:
            self._after_history_move()
        return changed

    def redo(self) -> bool:
        changed = self._history.redo(self._session)
        if changed:
            self._after_history_move()
        return changed

    def jump_to_state(self, index: int) -> None:
        self._history.jump_to_state(self._session, index)
        self._after_history_move()

    def clear_history(self) -> None:
        self._history.clear_history(self._session)

    # ------------------------------------------------------------------
    # Context and generation
    # ------------------------------------------------------------------

    def build_context(self) -> PipelineContext:
        """Run the pipeline over the current active path."""
        return self._orchestrator.build_context(self._session, self.active_path())

    async def send_message(
        self, content: str, *, attachments: list[Attachment] | None = None
    ) -> MessageNode:
        return await self._orchestrator.send_message(
            self._session, content, attachments=attachments
        )

    async def regenerate_from_node(self, node_id: str) -> MessageNode:
        return await self._orchestrator.regenerate_from_node(self._session, node_id)

    async def continue_generation(self, node_id: str, *, as_branch: bool = False) -> MessageNode:
        return await self._orchestrator.continue_generation(
            self._session, node_id, as_branch=as_branch
        )

    def abort_node_generation(self, node_id: str) -> bool:
        return self._orchestrator.abort_node_generation(node_id)

    def abort_sending(self) -> int:
        return self._orchestrator.abort_sending()

    def is_generating(self, node_id: str) -> bool:
        return self._orchestrator.is_generating(node_id)

    def validate(self) -> tuple[bool, list[str]]:
        return tree.validate_tree(self._session)
