"""Threadloom: branching conversation history for LLM chat clients.

A message tree with branch switching, undo/redo, concurrent cancellable
generation and an ordered context-assembly pipeline.
"""

from threadloom._version import __version__

# Core entry point
from threadloom.conversation import Conversation

# Models
from threadloom.models.node import Attachment, MessageNode, NodeStatus, Role
from threadloom.models.session import ChatSession
from threadloom.models.history import HistoryActionTag, HistoryEntry
from threadloom.models.config import (
    AgentConfig,
    ContextManagementConfig,
    HistoryConfig,
    InjectionStrategy,
    LLMConfig,
    PresetMessage,
    RegexPreset,
    RegexRule,
    ThreadloomConfig,
)

# Managers
from threadloom.generation import GenerationOrchestrator, StaticAgentResolver
from threadloom.operations.history import HistoryManager

# Pipeline
from threadloom.pipeline import (
    ContextPipeline,
    ContextProcessor,
    PipelineContext,
    PipelineMessage,
    build_default_pipeline,
)

# Protocols and boundary types
from threadloom.protocols import (
    AgentResolver,
    ModelInvoker,
    ModelRequest,
    SessionPersister,
    StreamChunk,
    TokenCounter,
    TokenUsage,
    WorldbookEntry,
    WorldbookProvider,
)
from threadloom.tokens import CharTokenCounter, NullTokenCounter, TiktokenCounter

# Exceptions
from threadloom.exceptions import (
    GenerationInProgressError,
    HistoryIndexError,
    InvalidNodeRoleError,
    InvalidParentError,
    NodeNotFoundError,
    PipelineError,
    ProcessorNotFoundError,
    RootNodeError,
    SessionNotFoundError,
    ThreadloomError,
    TreeIntegrityError,
)

__all__ = [
    "__version__",
    "Conversation",
    "Attachment",
    "MessageNode",
    "NodeStatus",
    "Role",
    "ChatSession",
    "HistoryActionTag",
    "HistoryEntry",
    "AgentConfig",
    "ContextManagementConfig",
    "HistoryConfig",
    "InjectionStrategy",
    "LLMConfig",
    "PresetMessage",
    "RegexPreset",
    "RegexRule",
    "ThreadloomConfig",
    "GenerationOrchestrator",
    "StaticAgentResolver",
    "HistoryManager",
    "ContextPipeline",
    "ContextProcessor",
    "PipelineContext",
    "PipelineMessage",
    "build_default_pipeline",
    "AgentResolver",
    "ModelInvoker",
    "ModelRequest",
    "SessionPersister",
    "StreamChunk",
    "TokenCounter",
    "TokenUsage",
    "WorldbookEntry",
    "WorldbookProvider",
    "CharTokenCounter",
    "NullTokenCounter",
    "TiktokenCounter",
    "GenerationInProgressError",
    "HistoryIndexError",
    "InvalidNodeRoleError",
    "InvalidParentError",
    "NodeNotFoundError",
    "PipelineError",
    "ProcessorNotFoundError",
    "RootNodeError",
    "SessionNotFoundError",
    "ThreadloomError",
    "TreeIntegrityError",
]
