"""Chat pipeline: from stored conversation to streamed, budgeted reply.

Public API:
    ChatRunner        - Per-request controller (run / stream / abort)
    ChatRequest       - One user turn
    ChatResponse      - Result plus persisted messages and title task
    AgentConfig       - One agent in a sequential chain
    CancellationManager, RequestHandle - Abort signal and cleanup registry

Building blocks:
    get_messages_for_conversation, TokenBudget, TokenBudgetManager,
    build_request, CompletionClient, StreamCoordinator, UsageRecorder,
    TitleSummarizer
"""

from parley.chat.budget import TokenBudget, TokenBudgetManager
from parley.chat.cancellation import CancellationManager, RequestHandle
from parley.chat.client import CompletionClient, StreamEvent
from parley.chat.history import get_messages_for_conversation
from parley.chat.models import (
    NO_PARENT,
    Attachment,
    CompletionResult,
    ContentPart,
    ConversationThread,
    Message,
    PromptPayload,
    UsageRecord,
)
from parley.chat.request_builder import ProviderRequest, build_request
from parley.chat.runner import ChatRequest, ChatResponse, ChatRunner
from parley.chat.sequencer import AgentConfig, AgentSequencer
from parley.chat.streaming import StreamCoordinator
from parley.chat.title import TitleSummarizer
from parley.chat.usage import UsageRecorder

__all__ = [
    "NO_PARENT",
    "AgentConfig",
    "AgentSequencer",
    "Attachment",
    "CancellationManager",
    "ChatRequest",
    "ChatResponse",
    "ChatRunner",
    "CompletionClient",
    "CompletionResult",
    "ContentPart",
    "ConversationThread",
    "Message",
    "PromptPayload",
    "ProviderRequest",
    "RequestHandle",
    "StreamCoordinator",
    "StreamEvent",
    "TitleSummarizer",
    "TokenBudget",
    "TokenBudgetManager",
    "UsageRecord",
    "UsageRecorder",
    "build_request",
    "get_messages_for_conversation",
]
