"""deepdive-chat: branching LLM conversations persisted as nested session trees."""

from .config import load_config
from .core.context_chain import ContextChainBuilder
from .core.gateway import CompletionGateway
from .core.manager import ConversationManager
from .core.store import ConversationStore
from .core.summarizer import Summarizer
from .storage import FilesystemStore
from .types import (
    Conversation,
    DeepDiveChatConfig,
    Fragment,
    Highlight,
    Message,
    NotFoundError,
    SummaryResult,
    UpstreamError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "CompletionGateway",
    "ContextChainBuilder",
    "Conversation",
    "ConversationManager",
    "ConversationStore",
    "DeepDiveChatConfig",
    "FilesystemStore",
    "Fragment",
    "Highlight",
    "Message",
    "NotFoundError",
    "Summarizer",
    "SummaryResult",
    "UpstreamError",
    "ValidationError",
    "load_config",
]
