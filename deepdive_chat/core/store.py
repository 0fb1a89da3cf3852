"""ConversationStore abstract base class: tree-shaped session storage interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from ..types import Conversation


class ConversationStore(ABC):
    """Pluggable storage backend for the conversation forest.

    A node's storage location is a function of its ancestry, so deleting a
    node removes its whole subtree. Writes are full-document overwrites and
    the last writer wins.
    """

    @abstractmethod
    def find_path(self, conversation_id: str) -> Path | None:
        """Location of a conversation, or None if it is not stored."""

    @abstractmethod
    def list_all(self) -> list[Conversation]:
        """Every stored conversation. Unreadable nodes are skipped."""

    @abstractmethod
    def get(self, conversation_id: str) -> Conversation:
        """Load one conversation. Raises NotFoundError / CorruptStateError."""

    @abstractmethod
    def save(self, conversation: Conversation) -> Path:
        """Upsert by full overwrite. Raises NotFoundError for a missing parent."""

    def create(self, conversation: Conversation) -> Path:
        """Store a new conversation (same mechanics as ``update``)."""
        return self.save(conversation)

    def update(self, conversation: Conversation) -> Path:
        """Replace a stored conversation (same mechanics as ``create``)."""
        return self.save(conversation)

    @abstractmethod
    def delete(self, conversation_id: str) -> None:
        """Remove a conversation and its subtree. Raises NotFoundError."""
