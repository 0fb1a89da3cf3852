"""FilesystemStore: one directory per conversation, nested under its parent."""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path

from ..core.store import ConversationStore
from ..types import Conversation, CorruptStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DOCUMENT_NAME = "session.json"


def _check_id(conversation_id: str) -> str:
    if (
        not conversation_id
        or conversation_id in (".", "..")
        or "/" in conversation_id
        or "\\" in conversation_id
    ):
        raise ValidationError(f"Invalid session id: {conversation_id!r}")
    return conversation_id


def _read_document(path: Path) -> Conversation:
    """Parse ``<dir>/session.json`` into a Conversation."""
    doc = path / DOCUMENT_NAME
    try:
        raw = json.loads(doc.read_text(encoding="utf-8"))
        return Conversation.from_dict(raw)
    except (OSError, json.JSONDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
        raise CorruptStateError(f"Unreadable session document {doc}: {e}", path=str(doc)) from e


class FilesystemStore(ConversationStore):
    """Store conversations as ``<root>/<id>/[<child id>/...]session.json``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._ensure_root()

    def _ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def find_path(self, conversation_id: str, current: Path | None = None) -> Path | None:
        current = self.root if current is None else current
        try:
            entries = sorted(current.iterdir())
        except FileNotFoundError:
            return None
        for entry in entries:
            if not entry.is_dir():
                continue
            if entry.name == conversation_id:
                return entry
            found = self.find_path(conversation_id, entry)
            if found is not None:
                return found
        return None

    def list_all(self) -> list[Conversation]:
        return self._collect(self.root)

    def _collect(self, directory: Path) -> list[Conversation]:
        conversations: list[Conversation] = []
        try:
            entries = sorted(directory.iterdir())
        except FileNotFoundError:
            return conversations
        for entry in entries:
            if not entry.is_dir():
                continue
            try:
                conversation = _read_document(entry)
            except CorruptStateError as e:
                logger.warning("Skipping session directory %s: %s", entry, e)
                continue
            conversations.append(conversation)
            conversations.extend(self._collect(entry))
        return conversations

    def get(self, conversation_id: str) -> Conversation:
        path = self.find_path(conversation_id)
        if path is None:
            raise NotFoundError(conversation_id)
        return _read_document(path)

    def save(self, conversation: Conversation) -> Path:
        _check_id(conversation.id)
        target = self.root
        if conversation.parent_id:
            parent_path = self.find_path(conversation.parent_id)
            if parent_path is None:
                raise NotFoundError(conversation.parent_id, what="Parent session")
            target = parent_path

        session_dir = target / conversation.id
        session_dir.mkdir(parents=True, exist_ok=True)
        (session_dir / DOCUMENT_NAME).write_text(
            json.dumps(conversation.to_dict(), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        logger.debug("Saved session %s -> %s", conversation.id, session_dir)
        return session_dir

    def delete(self, conversation_id: str) -> None:
        path = self.find_path(conversation_id)
        if path is None:
            raise NotFoundError(conversation_id)
        shutil.rmtree(path)
        logger.info("Deleted session %s (with subtree)", conversation_id)
