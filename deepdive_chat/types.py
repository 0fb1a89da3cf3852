"""All dataclasses, Protocols, and exceptions for deepdive-chat."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

DEFAULT_TITLE = "New chat"
ROLES = frozenset({"user", "assistant", "system"})


def new_id() -> str:
    return str(uuid.uuid4())


def _require_dict(raw: Any, what: str) -> dict:
    if not isinstance(raw, dict):
        raise ValueError(f"{what} must be an object, got {type(raw).__name__}")
    return raw


def _list_field(raw: dict, key: str) -> list:
    """A list-valued document field; missing or null reads as empty."""
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{key}' must be a list, got {type(value).__name__}")
    return value


# ---------------------------------------------------------------------------
# Highlights & fragments
# ---------------------------------------------------------------------------

@dataclass
class Highlight:
    """A user-marked span inside a message (half-open ``[start, end)``)."""
    id: str
    start: int
    end: int
    text: str  # snapshot taken at selection time, authoritative over offsets

    def to_dict(self) -> dict:
        return {"id": self.id, "start": self.start, "end": self.end, "text": self.text}

    @classmethod
    def from_dict(cls, raw: dict) -> Highlight:
        raw = _require_dict(raw, "highlight")
        return cls(
            id=raw["id"],
            start=int(raw.get("start", 0)),
            end=int(raw.get("end", 0)),
            text=raw.get("text") or "",
        )


@dataclass
class Fragment:
    """A highlight staged for deep-dive promotion. ``id`` equals the highlight id."""
    id: str
    message_id: str
    text: str

    def to_dict(self) -> dict:
        return {"id": self.id, "messageId": self.message_id, "text": self.text}

    @classmethod
    def from_dict(cls, raw: dict) -> Fragment:
        raw = _require_dict(raw, "pending fragment")
        return cls(
            id=raw["id"],
            message_id=raw.get("messageId", ""),
            text=raw.get("text") or "",
        )


# ---------------------------------------------------------------------------
# Message & Conversation
# ---------------------------------------------------------------------------

@dataclass
class Message:
    role: str  # "user", "assistant", "system"
    content: str
    id: str = field(default_factory=new_id)
    highlights: list[Highlight] = field(default_factory=list)
    disable_highlighting: bool = False

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "highlights": [h.to_dict() for h in self.highlights],
        }
        if self.disable_highlighting:
            data["disableHighlighting"] = True
        return data

    def to_api(self) -> dict:
        """Role/content pair as sent upstream."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, raw: dict) -> Message:
        raw = _require_dict(raw, "message")
        role = raw.get("role", "user")
        if role not in ROLES:
            raise ValueError(f"unknown message role: {role!r}")
        return cls(
            id=raw.get("id") or new_id(),
            role=role,
            content=raw.get("content") or "",
            highlights=[Highlight.from_dict(h) for h in _list_field(raw, "highlights")],
            disable_highlighting=bool(raw.get("disableHighlighting", False)),
        )


@dataclass
class Conversation:
    """One node of the conversation forest (aka session)."""
    id: str = field(default_factory=new_id)
    title: str = DEFAULT_TITLE
    parent_id: str | None = None
    messages: list[Message] = field(default_factory=list)
    pending_fragments: list[Fragment] = field(default_factory=list)
    is_expanded: bool = True
    summary: str = ""
    last_summarized_message_count: int = 0
    origin_term: str | None = None
    origin_highlight_id: str | None = None

    @property
    def is_root(self) -> bool:
        return not self.parent_id

    @property
    def has_unsummarized_delta(self) -> bool:
        """True when messages were added since the summary was last computed."""
        return len(self.messages) > 0 and len(self.messages) > self.last_summarized_message_count

    def find_message(self, message_id: str) -> Message | None:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "parentId": self.parent_id,
            "messages": [m.to_dict() for m in self.messages],
            "pendingFragments": [f.to_dict() for f in self.pending_fragments],
            "isExpanded": self.is_expanded,
            "summary": self.summary,
            "originTerm": self.origin_term,
            "originHighlightId": self.origin_highlight_id,
            "lastSummarizedMessageCount": self.last_summarized_message_count,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> Conversation:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise ValueError("conversation document must be an object with an 'id'")
        return cls(
            id=str(raw["id"]),
            title=DEFAULT_TITLE if raw.get("title") is None else str(raw["title"]),
            parent_id=raw.get("parentId") or None,
            messages=[Message.from_dict(m) for m in _list_field(raw, "messages")],
            pending_fragments=[
                Fragment.from_dict(f) for f in _list_field(raw, "pendingFragments")
            ],
            is_expanded=bool(raw.get("isExpanded", True)),
            summary=raw.get("summary") or "",
            last_summarized_message_count=int(raw.get("lastSummarizedMessageCount") or 0),
            origin_term=raw.get("originTerm"),
            origin_highlight_id=raw.get("originHighlightId"),
        )


# ---------------------------------------------------------------------------
# Context chain & summarization results
# ---------------------------------------------------------------------------

@dataclass
class ChainLink:
    """One ancestor (or the target itself) in a context chain."""
    title: str
    summary: str = ""
    origin_term: str | None = None


@dataclass
class SummaryResult:
    summary: str
    message_count: int
    skipped: bool

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "messageCount": self.message_count,
            "skipped": self.skipped,
        }


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DeepDiveError(Exception):
    """Base class for deepdive-chat errors."""


class NotFoundError(DeepDiveError):
    def __init__(self, conversation_id: str, what: str = "Session") -> None:
        super().__init__(f"{what} not found: {conversation_id}")
        self.conversation_id = conversation_id
        self.what = what


class ValidationError(DeepDiveError):
    pass


class CorruptStateError(DeepDiveError):
    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class UpstreamError(DeepDiveError):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class SummarizationError(UpstreamError):
    pass


# ---------------------------------------------------------------------------
# Completion client protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class CompletionClient(Protocol):
    async def complete(
        self,
        messages: list[dict],
        *,
        session_id: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class UpstreamConfig:
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "google/gemini-2.5-flash-lite"
    api_key_env: str = "OPENROUTER_API_KEY"
    api_key: str = ""
    referer: str = "https://example.com"
    title: str = "Minimalist Chatbot"
    timeout: float = 120.0


@dataclass
class ChatConfig:
    temperature: float = 0.8
    max_tokens: int = 4096
    title_max_chars: int = 32  # titles derived from a first message or a fragment


@dataclass
class SummarizationConfig:
    temperature: float = 0.5
    max_tokens: int = 256


@dataclass
class DeepDiveConfig:
    generate_opening: bool = True
    temperature: float = 0.8
    max_tokens: int = 512


@dataclass
class StorageConfig:
    root: str = "sessions"


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3000


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class DeepDiveChatConfig:
    version: str = "1.0"
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)
    deep_dive: DeepDiveConfig = field(default_factory=DeepDiveConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
