"""ContextChainBuilder: ancestor summaries injected ahead of a child conversation."""

from __future__ import annotations

import logging

from ..types import ChainLink, CorruptStateError, NotFoundError
from .store import ConversationStore

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "Conversation context (path of deeper dives into the topic):"
UNTITLED = "Untitled"
NOT_CONCLUDED = "(not yet concluded)"


def render_context(chain: list[ChainLink]) -> str | None:
    """Render a chain as system-context text. None for a chain without ancestry."""
    if len(chain) <= 1:
        return None

    lines = [CONTEXT_HEADER, ""]
    last = len(chain) - 1
    for index, link in enumerate(chain):
        if index > 0 and link.origin_term:
            lines.append(f'→ The user dived into the term: "{link.origin_term}"')
            lines.append("")
        lines.append(f'{index + 1}. Topic: "{link.title}"')
        if link.summary:
            lines.append(f"   Summary: {link.summary}")
            lines.append("")
        elif index < last:
            lines.append(f"   {NOT_CONCLUDED}")
            lines.append("")
    return "\n".join(lines).rstrip() + "\n"


class ContextChainBuilder:
    """Walk ``parent_id`` links up to the root, best-effort."""

    def __init__(self, store: ConversationStore) -> None:
        self.store = store

    def build_chain(self, conversation_id: str) -> list[ChainLink]:
        """Root-to-leaf chain ending at *conversation_id*.

        A lookup failure mid-walk truncates the chain instead of failing:
        partial context is still injected.
        """
        chain: list[ChainLink] = []
        seen: set[str] = set()
        current: str | None = conversation_id
        while current and current not in seen:
            seen.add(current)
            try:
                conversation = self.store.get(current)
            except (NotFoundError, CorruptStateError) as e:
                logger.warning("Context chain for %s truncated at %s: %s", conversation_id, current, e)
                break
            chain.insert(0, ChainLink(
                title=conversation.title or UNTITLED,
                summary=conversation.summary or "",
                origin_term=conversation.origin_term or None,
            ))
            current = conversation.parent_id
        return chain

    def context_message(self, conversation_id: str) -> dict | None:
        """System message for *conversation_id*, or None when it has no ancestry."""
        text = render_context(self.build_chain(conversation_id))
        if text is None:
            return None
        return {"role": "system", "content": text}
