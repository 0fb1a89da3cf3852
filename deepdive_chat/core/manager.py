"""ConversationManager: the live conversation forest and the deep-dive flow.

Holds the in-memory forest loaded from the store, mediates between user
actions and the store / gateway / summarizer, and spawns child
conversations from highlighted fragments.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator

from ..types import (
    DEFAULT_TITLE,
    Conversation,
    DeepDiveChatConfig,
    Fragment,
    Highlight,
    Message,
    NotFoundError,
    SummaryResult,
    UpstreamError,
    ValidationError,
    new_id,
)
from .gateway import CompletionGateway, extract_text
from .highlights import can_highlight, selection_text
from .store import ConversationStore
from .summarizer import Summarizer

logger = logging.getLogger(__name__)

DEFAULT_CHILD_TITLE = "Term"
UNAVAILABLE = "Context unavailable"

OPENING_PROMPT = """\
You are helping the user dig deeper into a term or concept.

Context of the parent chat (short summary):
{parent_summary}

Message the fragment was selected from:
{source_text}

The user selected this fragment to explore in depth:
{fragment}

Your task: very briefly (1-2 sentences) outline this term, concept or fragment \
and proactively invite the user into a conversation. Be friendly and curious. \
Suggest concrete directions to discuss or ask an open question that helps \
start the dialogue. If the fragment contains formulas, repeat them in your \
message. Answer in the language of that message."""

FALLBACK_OPENING = (
    "{text}: Is the whole term unclear, or do you have a specific question "
    "about this fragment?"
)


def iter_tree(conversations: list[Conversation]) -> Iterator[tuple[int, Conversation]]:
    """Depth-first (depth, conversation) pairs, parents before children.

    Conversations whose parent is not in *conversations* are treated as roots.
    """
    known = {c.id for c in conversations}
    children: dict[str, list[Conversation]] = {}
    roots: list[Conversation] = []
    for c in conversations:
        if c.parent_id and c.parent_id in known:
            children.setdefault(c.parent_id, []).append(c)
        else:
            roots.append(c)

    seen: set[str] = set()

    def walk(node: Conversation, depth: int) -> Iterator[tuple[int, Conversation]]:
        if node.id in seen:
            return
        seen.add(node.id)
        yield depth, node
        for child in children.get(node.id, []):
            yield from walk(child, depth + 1)

    for root in roots:
        yield from walk(root, 0)


class ConversationManager:
    """Explicit owner of the conversation forest and the active conversation."""

    def __init__(
        self,
        store: ConversationStore,
        gateway: CompletionGateway,
        summarizer: Summarizer,
        config: DeepDiveChatConfig,
        conversations: list[Conversation] | None = None,
        active: Conversation | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.summarizer = summarizer
        self.config = config
        self.conversations: list[Conversation] = list(conversations or [])
        self._background: set[asyncio.Task] = set()

        if active is None:
            if self.conversations:
                active = self.conversations[0]
            else:
                # drafts are only written on the first send
                active = Conversation()
                self.conversations.append(active)
        self.active: Conversation = active

    @classmethod
    def load(
        cls,
        store: ConversationStore,
        gateway: CompletionGateway,
        summarizer: Summarizer,
        config: DeepDiveChatConfig,
        active_id: str | None = None,
    ) -> ConversationManager:
        """Build the forest from the store, restoring *active_id* when present."""
        conversations = store.list_all()
        active = None
        if active_id:
            active = next((c for c in conversations if c.id == active_id), None)
        logger.info("Loaded %d sessions", len(conversations))
        return cls(store, gateway, summarizer, config, conversations, active)

    # ------------------------------------------------------------------
    # Forest queries
    # ------------------------------------------------------------------

    def find(self, conversation_id: str) -> Conversation | None:
        return next((c for c in self.conversations if c.id == conversation_id), None)

    def get(self, conversation_id: str) -> Conversation:
        conversation = self.find(conversation_id)
        if conversation is None:
            raise NotFoundError(conversation_id)
        return conversation

    def roots(self) -> list[Conversation]:
        return [c for c in self.conversations if c.is_root]

    def children_of(self, conversation_id: str) -> list[Conversation]:
        return [c for c in self.conversations if c.parent_id == conversation_id]

    def iter_tree(self) -> Iterator[tuple[int, Conversation]]:
        return iter_tree(self.conversations)

    def _subtree_ids(self, conversation_id: str) -> set[str]:
        ids = {conversation_id}
        frontier = [conversation_id]
        while frontier:
            current = frontier.pop()
            for child in self.children_of(current):
                if child.id not in ids:
                    ids.add(child.id)
                    frontier.append(child.id)
        return ids

    def find_child_for_highlight(
        self,
        highlight: Highlight,
        parent: Conversation | None = None,
    ) -> Conversation | None:
        """Child spawned from *highlight*: by highlight id, then by literal text.

        The text fallback can pick the wrong child when two highlights in the
        same parent share identical text.
        """
        parent = parent or self.active
        children = self.children_of(parent.id)
        for child in children:
            if child.origin_highlight_id == highlight.id:
                return child
        if highlight.text:
            for child in children:
                if child.origin_term == highlight.text:
                    return child
        return None

    # ------------------------------------------------------------------
    # Background summarization
    # ------------------------------------------------------------------

    def schedule_summarization(self, conversation_id: str) -> asyncio.Task:
        """Fire-and-forget summarization; failures are logged, never raised."""
        task = asyncio.create_task(self._summarize_in_background(conversation_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _summarize_in_background(self, conversation_id: str) -> SummaryResult | None:
        try:
            result = await self.summarizer.summarize(conversation_id)
            if not result.skipped:
                conversation = self.find(conversation_id)
                if conversation is not None:
                    conversation.summary = result.summary
                    conversation.last_summarized_message_count = max(
                        conversation.last_summarized_message_count, result.message_count,
                    )
                    self.store.update(conversation)
            return result
        except Exception as e:
            logger.error("Background summarization failed for %s: %s", conversation_id, e, exc_info=True)
            return None

    async def wait_for_background(self) -> None:
        """Block until all pending background summarizations finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def switch(self, target: Conversation | str) -> Conversation:
        """Make *target* active, summarizing the previous one in the background."""
        if isinstance(target, str):
            target = self.get(target)
        previous = self.active
        if previous.id != target.id and previous.has_unsummarized_delta:
            self.schedule_summarization(previous.id)
        self.active = target
        return target

    async def new_conversation(self) -> Conversation:
        draft = Conversation()
        self.conversations.insert(0, draft)
        await self.switch(draft)
        return draft

    async def open_parent(self) -> Conversation | None:
        if self.active.is_root:
            return None
        parent = self.find(self.active.parent_id)
        if parent is None:
            return None
        return await self.switch(parent)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send(
        self,
        content: str,
        *,
        stream: bool = True,
        on_delta: Callable[[str], None] | None = None,
    ) -> Message:
        """Append a user message, request a reply, and persist the result.

        Upstream failures become an inline error reply instead of raising.
        """
        content = content.strip()
        if not content:
            raise ValidationError("Message is empty.")

        conversation = self.active
        conversation.messages.append(Message(role="user", content=content))
        if len(conversation.messages) == 1 and conversation.title == DEFAULT_TITLE:
            conversation.title = content[: self.config.chat.title_max_chars]
        self.store.save(conversation)

        payload = [m.to_api() for m in conversation.messages]
        reply = Message(role="assistant", content="")
        conversation.messages.append(reply)

        try:
            if stream:
                parts: list[str] = []
                async for piece in self.gateway.stream_text(payload, session_id=conversation.id):
                    parts.append(piece)
                    reply.content = "".join(parts)
                    if on_delta is not None:
                        on_delta(reply.content)
            else:
                completion = await self.gateway.complete(payload, session_id=conversation.id)
                reply.content = extract_text(completion)
                if on_delta is not None:
                    on_delta(reply.content)
        except UpstreamError as e:
            logger.error("Chat request failed for session %s: %s", conversation.id, e)
            reply.content = f"Error: {e}"
            reply.disable_highlighting = True
            return reply

        self.store.save(conversation)
        return reply

    # ------------------------------------------------------------------
    # Highlights
    # ------------------------------------------------------------------

    def add_highlight(
        self,
        message_id: str,
        start: int,
        end: int,
        text: str | None = None,
        *,
        prefer_formula: bool = False,
    ) -> Highlight | None:
        """Highlight ``[start, end)`` of an assistant message and stage a fragment.

        Returns None when the selection is not highlightable: a user message,
        an error reply, an empty range or text, or an exact duplicate.
        """
        conversation = self.active
        message = conversation.find_message(message_id)
        if message is None:
            raise NotFoundError(message_id, what="Message")
        if not can_highlight(message) or start >= end:
            return None
        if any(h.start == start and h.end == end for h in message.highlights):
            return None

        fragment_text = selection_text(message, start, end, text, prefer_formula=prefer_formula)
        if not fragment_text:
            return None

        highlight = Highlight(id=new_id(), start=start, end=end, text=fragment_text)
        message.highlights.append(highlight)
        conversation.pending_fragments.append(
            Fragment(id=highlight.id, message_id=message.id, text=fragment_text)
        )
        self.store.save(conversation)
        return highlight

    def remove_highlight(self, message_id: str, highlight_id: str) -> bool:
        conversation = self.active
        message = conversation.find_message(message_id)
        if message is None:
            return False
        before = len(message.highlights)
        message.highlights = [h for h in message.highlights if h.id != highlight_id]
        conversation.pending_fragments = [
            f for f in conversation.pending_fragments if f.id != highlight_id
        ]
        if len(message.highlights) == before:
            return False
        self.store.save(conversation)
        return True

    # ------------------------------------------------------------------
    # Deep dive
    # ------------------------------------------------------------------

    async def _opening_message(self, parent: Conversation, fragment: Fragment) -> str:
        fallback = FALLBACK_OPENING.format(text=fragment.text)
        if not self.config.deep_dive.generate_opening:
            return fallback

        source = parent.find_message(fragment.message_id)
        prompt = OPENING_PROMPT.format(
            parent_summary=parent.summary or UNAVAILABLE,
            source_text=(source.content if source else "") or UNAVAILABLE,
            fragment=fragment.text,
        )
        try:
            completion = await self.gateway.complete(
                [{"role": "user", "content": prompt}],
                temperature=self.config.deep_dive.temperature,
                max_tokens=self.config.deep_dive.max_tokens,
            )
        except UpstreamError as e:
            logger.warning("Opening message generation failed for %r: %s", fragment.text, e)
            return fallback
        return extract_text(completion) or fallback

    async def deep_dive(self) -> list[Conversation]:
        """Promote every pending fragment of the active conversation to a child.

        The parent is saved before its children so their directories nest
        under it. The first new child becomes active.
        """
        parent = self.active
        fragments = list(parent.pending_fragments)
        if not fragments:
            return []

        openings = await asyncio.gather(
            *(self._opening_message(parent, fragment) for fragment in fragments)
        )
        max_chars = self.config.chat.title_max_chars
        children = [
            Conversation(
                title=fragment.text[:max_chars] or DEFAULT_CHILD_TITLE,
                parent_id=parent.id,
                origin_term=fragment.text,
                origin_highlight_id=fragment.id,
                messages=[Message(role="assistant", content=opening)],
            )
            for fragment, opening in zip(fragments, openings)
        ]

        parent.pending_fragments = []
        parent.is_expanded = True
        self.store.save(parent)
        for child in children:
            self.store.save(child)
        self.conversations.extend(children)

        if parent.has_unsummarized_delta:
            self.schedule_summarization(parent.id)

        self.active = children[0]
        logger.info("Deep dive from %s spawned %d sessions", parent.id, len(children))
        return children

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete(self, conversation_id: str) -> None:
        """Delete a conversation and its subtree from disk and memory."""
        self.store.delete(conversation_id)
        doomed = self._subtree_ids(conversation_id)
        self.conversations = [c for c in self.conversations if c.id not in doomed]
        if self.active.id in doomed:
            if not self.conversations:
                self.conversations.append(Conversation())
            self.active = self.conversations[0]
