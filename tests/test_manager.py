"""Tests for ConversationManager: navigation, messaging, highlights, deep dive."""

from __future__ import annotations

import logging

import pytest

from conftest import make_conversation
from deepdive_chat.core.manager import (
    DEFAULT_CHILD_TITLE,
    FALLBACK_OPENING,
    ConversationManager,
    iter_tree,
)
from deepdive_chat.types import DEFAULT_TITLE, Fragment, Highlight, NotFoundError, ValidationError


@pytest.fixture
def manager(store, gateway, summarizer, config) -> ConversationManager:
    return ConversationManager.load(store, gateway, summarizer, config)


async def _chat(manager, *texts):
    for text in texts:
        await manager.send(text)


def _highlight_in_reply(manager, phrase: str) -> Highlight:
    reply = manager.active.messages[-1]
    start = reply.content.index(phrase)
    return manager.add_highlight(reply.id, start, start + len(phrase), phrase)


# ---------------------------------------------------------------------------
# Loading & forest queries
# ---------------------------------------------------------------------------


class TestLoad:
    def test_empty_store_gets_unsaved_draft(self, manager, store):
        assert len(manager.conversations) == 1
        assert manager.active.title == DEFAULT_TITLE
        assert manager.active.messages == []
        assert store.list_all() == []

    def test_restores_active(self, store, gateway, summarizer, config):
        store.save(make_conversation(conversation_id="a"))
        store.save(make_conversation(conversation_id="b"))
        manager = ConversationManager.load(store, gateway, summarizer, config, active_id="b")
        assert manager.active.id == "b"

    def test_unknown_active_falls_back(self, store, gateway, summarizer, config):
        store.save(make_conversation(conversation_id="a"))
        manager = ConversationManager.load(store, gateway, summarizer, config, active_id="ghost")
        assert manager.active.id == "a"

    def test_iter_tree_depths(self):
        root = make_conversation(conversation_id="r")
        child = make_conversation(conversation_id="c", parent_id="r")
        grandchild = make_conversation(conversation_id="g", parent_id="c")
        orphan = make_conversation(conversation_id="o", parent_id="missing")

        pairs = [(d, c.id) for d, c in iter_tree([grandchild, orphan, child, root])]
        assert pairs == [(0, "o"), (0, "r"), (1, "c"), (2, "g")]

    def test_get_unknown_raises(self, manager):
        with pytest.raises(NotFoundError):
            manager.get("ghost")


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------


class TestSend:
    @pytest.mark.asyncio
    async def test_streaming_reply_persisted(self, manager, store, fake_upstream):
        deltas = []
        reply = await manager.send("Tell me about entropy", on_delta=deltas.append)

        assert reply.content == fake_upstream.text
        assert deltas[-1] == fake_upstream.text
        assert len(deltas) > 1
        stored = store.get(manager.active.id)
        assert [m.role for m in stored.messages] == ["user", "assistant"]
        assert stored.messages[1].content == fake_upstream.text
        assert fake_upstream.requests[0]["stream"] is True

    @pytest.mark.asyncio
    async def test_non_streaming_reply(self, manager, fake_upstream):
        reply = await manager.send("hello", stream=False)
        assert reply.content == fake_upstream.text
        assert fake_upstream.requests[0]["stream"] is False

    @pytest.mark.asyncio
    async def test_title_from_first_message(self, manager, config):
        text = "A rather long first question about the thermodynamics of black holes"
        await manager.send(text)
        assert manager.active.title == text[: config.chat.title_max_chars]

        await manager.send("follow-up")
        assert manager.active.title == text[: config.chat.title_max_chars]

    @pytest.mark.asyncio
    async def test_history_sent_upstream(self, manager, fake_upstream):
        await _chat(manager, "one", "two")
        messages = fake_upstream.requests[-1]["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "two"

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, manager, fake_upstream):
        with pytest.raises(ValidationError):
            await manager.send("   ")
        assert fake_upstream.requests == []

    @pytest.mark.asyncio
    async def test_upstream_failure_becomes_error_reply(self, manager, store, fake_upstream):
        fake_upstream.fail_status = 500
        reply = await manager.send("hello")

        assert reply.content.startswith("Error:")
        assert reply.disable_highlighting is True
        assert manager.active.messages[-1] is reply
        # only the user message reached disk
        stored = store.get(manager.active.id)
        assert [m.role for m in stored.messages] == ["user"]


# ---------------------------------------------------------------------------
# Navigation & background summarization
# ---------------------------------------------------------------------------


class TestSwitch:
    @pytest.mark.asyncio
    async def test_switch_summarizes_previous(self, manager, store, fake_upstream):
        await manager.send("first topic")
        first = manager.active
        await manager.new_conversation()
        await manager.wait_for_background()

        assert fake_upstream.count("summary") == 1
        assert first.summary == fake_upstream.summary_text
        assert first.last_summarized_message_count == 2
        stored = store.get(first.id)
        assert stored.summary == fake_upstream.summary_text
        assert stored.last_summarized_message_count == 2

    @pytest.mark.asyncio
    async def test_switch_back_and_forth_summarizes_once(self, manager, fake_upstream):
        await manager.send("first topic")
        first = manager.active
        second = await manager.new_conversation()
        await manager.wait_for_background()

        await manager.switch(first)
        await manager.switch(second)
        await manager.wait_for_background()

        assert fake_upstream.count("summary") == 1

    @pytest.mark.asyncio
    async def test_switch_to_self_does_nothing(self, manager, fake_upstream):
        await manager.send("first topic")
        await manager.switch(manager.active)
        await manager.wait_for_background()
        assert fake_upstream.count("summary") == 0

    @pytest.mark.asyncio
    async def test_background_failure_is_logged(self, manager, store, fake_upstream, caplog):
        fake_upstream.fail_summaries = True
        await manager.send("first topic")
        first = manager.active

        with caplog.at_level(logging.ERROR):
            await manager.new_conversation()
            await manager.wait_for_background()

        assert first.summary == ""
        assert first.last_summarized_message_count == 0
        assert store.get(first.id).last_summarized_message_count == 0
        assert any("Background summarization failed" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_switch_by_id(self, manager, store):
        store.save(make_conversation(conversation_id="other"))
        manager.conversations.append(store.get("other"))
        target = await manager.switch("other")
        assert manager.active is target

    @pytest.mark.asyncio
    async def test_open_parent(self, manager):
        assert await manager.open_parent() is None


# ---------------------------------------------------------------------------
# Highlights
# ---------------------------------------------------------------------------


class TestHighlights:
    @pytest.mark.asyncio
    async def test_add_highlight_stages_fragment(self, manager, store):
        await manager.send("hello")
        highlight = _highlight_in_reply(manager, "happy")

        assert highlight is not None
        assert highlight.text == "happy"
        fragments = manager.active.pending_fragments
        assert [(f.id, f.text) for f in fragments] == [(highlight.id, "happy")]
        assert store.get(manager.active.id).pending_fragments[0].id == highlight.id

    @pytest.mark.asyncio
    async def test_user_message_not_highlightable(self, manager):
        await manager.send("hello")
        user_msg = manager.active.messages[0]
        assert manager.add_highlight(user_msg.id, 0, 5, "hello") is None
        assert manager.active.pending_fragments == []

    @pytest.mark.asyncio
    async def test_error_reply_not_highlightable(self, manager, fake_upstream):
        fake_upstream.fail_status = 502
        reply = await manager.send("hello")
        assert manager.add_highlight(reply.id, 0, 5) is None

    @pytest.mark.asyncio
    async def test_duplicate_and_empty_selection(self, manager):
        await manager.send("hello")
        assert _highlight_in_reply(manager, "happy") is not None
        assert _highlight_in_reply(manager, "happy") is None
        reply = manager.active.messages[-1]
        assert manager.add_highlight(reply.id, 3, 3) is None
        assert len(manager.active.pending_fragments) == 1

    @pytest.mark.asyncio
    async def test_unknown_message(self, manager):
        with pytest.raises(NotFoundError):
            manager.add_highlight("nope", 0, 1)

    @pytest.mark.asyncio
    async def test_remove_highlight(self, manager, store):
        await manager.send("hello")
        highlight = _highlight_in_reply(manager, "happy")
        reply = manager.active.messages[-1]

        assert manager.remove_highlight(reply.id, highlight.id) is True
        assert reply.highlights == []
        assert manager.active.pending_fragments == []
        assert store.get(manager.active.id).pending_fragments == []
        assert manager.remove_highlight(reply.id, highlight.id) is False


# ---------------------------------------------------------------------------
# Deep dive
# ---------------------------------------------------------------------------


class TestDeepDive:
    @pytest.mark.asyncio
    async def test_no_fragments(self, manager):
        await manager.send("hello")
        assert await manager.deep_dive() == []

    @pytest.mark.asyncio
    async def test_spawns_children(self, manager, store, fake_upstream):
        await manager.send("hello")
        parent = manager.active
        h1 = _highlight_in_reply(manager, "happy")
        h2 = _highlight_in_reply(manager, "help")

        children = await manager.deep_dive()
        await manager.wait_for_background()

        assert [c.origin_term for c in children] == ["happy", "help"]
        assert [c.origin_highlight_id for c in children] == [h1.id, h2.id]
        for child in children:
            assert child.parent_id == parent.id
            assert child.title == child.origin_term
            assert [m.role for m in child.messages] == ["assistant"]
            assert child.messages[0].content == fake_upstream.opening_text
            assert store.find_path(child.id) == store.root / parent.id / child.id

        assert manager.active is children[0]
        assert parent.pending_fragments == []
        assert parent.is_expanded is True
        assert store.get(parent.id).pending_fragments == []
        assert fake_upstream.count("opening") == 2
        # parent summarized because it had unsummarized messages
        assert fake_upstream.count("summary") == 1
        assert store.get(parent.id).summary == fake_upstream.summary_text

    @pytest.mark.asyncio
    async def test_opening_prompt_carries_fragment(self, manager, fake_upstream):
        await manager.send("hello")
        source = manager.active.messages[-1].content
        _highlight_in_reply(manager, "happy")
        await manager.deep_dive()
        await manager.wait_for_background()

        opening = next(r for r in fake_upstream.requests if fake_upstream.kind(r) == "opening")
        prompt = opening["messages"][-1]["content"]
        assert "happy" in prompt
        assert source in prompt
        assert opening["stream"] is False

    @pytest.mark.asyncio
    async def test_fallback_opening(self, manager, fake_upstream):
        await manager.send("hello")
        _highlight_in_reply(manager, "happy")
        fake_upstream.fail_openings = True

        children = await manager.deep_dive()
        await manager.wait_for_background()
        assert children[0].messages[0].content == FALLBACK_OPENING.format(text="happy")

    @pytest.mark.asyncio
    async def test_opening_generation_disabled(self, manager, config, fake_upstream):
        config.deep_dive.generate_opening = False
        await manager.send("hello")
        _highlight_in_reply(manager, "happy")

        children = await manager.deep_dive()
        await manager.wait_for_background()
        assert children[0].messages[0].content == FALLBACK_OPENING.format(text="happy")
        assert fake_upstream.count("opening") == 0

    @pytest.mark.asyncio
    async def test_child_chat_gets_ancestor_context(self, manager, fake_upstream):
        await manager.send("hello")
        _highlight_in_reply(manager, "happy")
        await manager.deep_dive()
        await manager.wait_for_background()

        await manager.send("tell me more")
        messages = fake_upstream.requests[-1]["messages"]
        assert messages[0]["role"] == "system"
        assert '"happy"' in messages[0]["content"]

    @pytest.mark.asyncio
    async def test_find_child_for_highlight(self, manager):
        await manager.send("hello")
        parent = manager.active
        highlight = _highlight_in_reply(manager, "happy")
        children = await manager.deep_dive()
        await manager.wait_for_background()

        assert manager.find_child_for_highlight(highlight, parent) is children[0]
        # a highlight from before ids were recorded still resolves by text
        legacy = Highlight(id="old-id", start=0, end=5, text="happy")
        assert manager.find_child_for_highlight(legacy, parent) is children[0]
        unrelated = Highlight(id="x", start=0, end=1, text="zzz")
        assert manager.find_child_for_highlight(unrelated, parent) is None

    @pytest.mark.asyncio
    async def test_empty_fragment_title_defaults(self, manager, config):
        config.deep_dive.generate_opening = False
        await manager.send("hello")
        parent = manager.active
        parent.pending_fragments.append(Fragment(id="f", message_id="m", text=""))
        children = await manager.deep_dive()
        await manager.wait_for_background()
        assert children[0].title == DEFAULT_CHILD_TITLE


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_subtree_resets_active(self, manager, store):
        await manager.send("hello")
        root = manager.active
        _highlight_in_reply(manager, "happy")
        await manager.deep_dive()
        await manager.wait_for_background()

        manager.delete(root.id)

        assert store.list_all() == []
        assert len(manager.conversations) == 1
        assert manager.active.messages == []
        assert manager.active.id != root.id

    @pytest.mark.asyncio
    async def test_delete_child_keeps_parent_active(self, manager, store):
        await manager.send("hello")
        root = manager.active
        _highlight_in_reply(manager, "happy")
        children = await manager.deep_dive()
        await manager.wait_for_background()
        await manager.switch(root)
        await manager.wait_for_background()

        manager.delete(children[0].id)

        assert manager.active is root
        assert [c.id for c in store.list_all()] == [root.id]

    def test_delete_unknown(self, manager):
        with pytest.raises(NotFoundError):
            manager.delete("ghost")
