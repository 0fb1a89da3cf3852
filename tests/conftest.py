"""Shared fixtures for deepdive-chat tests."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

import httpx
import pytest

from deepdive_chat.config import load_config
from deepdive_chat.core.context_chain import ContextChainBuilder
from deepdive_chat.core.gateway import CompletionGateway
from deepdive_chat.core.summarizer import Summarizer
from deepdive_chat.storage.filesystem import FilesystemStore
from deepdive_chat.types import Conversation, DeepDiveChatConfig, Message, UpstreamError


def make_conversation(
    title: str = "Topic",
    parent_id: str | None = None,
    messages: list[tuple[str, str]] | None = None,
    summary: str = "",
    last_summarized: int = 0,
    origin_term: str | None = None,
    conversation_id: str | None = None,
) -> Conversation:
    conversation = Conversation(
        title=title,
        parent_id=parent_id,
        messages=[Message(role=r, content=c) for r, c in (messages or [])],
        summary=summary,
        last_summarized_message_count=last_summarized,
        origin_term=origin_term,
    )
    if conversation_id:
        conversation.id = conversation_id
    return conversation


def completion_body(text: str) -> dict:
    return {
        "id": "gen-1",
        "model": "google/gemini-2.5-flash-lite",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}}],
    }


def sse_body(pieces: list[str], done: bool = True) -> bytes:
    out = b""
    for piece in pieces:
        chunk = {"choices": [{"index": 0, "delta": {"content": piece}}]}
        out += b"data: " + json.dumps(chunk).encode() + b"\n\n"
    if done:
        out += b"data: [DONE]\n\n"
    return out


class FakeUpstream:
    """OpenAI-compatible upstream for httpx.MockTransport.

    Replies by request kind: summarization prompts get ``summary_text``,
    deep-dive opening prompts get ``opening_text``, everything else ``text``.
    """

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.headers: list[httpx.Headers] = []
        self.text = "Hello there, happy to help"
        self.summary_text = "A short summary."
        self.opening_text = "Let's dig into this term."
        self.fail_status: int | None = None
        self.fail_summaries = False
        self.fail_openings = False

    def kind(self, body: dict) -> str:
        content = body["messages"][-1].get("content", "")
        if content.startswith("Summarize the following conversation"):
            return "summary"
        if content.startswith("You are helping the user dig deeper"):
            return "opening"
        return "chat"

    def count(self, kind: str) -> int:
        return sum(1 for body in self.requests if self.kind(body) == kind)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        self.headers.append(request.headers)
        kind = self.kind(body)

        if (
            self.fail_status is not None
            or (kind == "summary" and self.fail_summaries)
            or (kind == "opening" and self.fail_openings)
        ):
            return httpx.Response(self.fail_status or 500, json={"error": {"message": "boom"}})

        text = {"summary": self.summary_text, "opening": self.opening_text}.get(kind, self.text)
        if body.get("stream"):
            words = text.split(" ")
            pieces = [w + (" " if i < len(words) - 1 else "") for i, w in enumerate(words)]
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=sse_body(pieces),
            )
        return httpx.Response(200, json=completion_body(text))


class FakeCompletionClient:
    """Mock completion client for summarizer tests (no HTTP)."""

    def __init__(self, response: str = "Test summary", error: UpstreamError | None = None):
        self.calls: list[dict] = []
        self.response = response
        self.error = error

    async def complete(self, messages, *, session_id=None, temperature=None, max_tokens=None):
        self.calls.append({
            "messages": messages,
            "session_id": session_id,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.error is not None:
            raise self.error
        return completion_body(self.response)


@pytest.fixture
def tmp_store_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def store(tmp_store_dir) -> FilesystemStore:
    return FilesystemStore(tmp_store_dir / "sessions")


@pytest.fixture
def config(tmp_store_dir) -> DeepDiveChatConfig:
    return load_config(config_dict={
        "upstream": {"base_url": "http://upstream.test/api/v1", "api_key": "test-key"},
        "storage": {"root": str(tmp_store_dir / "sessions")},
    })


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def http_client(fake_upstream) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_upstream.handler))


@pytest.fixture
def gateway(config, store, http_client) -> CompletionGateway:
    return CompletionGateway(config, http_client, chain_builder=ContextChainBuilder(store))


@pytest.fixture
def summarizer(config, store, gateway) -> Summarizer:
    return Summarizer(store, gateway, config.summarization)
