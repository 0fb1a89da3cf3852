"""CompletionGateway: OpenAI-compatible chat completions over httpx.

Forwards role-tagged messages to the upstream provider (OpenRouter by
default), optionally prefixed with the ancestor context of a session, either
as a single JSON completion or as a stream of parsed SSE chunks.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..config import resolve_api_key
from ..types import DeepDiveChatConfig, UpstreamError, ValidationError
from .context_chain import ContextChainBuilder

logger = logging.getLogger(__name__)

_DONE = object()


def extract_text(completion: dict) -> str:
    """Assistant text of a non-streaming completion, or ""."""
    choices = completion.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    return (choices[0].get("message") or {}).get("content") or ""


def extract_delta(chunk: Any) -> str:
    """Text delta of one streamed chunk, or ""."""
    if not isinstance(chunk, dict):
        return ""
    choices = chunk.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    return (choices[0].get("delta") or {}).get("content") or ""


def _parse_data_line(line: str) -> Any:
    """Parse one SSE line. Returns the payload, ``_DONE``, or None to skip."""
    line = line.rstrip("\r")
    if not line.startswith("data:"):
        return None
    data_str = line[5:].strip()
    if data_str == "[DONE]":
        return _DONE
    if not data_str:
        return None
    try:
        return json.loads(data_str)
    except json.JSONDecodeError:
        logger.debug("Dropping malformed stream chunk: %.200s", data_str)
        return None


def _error_body(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except (ValueError, json.JSONDecodeError):
        return raw.decode("utf-8", errors="replace")


class CompletionGateway:
    """Single point of contact with the upstream LLM. No automatic retries."""

    def __init__(
        self,
        config: DeepDiveChatConfig,
        client: httpx.AsyncClient,
        *,
        chain_builder: ContextChainBuilder | None = None,
        api_key: str | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.chain_builder = chain_builder
        self.api_key = resolve_api_key(config) if api_key is None else api_key
        if not self.api_key:
            logger.warning(
                "%s is not set. Completion requests will fail.",
                config.upstream.api_key_env,
            )

    @property
    def url(self) -> str:
        return f"{self.config.upstream.base_url.rstrip('/')}/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": self.config.upstream.referer,
            "X-Title": self.config.upstream.title,
        }

    def _require_key(self) -> None:
        if not self.api_key:
            raise UpstreamError(
                f"Upstream API key is not configured (set {self.config.upstream.api_key_env})",
                status_code=500,
            )

    def prepare_messages(
        self,
        messages: Any,
        session_id: str | None = None,
    ) -> list[dict]:
        """Validate caller messages and prepend session context when there is any."""
        if not isinstance(messages, list) or not messages:
            raise ValidationError("Messages array is required.")

        api_messages: list[dict] = []
        for msg in messages:
            if not isinstance(msg, dict) or not isinstance(msg.get("role"), str):
                raise ValidationError("Each message needs a role and content.")
            api_messages.append({"role": msg["role"], "content": msg.get("content", "")})

        if session_id and self.chain_builder is not None:
            context = self.chain_builder.context_message(session_id)
            if context is not None:
                api_messages.insert(0, context)
        return api_messages

    def _build_payload(
        self,
        messages: list[dict],
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict:
        return {
            "model": self.config.upstream.model,
            "messages": messages,
            "temperature": self.config.chat.temperature if temperature is None else temperature,
            "max_tokens": self.config.chat.max_tokens if max_tokens is None else max_tokens,
            "stream": stream,
        }

    async def complete(
        self,
        messages: list[dict],
        *,
        session_id: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict:
        """One-shot completion; returns the upstream JSON verbatim."""
        api_messages = self.prepare_messages(messages, session_id)
        self._require_key()
        payload = self._build_payload(api_messages, temperature, max_tokens, stream=False)

        try:
            resp = await self.client.post(self.url, headers=self._headers(), json=payload)
        except httpx.HTTPError as e:
            raise UpstreamError(f"HTTP error: {e}") from e

        if resp.status_code >= 300:
            logger.error("Upstream error %d: %.200s", resp.status_code, resp.text)
            raise UpstreamError(
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
                detail=_error_body(resp.content),
            )

        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(
                "Upstream returned a non-JSON body",
                status_code=502,
                detail=resp.text,
            ) from e

    async def open_stream(
        self,
        messages: list[dict],
        *,
        session_id: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> httpx.Response:
        """Start a streaming completion.

        Resolves after the upstream response headers arrive. A non-2xx status
        is drained and raised as UpstreamError before any chunk is produced.
        """
        api_messages = self.prepare_messages(messages, session_id)
        self._require_key()
        payload = self._build_payload(api_messages, temperature, max_tokens, stream=True)

        req = self.client.build_request("POST", self.url, headers=self._headers(), json=payload)
        try:
            upstream = await self.client.send(req, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamError(f"HTTP error: {e}") from e

        if upstream.status_code >= 300:
            error_bytes = await upstream.aread()
            await upstream.aclose()
            logger.error(
                "Upstream stream error %d: %s",
                upstream.status_code,
                error_bytes[:200].decode("utf-8", errors="replace"),
            )
            raise UpstreamError(
                f"HTTP {upstream.status_code}",
                status_code=upstream.status_code,
                detail=_error_body(error_bytes),
            )
        return upstream

    async def iter_chunks(self, upstream: httpx.Response) -> AsyncIterator[Any]:
        """Yield parsed SSE payloads until ``[DONE]`` or end of body.

        Malformed payloads are dropped. The upstream response is closed on
        exit, including when the consumer stops iterating early.
        """
        try:
            async for line in upstream.aiter_lines():
                chunk = _parse_data_line(line)
                if chunk is _DONE:
                    return
                if chunk is not None:
                    yield chunk
        except httpx.HTTPError as e:
            logger.error("Upstream stream interrupted: %s", e)
            raise UpstreamError(f"Stream interrupted: {e}") from e
        finally:
            await upstream.aclose()

    async def stream_text(
        self,
        messages: list[dict],
        *,
        session_id: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield assistant text pieces of a streaming completion."""
        upstream = await self.open_stream(
            messages,
            session_id=session_id,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        async for chunk in self.iter_chunks(upstream):
            piece = extract_delta(chunk)
            if piece:
                yield piece
