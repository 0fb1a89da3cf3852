"""Summarizer: condenses a conversation, gated by its high-water mark."""

from __future__ import annotations

import logging

from ..types import (
    CompletionClient,
    Message,
    SummarizationConfig,
    SummarizationError,
    SummaryResult,
    UpstreamError,
)
from .gateway import extract_text
from .store import ConversationStore

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = """\
Summarize the following conversation briefly in three or four sentences.
Write the summary in the same language the conversation is mostly written in.

{transcript}"""


def format_transcript(messages: list[Message]) -> str:
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


class Summarizer:
    """Keep ``Conversation.summary`` approximately current.

    Upstream cost is paid only when messages were added since the last
    summarization; repeated calls without new messages are free.
    """

    def __init__(
        self,
        store: ConversationStore,
        client: CompletionClient,
        config: SummarizationConfig,
    ) -> None:
        self.store = store
        self.client = client
        self.config = config

    async def summarize(self, conversation_id: str) -> SummaryResult:
        conversation = self.store.get(conversation_id)
        message_count = len(conversation.messages)

        if message_count == 0:
            return SummaryResult(summary="", message_count=0, skipped=True)

        if message_count <= conversation.last_summarized_message_count:
            logger.info(
                "Summary already up to date for session %s (%d <= %d)",
                conversation_id, message_count, conversation.last_summarized_message_count,
            )
            return SummaryResult(
                summary=conversation.summary,
                message_count=message_count,
                skipped=True,
            )

        prompt = SUMMARY_PROMPT.format(transcript=format_transcript(conversation.messages))
        try:
            completion = await self.client.complete(
                [{"role": "user", "content": prompt}],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except UpstreamError as e:
            logger.warning("Summarization failed for session %s: %s", conversation_id, e)
            raise SummarizationError(
                f"Failed to summarize session {conversation_id}: {e}",
                status_code=e.status_code,
                detail=e.detail,
            ) from e

        summary = extract_text(completion)
        conversation.summary = summary
        conversation.last_summarized_message_count = message_count
        self.store.update(conversation)
        logger.info(
            "Summarized session %s at %d messages (%d chars)",
            conversation_id, message_count, len(summary),
        )
        return SummaryResult(summary=summary, message_count=message_count, skipped=False)
