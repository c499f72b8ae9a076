"""Streaming export of a user's conversation corpus for the analysis engine."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Sequence, TYPE_CHECKING

from .conversations import (
    ConversationMessage,
    ConversationSource,
    ConversationSummary,
    to_epoch_seconds,
)

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


def _message_sort_key(message: ConversationMessage) -> float:
    created = to_epoch_seconds(message.created_at)
    return created if created is not None else 0.0


def build_conversation_envelope(
    conversation: ConversationSummary,
    messages: Sequence[ConversationMessage],
) -> dict[str, Any]:
    """Render one conversation in the engine's envelope format.

    Messages are ordered by creation time and threaded into a parent-linked
    mapping: each node points at the previous message and the previous node
    lists it as a child.
    """

    mapping: dict[str, dict[str, Any]] = {}
    previous_id: str | None = None
    for message in sorted(messages, key=_message_sort_key):
        mapping[message.id] = {
            "id": message.id,
            "message": {
                "id": message.id,
                "author": {"role": message.role},
                "content": {"content_type": "text", "parts": [message.content]},
            },
            "parent": previous_id,
            "children": [],
        }
        if previous_id is not None:
            mapping[previous_id]["children"].append(message.id)
        previous_id = message.id

    return {
        "id": conversation.id,
        "conversation_id": conversation.id,
        "title": conversation.title,
        "create_time": to_epoch_seconds(conversation.created_at),
        "update_time": to_epoch_seconds(conversation.updated_at),
        "mapping": mapping,
    }


class CorpusExporter:
    """Serialise conversations into a JSON array one page at a time."""

    def __init__(
        self,
        source: ConversationSource,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._source = source
        self._batch_size = batch_size
        self._metrics = metrics

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def iter_json_array(self, user_id: str) -> AsyncIterator[bytes]:
        """Yield UTF-8 chunks that concatenate to a JSON array.

        Every call pages the conversation store from the beginning, so a
        failed upload is retried by requesting a new iterator.
        """

        exported = 0
        cursor: str | None = None
        yield b"["
        while True:
            page = await self._source.list_conversations(user_id, self._batch_size, cursor)
            for conversation in page.items:
                messages = await self._source.get_messages(conversation.id)
                if not messages:
                    continue
                envelope = build_conversation_envelope(conversation, messages)
                chunk = json.dumps(envelope, ensure_ascii=False)
                if exported:
                    chunk = "," + chunk
                exported += 1
                yield chunk.encode("utf-8")
            cursor = page.next_cursor
            if not cursor:
                break
        yield b"]"

        logger.info("graph.export.complete user=%s conversations=%s", user_id, exported)
        if self._metrics:
            self._metrics.increment("graph.export.conversations", value=exported)

    async def iter_request_body(self, user_id: str) -> AsyncIterator[bytes]:
        """Wrap the exported array in the ``{"data": [...]}`` request envelope."""

        yield b'{"data":'
        async for chunk in self.iter_json_array(user_id):
            yield chunk
        yield b"}"
