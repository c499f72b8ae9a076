"""Read-only view of the conversation store consumed by the exporter."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

logger = logging.getLogger(__name__)


def to_epoch_seconds(value: datetime | str | float | int | None) -> float | None:
    """Normalise a timestamp to epoch seconds; unparseable strings give ``None``."""

    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError("Boolean is not a timestamp")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("conversations.timestamp.invalid value=%r", value)
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


@dataclass(slots=True)
class ConversationSummary:
    id: str
    title: str = ""
    created_at: datetime | str | float | None = None
    updated_at: datetime | str | float | None = None


@dataclass(slots=True)
class ConversationMessage:
    id: str
    role: str
    content: str
    created_at: datetime | str | float | None = None


@dataclass(slots=True)
class ConversationPage:
    items: list[ConversationSummary] = field(default_factory=list)
    next_cursor: str | None = None


class ConversationSource(Protocol):
    """Paged access to a user's conversations and their messages."""

    async def list_conversations(
        self,
        user_id: str,
        page_size: int,
        cursor: str | None = None,
    ) -> ConversationPage:
        ...

    async def get_messages(self, conversation_id: str) -> Sequence[ConversationMessage]:
        ...


class InMemoryConversationSource:
    """Conversation source backed by plain dictionaries.

    Used by local runs and tests; the cursor is the offset into the user's
    conversation list encoded as a string.
    """

    def __init__(
        self,
        conversations: dict[str, list[ConversationSummary]] | None = None,
        messages: dict[str, list[ConversationMessage]] | None = None,
    ) -> None:
        self._conversations: dict[str, list[ConversationSummary]] = {
            user_id: list(items) for user_id, items in (conversations or {}).items()
        }
        self._messages: dict[str, list[ConversationMessage]] = {
            conversation_id: list(items) for conversation_id, items in (messages or {}).items()
        }
        self.page_requests: list[dict[str, Any]] = []

    def add_conversation(
        self,
        user_id: str,
        conversation: ConversationSummary,
        messages: Sequence[ConversationMessage] = (),
    ) -> None:
        self._conversations.setdefault(user_id, []).append(conversation)
        self._messages[conversation.id] = list(messages)

    async def list_conversations(
        self,
        user_id: str,
        page_size: int,
        cursor: str | None = None,
    ) -> ConversationPage:
        self.page_requests.append({"user_id": user_id, "page_size": page_size, "cursor": cursor})
        items = self._conversations.get(user_id, [])
        start = int(cursor) if cursor else 0
        end = start + page_size
        next_cursor = str(end) if end < len(items) else None
        return ConversationPage(items=list(items[start:end]), next_cursor=next_cursor)

    async def get_messages(self, conversation_id: str) -> Sequence[ConversationMessage]:
        return list(self._messages.get(conversation_id, []))
