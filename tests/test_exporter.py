from __future__ import annotations

import json

import pytest

from graphgen.conversations import (
    ConversationMessage,
    ConversationSummary,
    InMemoryConversationSource,
)
from graphgen.exporter import CorpusExporter

from conftest import USER_ID


async def _collect(iterator) -> bytes:
    return b"".join([chunk async for chunk in iterator])


@pytest.mark.asyncio
@pytest.mark.parametrize("batch_size", [1, 2, 3, 50])
async def test_export_is_json_array_of_message_bearing_conversations(corpus, batch_size: int) -> None:
    exporter = CorpusExporter(corpus, batch_size=batch_size)

    payload = json.loads(await _collect(exporter.iter_json_array(USER_ID)))

    assert isinstance(payload, list)
    assert [item["id"] for item in payload] == ["c1", "c2", "c3"]
    assert sum(len(item["mapping"]) for item in payload) == 10


@pytest.mark.asyncio
async def test_export_threads_messages_in_creation_order(corpus) -> None:
    exporter = CorpusExporter(corpus, batch_size=50)

    payload = json.loads(await _collect(exporter.iter_json_array(USER_ID)))
    first = payload[0]

    assert first["conversation_id"] == "c1"
    assert first["title"] == "Conversation c1"
    assert first["create_time"] < first["update_time"]
    mapping = first["mapping"]
    assert list(mapping) == ["c1-m0", "c1-m1", "c1-m2"]
    assert mapping["c1-m0"]["parent"] is None
    assert mapping["c1-m0"]["children"] == ["c1-m1"]
    assert mapping["c1-m1"]["parent"] == "c1-m0"
    assert mapping["c1-m2"]["children"] == []
    message = mapping["c1-m1"]["message"]
    assert message["author"] == {"role": "assistant"}
    assert message["content"] == {"content_type": "text", "parts": ["message 1 of c1"]}


@pytest.mark.asyncio
async def test_each_export_pages_from_the_beginning(corpus) -> None:
    exporter = CorpusExporter(corpus, batch_size=2)

    first = await _collect(exporter.iter_json_array(USER_ID))
    second = await _collect(exporter.iter_json_array(USER_ID))

    assert first == second
    cursors = [request["cursor"] for request in corpus.page_requests]
    assert cursors == [None, "2", None, "2"]
    assert all(request["page_size"] == 2 for request in corpus.page_requests)


@pytest.mark.asyncio
async def test_request_body_wraps_array_in_data_envelope(corpus) -> None:
    exporter = CorpusExporter(corpus)

    body = json.loads(await _collect(exporter.iter_request_body(USER_ID)))

    assert list(body) == ["data"]
    assert len(body["data"]) == 3


@pytest.mark.asyncio
async def test_export_of_empty_corpus_is_empty_array() -> None:
    exporter = CorpusExporter(InMemoryConversationSource())

    assert await _collect(exporter.iter_json_array("nobody")) == b"[]"


def test_exporter_rejects_non_positive_batch_size(corpus) -> None:
    with pytest.raises(ValueError):
        CorpusExporter(corpus, batch_size=0)


@pytest.mark.asyncio
async def test_unparseable_timestamps_do_not_abort_export(corpus) -> None:
    corpus.add_conversation(
        USER_ID,
        ConversationSummary(id="c-odd", title="Odd", created_at="last tuesday", updated_at="2025-01-05T10:00:00Z"),
        [
            ConversationMessage(id="odd-m1", role="user", content="first", created_at="2025-01-05T10:00:00Z"),
            ConversationMessage(id="odd-m0", role="user", content="undated", created_at="sometime"),
        ],
    )
    exporter = CorpusExporter(corpus)

    exported = json.loads(await _collect(exporter.iter_json_array(USER_ID)))

    odd = next(item for item in exported if item["id"] == "c-odd")
    assert odd["create_time"] is None
    assert odd["update_time"] is not None
    # Undated messages sort first.
    assert odd["mapping"]["odd-m0"]["parent"] is None
    assert odd["mapping"]["odd-m1"]["parent"] == "odd-m0"
