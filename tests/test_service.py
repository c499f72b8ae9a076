from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from graphgen.errors import ConflictError, GraphNotFoundError, UpstreamError
from graphgen.exporter import CorpusExporter
from graphgen.mapper import map_engine_output
from graphgen.models import EDGE_TYPE_HARD, TaskRecord
from graphgen.poller import PollState
from graphgen.registry import ActiveTaskRegistry
from graphgen.service import GraphGenerationService, TaskKind
from graphgen.submitter import TaskSubmitter

from conftest import USER_ID, RecordingSleep


def _service(settings, store, fake_engine, corpus, sleep) -> GraphGenerationService:
    engine = fake_engine.client()
    submitter = TaskSubmitter(
        engine,
        CorpusExporter(corpus, batch_size=2),
        max_attempts=settings.submit_max_attempts,
        backoff_seconds=settings.submit_backoff_seconds,
        sleep=sleep,
    )
    return GraphGenerationService(
        settings=settings,
        store=store,
        engine=engine,
        submitter=submitter,
        registry=ActiveTaskRegistry(),
        sleep=sleep,
    )


@pytest.mark.asyncio
async def test_generation_persists_mapped_graph(settings, store, fake_engine, corpus) -> None:
    fake_engine.status_script = ["processing", "completed"]
    service = _service(settings, store, fake_engine, corpus, RecordingSleep())

    task_id = await service.request_generation(USER_ID)
    assert service.registry.is_active(USER_ID, TaskKind.GRAPH)
    outcome = await service.wait_for(task_id)

    assert outcome is not None and outcome.state is PollState.COMPLETED
    stats = store.get_stats(USER_ID)
    assert (stats.node_count, stats.edge_count, stats.cluster_count) == (5, 4, 2)
    assert stats.status == "completed"
    assert stats.task_id == task_id
    edges = store.list_edges(USER_ID)
    assert sum(1 for edge in edges if edge.type == EDGE_TYPE_HARD) == 2
    assert store.get_task(task_id).status == "completed"
    assert [conv["id"] for conv in fake_engine.submissions[0]["data"]] == ["c1", "c2", "c3"]
    assert service.registry.is_active(USER_ID, TaskKind.GRAPH) is False


@pytest.mark.asyncio
async def test_second_request_conflicts_while_in_flight(settings, store, fake_engine, corpus) -> None:
    gate = asyncio.Event()
    service = _service(settings, store, fake_engine, corpus, RecordingSleep(gate=gate))

    first = await service.request_generation(USER_ID)
    with pytest.raises(ConflictError) as excinfo:
        await service.request_generation(USER_ID)
    assert excinfo.value.details == {"status": "processing"}
    assert store.get_stats(USER_ID).status == "processing"
    assert len(fake_engine.submissions) == 1

    fake_engine.status_script = ["completed"]
    gate.set()
    await service.wait_for(first)

    second = await service.request_generation(USER_ID)
    assert second != first
    await service.shutdown()


@pytest.mark.asyncio
async def test_failed_task_persists_nothing(settings, store, fake_engine, corpus) -> None:
    fake_engine.status_script = ["failed"]
    service = _service(settings, store, fake_engine, corpus, RecordingSleep())

    task_id = await service.request_generation(USER_ID)
    outcome = await service.wait_for(task_id)

    assert outcome.state is PollState.FAILED
    assert store.list_nodes(USER_ID) == []
    assert store.get_stats(USER_ID).status == "failed"
    assert store.get_task(task_id).status == "failed"
    assert fake_engine.result_calls == 0


@pytest.mark.asyncio
async def test_repeated_network_errors_abort(settings, store, fake_engine, corpus) -> None:
    fake_engine.status_script = [httpx.ConnectError(f"down {index}") for index in range(6)]
    service = _service(settings, store, fake_engine, corpus, RecordingSleep())

    task_id = await service.request_generation(USER_ID)
    outcome = await service.wait_for(task_id)

    assert outcome.state is PollState.ABORTED_BY_CLIENT_ERROR
    assert fake_engine.status_calls == settings.poll_max_consecutive_errors
    assert store.list_nodes(USER_ID) == []
    assert store.get_stats(USER_ID).status == "aborted"
    assert service.registry.is_active(USER_ID, TaskKind.GRAPH) is False


@pytest.mark.asyncio
async def test_rejected_submission_releases_slot(settings, store, fake_engine, corpus) -> None:
    fake_engine.submit_script = [400]
    service = _service(settings, store, fake_engine, corpus, RecordingSleep())

    with pytest.raises(UpstreamError):
        await service.request_generation(USER_ID)

    assert service.registry.is_active(USER_ID, TaskKind.GRAPH) is False
    assert store.list_open_tasks() == []
    assert service.active_task_ids() == []


@pytest.mark.asyncio
async def test_unmappable_result_marks_generation_failed(settings, store, fake_engine, corpus) -> None:
    fake_engine.result = {"nodes": "not-a-list", "edges": [], "metadata": {}}
    fake_engine.status_script = ["completed"]
    service = _service(settings, store, fake_engine, corpus, RecordingSleep())

    task_id = await service.request_generation(USER_ID)
    outcome = await service.wait_for(task_id)

    assert outcome.state is PollState.COMPLETED
    assert outcome.handler_error
    assert store.list_nodes(USER_ID) == []
    stats = store.get_stats(USER_ID)
    assert stats.status == "failed"
    assert stats.error
    assert store.get_task(task_id).status == "failed"


@pytest.mark.asyncio
async def test_summary_requires_existing_graph(settings, store, fake_engine, corpus) -> None:
    service = _service(settings, store, fake_engine, corpus, RecordingSleep())

    with pytest.raises(GraphNotFoundError):
        await service.request_summary(USER_ID)

    assert fake_engine.summary_submissions == []
    assert service.registry.is_active(USER_ID, TaskKind.SUMMARY) is False


@pytest.mark.asyncio
async def test_summary_is_stored(settings, store, fake_engine, corpus, engine_output) -> None:
    store.persist_snapshot(USER_ID, map_engine_output(engine_output, USER_ID))
    fake_engine.summary_result = {
        "overview": {"total_conversations": 5, "summary_text": "Mostly cooking."},
        "clusters": [{"cluster_id": "cluster_1", "name": "Cooking"}],
        "generated_at": "2025-01-11T09:00:00+00:00",
        "detail_level": "standard",
    }
    fake_engine.status_script = ["completed"]
    service = _service(settings, store, fake_engine, corpus, RecordingSleep())

    task_id = await service.request_summary(USER_ID, language="ko")
    outcome = await service.wait_for(task_id)

    assert outcome.state is PollState.COMPLETED
    submitted = fake_engine.summary_submissions[0]
    assert submitted["language"] == "ko"
    assert len(submitted["data"]["nodes"]) == 5
    summary = store.get_graph_summary(USER_ID)
    assert summary.overview["summary_text"] == "Mostly cooking."
    assert summary.detail_level == "standard"
    assert store.get_task(task_id).kind == TaskKind.SUMMARY
    # Summary tasks leave the graph status marker alone.
    assert store.get_stats(USER_ID).task_id is None


@pytest.mark.asyncio
async def test_recovery_resumes_fresh_and_expires_stale_tasks(settings, store, fake_engine, corpus) -> None:
    now = datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)
    stale_age = timedelta(seconds=settings.task_max_age_seconds + 10)
    store.record_task(
        TaskRecord(task_id="stale", user_id="user-2", kind=TaskKind.GRAPH, submitted_at=(now - stale_age).isoformat())
    )
    store.record_task(
        TaskRecord(task_id="fresh", user_id=USER_ID, kind=TaskKind.GRAPH, submitted_at=(now - timedelta(seconds=60)).isoformat())
    )
    fake_engine.status_script = ["completed"]
    service = _service(settings, store, fake_engine, corpus, RecordingSleep())

    counts = await service.recover_pending_tasks(now=now)
    outcome = await service.wait_for("fresh")

    assert counts == {"resumed": 1, "expired": 1, "skipped": 0}
    assert store.get_task("stale").status == "timeout"
    assert store.get_stats("user-2").status == "timeout"
    assert outcome.state is PollState.COMPLETED
    assert len(store.list_nodes(USER_ID)) == 5
    assert store.list_open_tasks() == []


@pytest.mark.asyncio
async def test_shutdown_cancels_pollers_and_keeps_tasks_open(settings, store, fake_engine, corpus) -> None:
    service = _service(settings, store, fake_engine, corpus, RecordingSleep(gate=asyncio.Event()))

    task_id = await service.request_generation(USER_ID)
    await asyncio.sleep(0)
    await service.shutdown()

    assert service.active_task_ids() == []
    assert service.registry.is_active(USER_ID, TaskKind.GRAPH) is False
    assert [record.task_id for record in store.list_open_tasks()] == [task_id]
    with pytest.raises(RuntimeError):
        await service.request_generation(USER_ID)
