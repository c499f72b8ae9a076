from __future__ import annotations

import asyncio
import copy
import itertools
import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from graphgen.config import Settings
from graphgen.conversations import (
    ConversationMessage,
    ConversationSummary,
    InMemoryConversationSource,
)
from graphgen.engine import AnalysisEngineClient
from graphgen.store import GraphSnapshotStore

USER_ID = "user-1"


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays without waiting."""

    def __init__(self, gate: asyncio.Event | None = None) -> None:
        self.calls: list[float] = []
        self.gate = gate

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)


class FakeEngine:
    """Scriptable analysis engine served through ``httpx.MockTransport``.

    Scripted entries are either an HTTP status code (returned as an error
    response), an exception instance (raised by the transport), or a value.
    """

    def __init__(self, result: dict[str, Any] | None = None) -> None:
        self.result = result or {}
        self.summary_result: dict[str, Any] = {}
        self.submit_script: list[Any] = []
        self.status_script: list[Any] = []
        self.default_status = "processing"
        self.submissions: list[Any] = []
        self.summary_submissions: list[dict[str, Any]] = []
        self.status_calls = 0
        self.result_calls = 0
        self._ids = itertools.count(1)
        self._kinds: dict[str, str] = {}

    def client(self) -> AnalysisEngineClient:
        return AnalysisEngineClient("http://engine.test", transport=httpx.MockTransport(self.handler))

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path in {"/analysis", "/summary"}:
            if self.submit_script:
                scripted = self.submit_script.pop(0)
                failure = self._failure(scripted, request)
                if failure is not None:
                    return failure
            body = json.loads(request.content)
            kind = "graph" if path == "/analysis" else "summary"
            if kind == "graph":
                self.submissions.append(body)
            else:
                self.summary_submissions.append(body)
            task_id = f"task-{next(self._ids)}"
            self._kinds[task_id] = kind
            return httpx.Response(202, json={"task_id": task_id, "status": "queued"})
        if request.method == "GET" and path.startswith("/status/"):
            self.status_calls += 1
            scripted = self.status_script.pop(0) if self.status_script else self.default_status
            failure = self._failure(scripted, request)
            if failure is not None:
                return failure
            return httpx.Response(200, json={"task_id": path.rsplit("/", 1)[-1], "status": scripted})
        if request.method == "GET" and path.startswith("/result/"):
            self.result_calls += 1
            task_id = path.rsplit("/", 1)[-1]
            if self._kinds.get(task_id) == "summary":
                return httpx.Response(200, json=self.summary_result)
            return httpx.Response(200, json=self.result)
        return httpx.Response(404, json={"detail": "not found"})

    @staticmethod
    def _failure(scripted: Any, request: httpx.Request) -> httpx.Response | None:
        if isinstance(scripted, BaseException):
            if isinstance(scripted, httpx.RequestError):
                scripted.request = request
            raise scripted
        if isinstance(scripted, int):
            return httpx.Response(scripted, json={"detail": "scripted failure"})
        return None


def build_corpus() -> InMemoryConversationSource:
    """Three message-bearing conversations with ten messages, plus one empty one."""

    source = InMemoryConversationSource()
    layout = {"c1": 3, "c2": 3, "c3": 4}
    for index, (conversation_id, count) in enumerate(layout.items()):
        messages = [
            ConversationMessage(
                id=f"{conversation_id}-m{position}",
                role="user" if position % 2 == 0 else "assistant",
                content=f"message {position} of {conversation_id}",
                created_at=f"2025-01-0{index + 1}T10:0{position}:00+00:00",
            )
            for position in range(count)
        ]
        # Stored out of order so ordering by creation time is exercised.
        messages.reverse()
        source.add_conversation(
            USER_ID,
            ConversationSummary(
                id=conversation_id,
                title=f"Conversation {conversation_id}",
                created_at=f"2025-01-0{index + 1}T10:00:00+00:00",
                updated_at=f"2025-01-0{index + 1}T11:00:00+00:00",
            ),
            messages,
        )
    source.add_conversation(USER_ID, ConversationSummary(id="c-empty", title="Empty"), [])
    return source


_ENGINE_OUTPUT: dict[str, Any] = {
    "nodes": [
        {
            "id": node_id,
            "orig_id": f"c{node_id}",
            "cluster_id": "cluster_1" if node_id <= 3 else "cluster_2",
            "cluster_name": "Cooking" if node_id <= 3 else "Travel",
            "keywords": [{"term": f"kw{node_id}", "score": 0.5}],
            "top_keywords": [f"kw{node_id}"],
            "timestamp": f"2025-01-0{node_id}T10:00:00Z",
            "num_messages": node_id + 1,
        }
        for node_id in range(1, 6)
    ],
    "edges": [
        {"source": 1, "target": 2, "weight": 0.9, "type": "hard", "is_intra_cluster": True, "confidence": "high"},
        {"source": 2, "target": 3, "weight": 0.8, "type": "hard", "is_intra_cluster": True, "confidence": "high"},
        {"source": 3, "target": 4, "weight": 0.4, "type": "hard", "is_intra_cluster": False, "confidence": "medium"},
        {"source": 4, "target": 5, "weight": 0.5, "type": "hard", "is_intra_cluster": True, "confidence": "medium"},
    ],
    "subclusters": [
        {
            "id": "sub_1",
            "cluster_id": "cluster_1",
            "node_ids": [1, 2],
            "representative_node_id": 1,
            "size": 2,
            "density": 0.7,
            "top_keywords": ["kw1"],
        }
    ],
    "metadata": {
        "generated_at": "2025-01-10T12:00:00+00:00",
        "total_nodes": 5,
        "total_edges": 4,
        "total_clusters": 2,
        "clusters": {
            "cluster_1": {
                "name": "Cooking",
                "description": "Recipes and kitchen questions",
                "size": 3,
                "key_themes": ["baking", "knives", "spices"],
            },
            "cluster_2": {
                "name": "Travel",
                "description": "Trips and planning",
                "size": 2,
                "key_themes": ["trains"],
            },
        },
    },
}


@pytest.fixture()
def engine_output() -> dict[str, Any]:
    return copy.deepcopy(_ENGINE_OUTPUT)


@pytest.fixture()
def corpus() -> InMemoryConversationSource:
    return build_corpus()


@pytest.fixture()
def store(tmp_path: Path) -> GraphSnapshotStore:
    return GraphSnapshotStore(tmp_path / "graph.sqlite")


@pytest.fixture()
def fake_engine(engine_output: dict[str, Any]) -> FakeEngine:
    return FakeEngine(result=engine_output)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        graph_db_path=str(tmp_path / "graph.sqlite"),
        engine_base_url="http://engine.test",
        poll_interval_seconds=30.0,
        observability_metrics_enabled=False,
    )
