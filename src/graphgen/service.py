"""Orchestration of graph generation and summary tasks."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, TYPE_CHECKING

from .config import Settings
from .engine import AnalysisEngineClient
from .errors import ConflictError, GraphNotFoundError, MappingError, ValidationError
from .mapper import map_engine_output, snapshot_to_engine_input
from .models import GraphSummary, TaskRecord
from .poller import PollOutcome, PollState, TaskPoller
from .registry import TaskRegistry
from .store import GraphSnapshotStore
from .submitter import TaskSubmitter

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

_MAX_RECENT_OUTCOMES = 256

# Poll terminal state -> status written to the task table and stats marker.
_TERMINAL_STATUS = {
    PollState.COMPLETED: "completed",
    PollState.FAILED: "failed",
    PollState.TIMED_OUT: "timeout",
    PollState.ABORTED_BY_CLIENT_ERROR: "aborted",
}


class TaskKind:
    GRAPH = "graph"
    SUMMARY = "summary"


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GraphGenerationService:
    """Accept generation requests and run their pollers in the background."""

    def __init__(
        self,
        *,
        settings: Settings,
        store: GraphSnapshotStore,
        engine: AnalysisEngineClient,
        submitter: TaskSubmitter,
        registry: TaskRegistry,
        sleep: SleepFunc = asyncio.sleep,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._engine = engine
        self._submitter = submitter
        self._registry = registry
        self._sleep = sleep
        self._metrics = metrics
        self._tasks: dict[str, asyncio.Task[PollOutcome]] = {}
        self._recent: OrderedDict[str, PollOutcome] = OrderedDict()
        self._poller_slots = asyncio.Semaphore(max(1, settings.max_concurrent_pollers))
        self._active_pollers = 0
        self._shutdown = False

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    def active_task_ids(self) -> list[str]:
        return [task_id for task_id, task in self._tasks.items() if not task.done()]

    async def request_generation(self, user_id: str) -> str:
        """Submit the user's corpus for analysis and start polling.

        Returns once the engine accepted the task. Raises ``ConflictError``
        while another generation for the user is in flight.
        """

        self._check_accepting(user_id)
        if not self._registry.try_acquire(user_id, TaskKind.GRAPH):
            raise ConflictError(
                "Graph generation already in progress (status: processing)",
                details={"status": "processing"},
            )
        try:
            task_id = await self._submitter.submit(user_id)
            self._store.mark_generation_status(user_id, "processing", task_id=task_id)
            self._store.record_task(TaskRecord(task_id=task_id, user_id=user_id, kind=TaskKind.GRAPH))
        except BaseException:
            self._registry.release(user_id, TaskKind.GRAPH)
            raise

        self._start_poller(task_id, user_id, TaskKind.GRAPH)
        return task_id

    async def request_summary(self, user_id: str, *, language: str | None = None) -> str:
        """Submit the stored graph for summarisation and start polling."""

        self._check_accepting(user_id)
        snapshot = self._store.get_snapshot_for_user(user_id)
        if not snapshot.nodes:
            raise GraphNotFoundError("Graph data not found for user. Generate the graph first.")
        if not self._registry.try_acquire(user_id, TaskKind.SUMMARY):
            raise ConflictError(
                "Graph summary already in progress (status: processing)",
                details={"status": "processing"},
            )
        try:
            language = language or self._settings.summary_language
            graph = snapshot_to_engine_input(snapshot, language=language)
            task_id = await self._submitter.submit_summary(user_id, graph, language=language)
            self._store.record_task(TaskRecord(task_id=task_id, user_id=user_id, kind=TaskKind.SUMMARY))
        except BaseException:
            self._registry.release(user_id, TaskKind.SUMMARY)
            raise

        self._start_poller(task_id, user_id, TaskKind.SUMMARY)
        return task_id

    async def recover_pending_tasks(self, *, now: datetime | None = None) -> dict[str, int]:
        """Re-attach pollers to tasks left open by a previous process, or expire them."""

        current = now or datetime.now(timezone.utc)
        max_age = self._settings.task_max_age_seconds
        interval = self._settings.poll_interval_seconds
        counts = {"resumed": 0, "expired": 0, "skipped": 0}
        for record in self._store.list_open_tasks():
            if record.task_id in self._tasks:
                counts["skipped"] += 1
                continue
            submitted = _parse_iso(record.submitted_at)
            age = (current - submitted).total_seconds() if submitted else max_age + 1
            if age > max_age:
                self._store.finish_task(record.task_id, "timeout", error="expired during restart")
                if record.kind == TaskKind.GRAPH:
                    self._store.mark_generation_status(record.user_id, "timeout", task_id=record.task_id)
                counts["expired"] += 1
                continue
            if not self._registry.try_acquire(record.user_id, record.kind):
                counts["skipped"] += 1
                continue
            elapsed_polls = int(age // interval) if interval > 0 else 0
            remaining = max(1, self._settings.poll_max_attempts - elapsed_polls)
            self._start_poller(record.task_id, record.user_id, record.kind, max_attempts=remaining)
            counts["resumed"] += 1

        logger.info(
            "graph.recovery.complete resumed=%s expired=%s skipped=%s",
            counts["resumed"],
            counts["expired"],
            counts["skipped"],
        )
        return counts

    async def wait_for(self, task_id: str) -> PollOutcome | None:
        """Wait for a poller to settle and return its outcome."""

        task = self._tasks.get(task_id)
        if task is not None:
            return await task
        return self._recent.get(task_id)

    async def shutdown(self) -> None:
        """Cancel every running poller; open tasks are picked up again on restart."""

        self._shutdown = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    # ------------------------------------------------------------------

    def _check_accepting(self, user_id: str) -> None:
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")
        if self._shutdown:
            raise RuntimeError("GraphGenerationService is shut down")

    def _start_poller(self, task_id: str, user_id: str, kind: str, *, max_attempts: int | None = None) -> None:
        on_result = self._persist_graph_result if kind == TaskKind.GRAPH else self._persist_summary_result
        poller = TaskPoller(
            self._engine,
            self._registry,
            task_id=task_id,
            user_id=user_id,
            kind=kind,
            on_result=on_result,
            on_terminal=self._record_outcome,
            interval_seconds=self._settings.poll_interval_seconds,
            max_attempts=max_attempts or self._settings.poll_max_attempts,
            max_consecutive_errors=self._settings.poll_max_consecutive_errors,
            sleep=self._sleep,
            metrics=self._metrics,
        )
        task = asyncio.create_task(self._run_poller(poller), name=f"graph-poller-{task_id}")
        self._tasks[task_id] = task
        task.add_done_callback(lambda finished, owner=poller: self._forget(owner, finished))

    async def _run_poller(self, poller: TaskPoller) -> PollOutcome:
        async with self._poller_slots:
            self._set_active_pollers(1)
            try:
                return await poller.run()
            finally:
                self._set_active_pollers(-1)

    def _set_active_pollers(self, delta: int) -> None:
        self._active_pollers += delta
        if self._metrics:
            self._metrics.set_gauge("graph.pollers.active", self._active_pollers)

    def _forget(self, poller: TaskPoller, task: asyncio.Task[PollOutcome]) -> None:
        task_id = poller.task_id
        self._tasks.pop(task_id, None)
        if task.cancelled():
            if poller.state is PollState.SUBMITTED:
                # Cancelled before the poller ran, so it never released its slot.
                self._registry.release(poller.user_id, poller.kind)
            logger.info("graph.poll.cancelled task=%s user=%s", task_id, poller.user_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("graph.poll.crashed task=%s error=%s", task_id, exc, exc_info=exc)
            return
        self._recent[task_id] = task.result()
        while len(self._recent) > _MAX_RECENT_OUTCOMES:
            self._recent.popitem(last=False)

    async def _persist_graph_result(self, user_id: str, result: dict[str, Any]) -> None:
        snapshot = map_engine_output(result, user_id)
        self._store.persist_snapshot(user_id, snapshot)

    async def _persist_summary_result(self, user_id: str, result: dict[str, Any]) -> None:
        if not isinstance(result, Mapping):
            raise MappingError("Summary result must be an object")
        payload = dict(result)
        payload["user_id"] = user_id
        self._store.upsert_graph_summary(user_id, GraphSummary.from_dict(payload))

    async def _record_outcome(self, outcome: PollOutcome) -> None:
        status = _TERMINAL_STATUS.get(outcome.state, "aborted")
        error = outcome.error
        if outcome.handler_error:
            status = "failed"
            error = outcome.handler_error
        self._store.finish_task(outcome.task_id, status, error=error)
        if outcome.kind == TaskKind.GRAPH:
            self._store.mark_generation_status(outcome.user_id, status, task_id=outcome.task_id, error=error)
        logger.info(
            "graph.task.finished task=%s user=%s kind=%s status=%s",
            outcome.task_id,
            outcome.user_id,
            outcome.kind,
            status,
        )
