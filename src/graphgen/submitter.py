"""Submission of analysis tasks with bounded retry."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, TYPE_CHECKING

from .engine import AnalysisEngineClient
from .errors import UpstreamError
from .exporter import CorpusExporter

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class TaskSubmitter:
    """Post work to the analysis engine and return the accepted task id.

    Transient failures are retried with linear backoff (``attempt * backoff``
    seconds). Failures carrying a 4xx status are surfaced immediately.
    """

    def __init__(
        self,
        engine: AnalysisEngineClient,
        exporter: CorpusExporter,
        *,
        max_attempts: int = 5,
        backoff_seconds: float = 1.0,
        sleep: SleepFunc = asyncio.sleep,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._engine = engine
        self._exporter = exporter
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._metrics = metrics

    async def submit(self, user_id: str) -> str:
        """Export the user's corpus and submit an analysis task."""

        async def attempt() -> str:
            # A streamed body cannot be replayed, so each attempt exports afresh.
            return await self._engine.submit_analysis(self._exporter.iter_request_body(user_id))

        return await self._with_retry(user_id, "graph", attempt)

    async def submit_summary(
        self,
        user_id: str,
        graph: Mapping[str, Any],
        *,
        language: str | None = None,
    ) -> str:
        async def attempt() -> str:
            return await self._engine.submit_summary(graph, language=language)

        return await self._with_retry(user_id, "summary", attempt)

    async def _with_retry(
        self,
        user_id: str,
        kind: str,
        attempt_fn: Callable[[], Awaitable[str]],
    ) -> str:
        attempt = 0
        while True:
            attempt += 1
            if self._metrics:
                self._metrics.increment("graph.submit.attempts", kind=kind)
            try:
                task_id = await attempt_fn()
            except UpstreamError as exc:
                if exc.is_client_error:
                    logger.warning(
                        "graph.submit.rejected user=%s kind=%s status=%s",
                        user_id,
                        kind,
                        exc.status,
                    )
                    self._count_failure(kind)
                    raise
                logger.warning(
                    "graph.submit.retry user=%s kind=%s attempt=%s/%s error=%s",
                    user_id,
                    kind,
                    attempt,
                    self._max_attempts,
                    exc,
                )
                if attempt >= self._max_attempts:
                    self._count_failure(kind)
                    raise
                await self._sleep(attempt * self._backoff_seconds)
                continue

            logger.info("graph.submit.accepted user=%s kind=%s task=%s attempt=%s", user_id, kind, task_id, attempt)
            if self._metrics:
                self._metrics.increment("graph.submit.accepted", kind=kind)
            return task_id

    def _count_failure(self, kind: str) -> None:
        if self._metrics:
            self._metrics.increment("graph.submit.failed", kind=kind)
