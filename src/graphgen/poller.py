"""Background polling of an accepted engine task until it settles."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TYPE_CHECKING

from .engine import AnalysisEngineClient
from .errors import UpstreamError
from .registry import DEFAULT_KIND, TaskRegistry

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]
ResultHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


class PollState(str, enum.Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABORTED_BY_CLIENT_ERROR = "aborted_by_client_error"

    @property
    def terminal(self) -> bool:
        return self not in {PollState.SUBMITTED, PollState.POLLING}


@dataclass(slots=True)
class PollOutcome:
    task_id: str
    user_id: str
    kind: str
    state: PollState
    attempts: int
    consecutive_errors: int
    error: str | None = None
    handler_error: str | None = None
    duration_seconds: float = 0.0


TerminalHook = Callable[[PollOutcome], Awaitable[None]]


class TaskPoller:
    """Drive one task through ``SUBMITTED -> POLLING -> terminal``.

    Successful polls count against ``max_attempts``; failed polls count only
    against ``max_consecutive_errors`` and any success resets that counter.
    The registry slot is released on every exit path, cancellation included.
    """

    def __init__(
        self,
        engine: AnalysisEngineClient,
        registry: TaskRegistry,
        *,
        task_id: str,
        user_id: str,
        on_result: ResultHandler,
        kind: str = DEFAULT_KIND,
        on_terminal: TerminalHook | None = None,
        interval_seconds: float = 30.0,
        max_attempts: int = 120,
        max_consecutive_errors: int = 5,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._engine = engine
        self._registry = registry
        self.task_id = task_id
        self.user_id = user_id
        self.kind = kind
        self._on_result = on_result
        self._on_terminal = on_terminal
        self._interval = interval_seconds
        self._max_attempts = max_attempts
        self._max_consecutive_errors = max_consecutive_errors
        self._sleep = sleep
        self._clock = clock
        self._metrics = metrics
        self._state = PollState.SUBMITTED
        self.attempts = 0
        self.consecutive_errors = 0

    @property
    def state(self) -> PollState:
        return self._state

    async def run(self) -> PollOutcome:
        if self._state is not PollState.SUBMITTED:
            raise RuntimeError(f"Poller for task {self.task_id} already ran")

        started = self._clock()
        error: str | None = None
        handler_error: str | None = None
        self._state = PollState.POLLING
        try:
            while not self._state.terminal:
                if self.attempts >= self._max_attempts:
                    logger.warning(
                        "graph.poll.timeout task=%s user=%s attempts=%s",
                        self.task_id,
                        self.user_id,
                        self.attempts,
                    )
                    self._state = PollState.TIMED_OUT
                    break

                await self._sleep(self._interval)
                if self._metrics:
                    self._metrics.increment("graph.poll.requests", kind=self.kind)
                try:
                    status = await self._engine.get_status(self.task_id)
                except UpstreamError as exc:
                    self.consecutive_errors += 1
                    error = str(exc)
                    if self._metrics:
                        self._metrics.increment("graph.poll.errors", kind=self.kind)
                    if exc.is_client_error:
                        logger.error(
                            "graph.poll.client_error task=%s user=%s status=%s",
                            self.task_id,
                            self.user_id,
                            exc.status,
                        )
                        self._state = PollState.ABORTED_BY_CLIENT_ERROR
                    elif self.consecutive_errors >= self._max_consecutive_errors:
                        logger.error(
                            "graph.poll.too_many_errors task=%s user=%s errors=%s",
                            self.task_id,
                            self.user_id,
                            self.consecutive_errors,
                        )
                        self._state = PollState.ABORTED_BY_CLIENT_ERROR
                    else:
                        logger.warning(
                            "graph.poll.error task=%s user=%s errors=%s/%s error=%s",
                            self.task_id,
                            self.user_id,
                            self.consecutive_errors,
                            self._max_consecutive_errors,
                            exc,
                        )
                    continue

                self.attempts += 1
                self.consecutive_errors = 0
                error = None
                if status == "completed":
                    handler_error = await self._handle_completion()
                    self._state = PollState.COMPLETED
                elif status == "failed":
                    logger.warning("graph.poll.failed task=%s user=%s", self.task_id, self.user_id)
                    self._state = PollState.FAILED
                else:
                    logger.debug(
                        "graph.poll.pending task=%s status=%s attempt=%s",
                        self.task_id,
                        status,
                        self.attempts,
                    )
        finally:
            self._registry.release(self.user_id, self.kind)

        outcome = PollOutcome(
            task_id=self.task_id,
            user_id=self.user_id,
            kind=self.kind,
            state=self._state,
            attempts=self.attempts,
            consecutive_errors=self.consecutive_errors,
            error=error,
            handler_error=handler_error,
            duration_seconds=max(self._clock() - started, 0.0),
        )
        logger.info(
            "graph.poll.settled task=%s user=%s state=%s attempts=%s",
            self.task_id,
            self.user_id,
            outcome.state.value,
            outcome.attempts,
        )
        if self._metrics:
            self._metrics.increment("graph.task.terminal", kind=self.kind, state=outcome.state.value)
            self._metrics.record_timing("graph.task.duration", outcome.duration_seconds, kind=self.kind)
        if self._on_terminal is not None:
            try:
                await self._on_terminal(outcome)
            except Exception:
                logger.exception("graph.poll.terminal_hook_failed task=%s", self.task_id)
        return outcome

    async def _handle_completion(self) -> str | None:
        """Fetch and hand off the result; failures are logged, not retried."""

        try:
            result = await self._engine.get_result(self.task_id)
            await self._on_result(self.user_id, result)
        except Exception as exc:
            logger.exception(
                "graph.poll.result_handling_failed task=%s user=%s",
                self.task_id,
                self.user_id,
            )
            return str(exc) or exc.__class__.__name__
        return None
