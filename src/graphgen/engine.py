"""HTTP client for the external graph analysis engine."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterable, Mapping

import httpx

from .errors import UpstreamError, UpstreamTimeout

logger = logging.getLogger(__name__)

_SERVICE = "analysis-engine"


class AnalysisEngineClient:
    """Speak the engine's task protocol: submit, poll status, fetch result."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 300.0,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=dict(headers or {}),
            transport=transport,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def submit_analysis(self, body: AsyncIterable[bytes]) -> str:
        """Stream an analysis request body and return the accepted task id."""

        payload = await self._request(
            "POST",
            "/analysis",
            content=body,
            headers={"Content-Type": "application/json"},
        )
        return self._task_id(payload)

    async def submit_summary(self, graph: Mapping[str, Any], *, language: str | None = None) -> str:
        body: dict[str, Any] = {"data": dict(graph)}
        if language:
            body["language"] = language
        payload = await self._request("POST", "/summary", json=body)
        return self._task_id(payload)

    async def get_status(self, task_id: str) -> str:
        payload = await self._request("GET", f"/status/{task_id}")
        status = payload.get("status")
        if not isinstance(status, str) or not status:
            raise UpstreamError(
                "Analysis engine returned a status response without status",
                service=_SERVICE,
                details={"task_id": task_id},
            )
        return status.strip().lower()

    async def get_result(self, task_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/result/{task_id}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("engine.request.timeout method=%s path=%s", method, path)
            raise UpstreamTimeout(
                f"Analysis engine timed out on {method} {path}",
                service=_SERVICE,
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("engine.request.failed method=%s path=%s status=%s", method, path, status)
            raise UpstreamError(
                f"Analysis engine rejected {method} {path} with status {status}",
                status=status,
                service=_SERVICE,
                retryable=status >= 500,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("engine.request.error method=%s path=%s error=%s", method, path, exc)
            raise UpstreamError(
                f"Analysis engine request {method} {path} failed: {exc}",
                service=_SERVICE,
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(
                f"Analysis engine returned invalid JSON for {method} {path}",
                status=response.status_code,
                service=_SERVICE,
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamError(
                f"Analysis engine returned a non-object payload for {method} {path}",
                status=response.status_code,
                service=_SERVICE,
            )
        return payload

    @staticmethod
    def _task_id(payload: Mapping[str, Any]) -> str:
        task_id = payload.get("task_id")
        if not isinstance(task_id, str) or not task_id.strip():
            raise UpstreamError("Analysis engine accepted the task without a task_id", service=_SERVICE)
        return task_id.strip()
