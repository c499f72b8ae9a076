"""Error taxonomy shared by the graph generation pipeline."""

from __future__ import annotations

from typing import Any


class GraphGenError(Exception):
    """Base error carrying an HTTP mapping and a retry hint."""

    code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        http_status: int | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        if retryable is not None:
            self.retryable = retryable
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ValidationError(GraphGenError):
    code = "VALIDATION_FAILED"
    http_status = 400


class MappingError(ValidationError):
    """Engine output does not follow the expected contract."""

    code = "MAPPING_FAILED"


class NotFoundError(GraphGenError):
    code = "NOT_FOUND"
    http_status = 404


class GraphNotFoundError(NotFoundError):
    code = "GRAPH_NOT_FOUND"


class ConflictError(GraphGenError):
    code = "CONFLICT"
    http_status = 409


class UpstreamError(GraphGenError):
    """Failure talking to the analysis engine or the datastore.

    ``status`` carries the upstream HTTP status when one was received.
    """

    code = "UPSTREAM_ERROR"
    http_status = 502
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        service: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = dict(kwargs.pop("details", None) or {})
        if service is not None:
            details.setdefault("service", service)
        if status is not None:
            details.setdefault("status", status)
        super().__init__(message, details=details, **kwargs)
        self.status = status
        self.service = service

    @property
    def is_client_error(self) -> bool:
        return self.status is not None and 400 <= self.status < 500


class UpstreamTimeout(UpstreamError):
    code = "UPSTREAM_TIMEOUT"
    http_status = 504


class StoreNotConfiguredError(RuntimeError):
    """Raised when the datastore connection is closed or was never opened."""
