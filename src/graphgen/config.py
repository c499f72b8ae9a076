"""Configuration helpers for the graph generation service."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import TYPE_CHECKING, Final

from dotenv import load_dotenv

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

load_dotenv()

_DEFAULT_GRAPH_DB: Final[str] = "data/graph.sqlite"
_DEFAULT_ENGINE_URL: Final[str] = "http://localhost:8000"
_DEFAULT_ENGINE_TIMEOUT: Final[float] = 300.0
_DEFAULT_EXPORT_BATCH_SIZE: Final[int] = 50
_DEFAULT_SUBMIT_MAX_ATTEMPTS: Final[int] = 5
_DEFAULT_SUBMIT_BACKOFF: Final[float] = 1.0
_DEFAULT_POLL_INTERVAL: Final[float] = 30.0
_DEFAULT_POLL_MAX_ATTEMPTS: Final[int] = 120
_DEFAULT_POLL_MAX_CONSECUTIVE_ERRORS: Final[int] = 5
_DEFAULT_MAX_CONCURRENT_POLLERS: Final[int] = 32
_DEFAULT_REGISTRY_BACKEND: Final[str] = "memory"
_DEFAULT_LEASE_TTL: Final[int] = 7200
_DEFAULT_SUMMARY_LANGUAGE: Final[str] = "en"
_REGISTRY_BACKENDS: Final[frozenset[str]] = frozenset({"memory", "lease"})


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_int(name: str, default: int) -> int:
    value = _env_optional_int(name)
    return default if value is None else value


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    value = _env_optional_float(name)
    return default if value is None else value


def _env_bool(name: str, default: bool) -> bool:
    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    graph_db_path: str = _DEFAULT_GRAPH_DB
    engine_base_url: str = _DEFAULT_ENGINE_URL
    engine_api_key: str | None = None
    engine_request_timeout: float = _DEFAULT_ENGINE_TIMEOUT
    export_batch_size: int = _DEFAULT_EXPORT_BATCH_SIZE
    submit_max_attempts: int = _DEFAULT_SUBMIT_MAX_ATTEMPTS
    submit_backoff_seconds: float = _DEFAULT_SUBMIT_BACKOFF
    poll_interval_seconds: float = _DEFAULT_POLL_INTERVAL
    poll_max_attempts: int = _DEFAULT_POLL_MAX_ATTEMPTS
    poll_max_consecutive_errors: int = _DEFAULT_POLL_MAX_CONSECUTIVE_ERRORS
    max_concurrent_pollers: int = _DEFAULT_MAX_CONCURRENT_POLLERS
    registry_backend: str = _DEFAULT_REGISTRY_BACKEND
    lease_ttl_seconds: int = _DEFAULT_LEASE_TTL
    recover_tasks_on_startup: bool = True
    summary_language: str = _DEFAULT_SUMMARY_LANGUAGE
    observability_metrics_enabled: bool = True
    observability_namespace: str = "graphgen"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        settings = cls(
            graph_db_path=os.getenv("GRAPH_DB_PATH", _DEFAULT_GRAPH_DB),
            engine_base_url=os.getenv("GRAPH_ENGINE_URL", _DEFAULT_ENGINE_URL),
            engine_api_key=os.getenv("GRAPH_ENGINE_API_KEY") or None,
            engine_request_timeout=_env_float("GRAPH_ENGINE_TIMEOUT", _DEFAULT_ENGINE_TIMEOUT),
            export_batch_size=_env_int("GRAPH_EXPORT_BATCH_SIZE", _DEFAULT_EXPORT_BATCH_SIZE),
            submit_max_attempts=_env_int("GRAPH_SUBMIT_MAX_ATTEMPTS", _DEFAULT_SUBMIT_MAX_ATTEMPTS),
            submit_backoff_seconds=_env_float("GRAPH_SUBMIT_BACKOFF_SECONDS", _DEFAULT_SUBMIT_BACKOFF),
            poll_interval_seconds=_env_float("GRAPH_POLL_INTERVAL", _DEFAULT_POLL_INTERVAL),
            poll_max_attempts=_env_int("GRAPH_POLL_MAX_ATTEMPTS", _DEFAULT_POLL_MAX_ATTEMPTS),
            poll_max_consecutive_errors=_env_int(
                "GRAPH_POLL_MAX_CONSECUTIVE_ERRORS", _DEFAULT_POLL_MAX_CONSECUTIVE_ERRORS
            ),
            max_concurrent_pollers=_env_int("GRAPH_MAX_CONCURRENT_POLLERS", _DEFAULT_MAX_CONCURRENT_POLLERS),
            registry_backend=os.getenv("GRAPH_REGISTRY_BACKEND", _DEFAULT_REGISTRY_BACKEND).strip().lower(),
            lease_ttl_seconds=_env_int("GRAPH_LEASE_TTL", _DEFAULT_LEASE_TTL),
            recover_tasks_on_startup=_env_bool("GRAPH_RECOVER_TASKS", True),
            summary_language=os.getenv("GRAPH_SUMMARY_LANGUAGE", _DEFAULT_SUMMARY_LANGUAGE),
            observability_metrics_enabled=_env_bool("OBSERVABILITY_METRICS_ENABLED", True),
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "graphgen"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Reject settings the pipeline cannot run with."""

        positive = {
            "export_batch_size": self.export_batch_size,
            "submit_max_attempts": self.submit_max_attempts,
            "poll_max_attempts": self.poll_max_attempts,
            "poll_max_consecutive_errors": self.poll_max_consecutive_errors,
            "max_concurrent_pollers": self.max_concurrent_pollers,
            "lease_ttl_seconds": self.lease_ttl_seconds,
        }
        for name, value in positive.items():
            if value < 1:
                raise ValueError(f"{name} must be at least 1 (got {value})")
        if self.poll_interval_seconds < 0 or self.submit_backoff_seconds < 0:
            raise ValueError("Poll interval and submit backoff must not be negative")
        if self.registry_backend not in _REGISTRY_BACKENDS:
            raise ValueError(
                f"registry_backend must be one of {sorted(_REGISTRY_BACKENDS)} (got {self.registry_backend!r})"
            )

    @property
    def task_max_age_seconds(self) -> float:
        """Longest a task may stay open before the poller gives up on it."""

        return self.poll_interval_seconds * self.poll_max_attempts

    def graph_db_file(self) -> Path:
        return Path(self.graph_db_path).expanduser().resolve()

    def engine_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.engine_api_key:
            headers["Authorization"] = f"Bearer {self.engine_api_key}"
        return headers

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )
