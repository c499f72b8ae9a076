from __future__ import annotations

import pytest

from graphgen.config import Settings

_ENV_NAMES = [
    "GRAPH_DB_PATH",
    "GRAPH_ENGINE_URL",
    "GRAPH_ENGINE_API_KEY",
    "GRAPH_POLL_INTERVAL",
    "GRAPH_POLL_MAX_ATTEMPTS",
    "GRAPH_REGISTRY_BACKEND",
    "GRAPH_RECOVER_TASKS",
    "GRAPH_EXPORT_BATCH_SIZE",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = Settings.from_env()

    assert settings.poll_interval_seconds == 30.0
    assert settings.poll_max_attempts == 120
    assert settings.poll_max_consecutive_errors == 5
    assert settings.submit_max_attempts == 5
    assert settings.export_batch_size == 50
    assert settings.registry_backend == "memory"
    assert settings.task_max_age_seconds == 3600.0


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GRAPH_ENGINE_URL", "http://analysis:9000")
    monkeypatch.setenv("GRAPH_ENGINE_API_KEY", "secret")
    monkeypatch.setenv("GRAPH_POLL_INTERVAL", "0")
    monkeypatch.setenv("GRAPH_REGISTRY_BACKEND", " Lease ")
    monkeypatch.setenv("GRAPH_RECOVER_TASKS", "off")

    settings = Settings.from_env()

    assert settings.engine_base_url == "http://analysis:9000"
    assert settings.poll_interval_seconds == 0.0
    assert settings.registry_backend == "lease"
    assert settings.recover_tasks_on_startup is False
    assert settings.engine_headers()["Authorization"] == "Bearer secret"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("GRAPH_POLL_MAX_ATTEMPTS", "many"),
        ("GRAPH_RECOVER_TASKS", "maybe"),
        ("GRAPH_EXPORT_BATCH_SIZE", "0"),
        ("GRAPH_REGISTRY_BACKEND", "redis"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError):
        Settings.from_env()


def test_headers_without_api_key() -> None:
    assert Settings().engine_headers() == {"Accept": "application/json"}
