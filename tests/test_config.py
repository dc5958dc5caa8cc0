# tests/test_config.py

from __future__ import annotations

import pytest

from taskflow_api.config import load_settings
from taskflow_api.retry_policy import BackoffType
from taskflow_api.task_service import job_options_from_settings

_VARS = (
    "WORKER_CONCURRENCY",
    "TASK_MAX_ATTEMPTS",
    "TASK_BACKOFF_TYPE",
    "TASK_BACKOFF_DELAY",
    "TASK_BACKOFF_MAX_DELAY",
    "TASK_INITIAL_DELAY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = load_settings()

    assert settings.worker_concurrency == 2
    assert settings.max_attempts == 3
    assert settings.backoff_type == "exponential"
    assert settings.backoff_max_delay is None


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_CONCURRENCY", "4")
    monkeypatch.setenv("TASK_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("TASK_BACKOFF_TYPE", "FIXED")
    monkeypatch.setenv("TASK_BACKOFF_DELAY", "0.5")
    monkeypatch.setenv("TASK_INITIAL_DELAY", "0")

    settings = load_settings()
    options = job_options_from_settings(settings)

    assert settings.worker_concurrency == 4
    assert options.max_attempts == 5
    assert options.initial_delay == 0.0
    assert options.backoff.type is BackoffType.FIXED
    assert options.backoff.delay == 0.5


@pytest.mark.parametrize(
    "name,value",
    [
        ("WORKER_CONCURRENCY", "0"),
        ("TASK_MAX_ATTEMPTS", "three"),
        ("TASK_BACKOFF_TYPE", "linear"),
        ("TASK_BACKOFF_DELAY", "-1"),
    ],
)
def test_bad_values_are_rejected(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        load_settings()
