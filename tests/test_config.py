from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_relay.config import Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]

_ENV_KEYS = (
    "AGENT_RELAY_AGENT_COMMAND",
    "AGENT_RELAY_AGENT_EXTRA_ARGS",
    "ANTHROPIC_API_KEY",
    "CLAUDE_CONFIG_DIR",
    "AGENT_RELAY_WORKSPACE_DIR",
    "WORKSPACE_DIR",
    "AGENT_RELAY_GRACE_SECONDS",
    "AGENT_RELAY_PROBE_TIMEOUT_SECONDS",
    "AGENT_RELAY_MAX_QUEUE_SIZE",
    "MAX_QUEUE_SIZE",
    "AGENT_RELAY_CONCURRENT_TASK_LIMIT",
    "CONCURRENT_TASK_LIMIT",
    "AGENT_RELAY_TASK_TIMEOUT_MS",
    "TASK_TIMEOUT_MS",
    "AGENT_RELAY_RETAIN_FINISHED_TASKS",
    "RETAIN_FINISHED_TASKS",
    "AGENT_RELAY_SESSION_TIMEOUT_MS",
    "SESSION_TIMEOUT_MS",
    "AGENT_RELAY_HEALTH_URLS",
    "AGENT_RELAY_HEALTH_TIMEOUT_SECONDS",
    "AGENT_RELAY_LOG_LEVEL",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_match_container_layout() -> None:
    settings = Settings.from_env()
    settings.validate()

    assert settings.agent.command == ("claude",)
    assert settings.agent.extra_args == ("--dangerously-skip-permissions",)
    assert settings.agent.api_key is None
    assert settings.agent.config_dir == Path("/app/.claude")
    assert settings.agent.workspace_dir == Path("/workspace")
    assert settings.scheduler.max_queue_size == 100
    assert settings.scheduler.concurrent_task_limit == 5
    assert settings.scheduler.task_timeout_ms == 300_000
    assert settings.scheduler.retain_finished_tasks == 1000
    assert settings.session.session_timeout_ms == 3_600_000
    assert settings.health.service_urls == {}
    assert settings.log_level == "INFO"


def test_prefixed_names_override_plain_names(monkeypatch) -> None:
    monkeypatch.setenv("MAX_QUEUE_SIZE", "7")
    monkeypatch.setenv("CONCURRENT_TASK_LIMIT", "3")
    monkeypatch.setenv("AGENT_RELAY_CONCURRENT_TASK_LIMIT", "2")
    monkeypatch.setenv("WORKSPACE_DIR", "/srv/work")
    monkeypatch.setenv("AGENT_RELAY_AGENT_COMMAND", "npx claude")
    monkeypatch.setenv("AGENT_RELAY_AGENT_EXTRA_ARGS", "")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.scheduler.max_queue_size == 7
    assert settings.scheduler.concurrent_task_limit == 2
    assert settings.agent.workspace_dir == Path("/srv/work")
    assert settings.agent.command == ("npx", "claude")
    assert settings.agent.extra_args == ()
    assert settings.agent.api_key == "sk-test"
    assert settings.log_level == "DEBUG"


def test_invalid_integer_names_the_variable(monkeypatch) -> None:
    monkeypatch.setenv("TASK_TIMEOUT_MS", "soon")

    with pytest.raises(ValueError, match="AGENT_RELAY_TASK_TIMEOUT_MS"):
        Settings.from_env()


def test_validate_rejects_non_positive_limits(monkeypatch) -> None:
    monkeypatch.setenv("CONCURRENT_TASK_LIMIT", "0")

    with pytest.raises(ValueError, match="CONCURRENT_TASK_LIMIT"):
        Settings.from_env().validate()


def test_empty_agent_command_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_AGENT_COMMAND", "   ")

    with pytest.raises(ValueError, match="must not be empty"):
        Settings.from_env()


def test_health_urls_are_parsed_by_name(monkeypatch) -> None:
    monkeypatch.setenv(
        "AGENT_RELAY_HEALTH_URLS",
        "mcp|http://mcp:8080/health, db | https://db.internal/ready ,",
    )

    settings = Settings.from_env()

    assert settings.health.service_urls == {
        "mcp": "http://mcp:8080/health",
        "db": "https://db.internal/ready",
    }


@pytest.mark.parametrize(
    "raw",
    ["mcp", "|http://mcp/health", "mcp|ftp://mcp/health", "mcp|not-a-url"],
)
def test_malformed_health_urls_are_rejected(monkeypatch, raw: str) -> None:
    monkeypatch.setenv("AGENT_RELAY_HEALTH_URLS", raw)

    with pytest.raises(ValueError, match="AGENT_RELAY_HEALTH_URLS|health check URL"):
        Settings.from_env()


def test_finished_task_retention_must_be_positive(monkeypatch) -> None:
    monkeypatch.setenv("RETAIN_FINISHED_TASKS", "0")

    with pytest.raises(ValueError, match="AGENT_RELAY_RETAIN_FINISHED_TASKS"):
        Settings.from_env().validate()
