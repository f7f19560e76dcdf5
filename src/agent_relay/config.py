"""Runtime configuration for the agent gateway."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class AgentSettings:
    """External agent binary settings."""

    command: tuple[str, ...] = ("claude",)
    extra_args: tuple[str, ...] = ("--dangerously-skip-permissions",)
    api_key: str | None = None
    config_dir: Path = Path("/app/.claude")
    workspace_dir: Path = Path("/workspace")
    grace_seconds: float = 1.0
    probe_timeout_seconds: float = 10.0


@dataclass(slots=True)
class SchedulerSettings:
    """Queue and worker pool settings."""

    max_queue_size: int = 100
    concurrent_task_limit: int = 5
    task_timeout_ms: int = 300_000
    retain_finished_tasks: int = 1000


@dataclass(slots=True)
class SessionSettings:
    """Session expiry settings."""

    session_timeout_ms: int = 3_600_000


@dataclass(slots=True)
class HealthSettings:
    """Dependent services probed by the health check."""

    service_urls: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    agent: AgentSettings = field(default_factory=AgentSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suitable for a container."""

        return cls(
            agent=AgentSettings(
                command=_split_command(
                    "AGENT_RELAY_AGENT_COMMAND",
                    os.getenv("AGENT_RELAY_AGENT_COMMAND", "claude"),
                ),
                extra_args=tuple(
                    shlex.split(
                        os.getenv(
                            "AGENT_RELAY_AGENT_EXTRA_ARGS",
                            "--dangerously-skip-permissions",
                        ),
                    ),
                ),
                api_key=os.getenv("ANTHROPIC_API_KEY") or None,
                config_dir=Path(os.getenv("CLAUDE_CONFIG_DIR", "/app/.claude")),
                workspace_dir=Path(
                    os.getenv(
                        "AGENT_RELAY_WORKSPACE_DIR",
                        os.getenv("WORKSPACE_DIR", "/workspace"),
                    ),
                ),
                grace_seconds=float(os.getenv("AGENT_RELAY_GRACE_SECONDS", "1.0")),
                probe_timeout_seconds=float(
                    os.getenv("AGENT_RELAY_PROBE_TIMEOUT_SECONDS", "10"),
                ),
            ),
            scheduler=SchedulerSettings(
                max_queue_size=_env_int("AGENT_RELAY_MAX_QUEUE_SIZE", "MAX_QUEUE_SIZE", 100),
                concurrent_task_limit=_env_int(
                    "AGENT_RELAY_CONCURRENT_TASK_LIMIT",
                    "CONCURRENT_TASK_LIMIT",
                    5,
                ),
                task_timeout_ms=_env_int("AGENT_RELAY_TASK_TIMEOUT_MS", "TASK_TIMEOUT_MS", 300_000),
                retain_finished_tasks=_env_int(
                    "AGENT_RELAY_RETAIN_FINISHED_TASKS",
                    "RETAIN_FINISHED_TASKS",
                    1000,
                ),
            ),
            session=SessionSettings(
                session_timeout_ms=_env_int(
                    "AGENT_RELAY_SESSION_TIMEOUT_MS",
                    "SESSION_TIMEOUT_MS",
                    3_600_000,
                ),
            ),
            health=HealthSettings(
                service_urls=_collect_health_urls(),
                timeout_seconds=float(os.getenv("AGENT_RELAY_HEALTH_TIMEOUT_SECONDS", "5.0")),
            ),
            log_level=os.getenv("AGENT_RELAY_LOG_LEVEL", os.getenv("LOG_LEVEL", "INFO")).upper(),
        )

    def validate(self) -> None:
        """Raise configuration error if any limit is out of range."""

        if not self.agent.command:
            raise ValueError("AGENT_RELAY_AGENT_COMMAND must not be empty.")
        if self.agent.grace_seconds < 0:
            raise ValueError("AGENT_RELAY_GRACE_SECONDS must be >= 0.")
        if self.agent.probe_timeout_seconds <= 0:
            raise ValueError("AGENT_RELAY_PROBE_TIMEOUT_SECONDS must be > 0.")
        if self.scheduler.max_queue_size <= 0:
            raise ValueError("AGENT_RELAY_MAX_QUEUE_SIZE must be a positive integer.")
        if self.scheduler.concurrent_task_limit <= 0:
            raise ValueError("AGENT_RELAY_CONCURRENT_TASK_LIMIT must be a positive integer.")
        if self.scheduler.task_timeout_ms <= 0:
            raise ValueError("AGENT_RELAY_TASK_TIMEOUT_MS must be a positive integer.")
        if self.scheduler.retain_finished_tasks <= 0:
            raise ValueError("AGENT_RELAY_RETAIN_FINISHED_TASKS must be a positive integer.")
        if self.session.session_timeout_ms <= 0:
            raise ValueError("AGENT_RELAY_SESSION_TIMEOUT_MS must be a positive integer.")
        if self.health.timeout_seconds <= 0:
            raise ValueError("AGENT_RELAY_HEALTH_TIMEOUT_SECONDS must be > 0.")
        for name, url in self.health.service_urls.items():
            _validate_service_url(name, url)


def _env_int(name: str, fallback_name: str, default: int) -> int:
    raw = os.getenv(name, os.getenv(fallback_name, str(default))).strip()
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _split_command(name: str, raw: str) -> tuple[str, ...]:
    argv = tuple(shlex.split(raw))
    if not argv:
        raise ValueError(f"{name} must not be empty.")
    return argv


def _collect_health_urls() -> dict[str, str]:
    raw = os.getenv("AGENT_RELAY_HEALTH_URLS", "").strip()
    if not raw:
        return {}

    services: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid AGENT_RELAY_HEALTH_URLS entry: "
                f"{token!r}. Expected format '<name>|<url>'.",
            )
        name, url = token.split("|", 1)
        name = name.strip()
        url = url.strip()
        if not name:
            raise ValueError(f"Invalid AGENT_RELAY_HEALTH_URLS entry: {token!r} has no name.")
        _validate_service_url(name, url)
        services[name] = url
    return services


def _validate_service_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid health check URL for {name!r}: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
