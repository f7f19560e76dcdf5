"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
import textwrap
import time
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agent_relay.config import AgentSettings
from agent_relay.orchestrator.backend import ProcessSupervisor
from agent_relay.orchestrator.scheduler import TaskScheduler
from agent_relay.orchestrator.sessions import SessionStore

ECHO_AGENT_COMMAND = (sys.executable, "-m", "agent_relay.orchestrator.backend.echo_agent")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


def wait_until(predicate: Callable[[], bool], *, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def wait_for() -> Callable[..., bool]:
    return wait_until


@pytest.fixture()
def echo_agent_settings(tmp_path: Path) -> AgentSettings:
    return AgentSettings(
        command=ECHO_AGENT_COMMAND,
        extra_args=("--dangerously-skip-permissions",),
        config_dir=tmp_path / ".claude",
        workspace_dir=tmp_path,
        grace_seconds=0.5,
        probe_timeout_seconds=30.0,
    )


@pytest.fixture()
def echo_agent_env(monkeypatch, tmp_path: Path) -> None:
    """Point ``Settings.from_env`` at the local echo agent."""

    monkeypatch.setenv("AGENT_RELAY_AGENT_COMMAND", shlex.join(ECHO_AGENT_COMMAND))
    monkeypatch.setenv("AGENT_RELAY_WORKSPACE_DIR", str(tmp_path))
    monkeypatch.setenv("CLAUDE_CONFIG_DIR", str(tmp_path / ".claude"))
    monkeypatch.setenv("AGENT_RELAY_GRACE_SECONDS", "0.5")
    monkeypatch.delenv("AGENT_RELAY_HEALTH_URLS", raising=False)


@pytest.fixture()
def script_agent(tmp_path: Path) -> Callable[[str], tuple[str, ...]]:
    """Write a Python script standing in for the agent and return its command."""

    counter = iter(range(1_000_000))

    def _factory(body: str) -> tuple[str, ...]:
        script = tmp_path / f"agent_{next(counter)}.py"
        script.write_text(
            "import json, os, signal, sys, time\n\n"
            "def emit(payload):\n"
            "    sys.stdout.write(json.dumps(payload) + '\\n')\n"
            "    sys.stdout.flush()\n\n" + textwrap.dedent(body),
            encoding="utf-8",
        )
        return (sys.executable, str(script))

    return _factory


@pytest.fixture()
def make_scheduler(
    echo_agent_settings: AgentSettings,
) -> Iterator[Callable[..., TaskScheduler]]:
    """Build schedulers that are shut down when the test ends."""

    created: list[TaskScheduler] = []

    def _factory(
        *,
        command: tuple[str, ...] | None = None,
        sessions: SessionStore | None = None,
        supervisor: ProcessSupervisor | None = None,
        start: bool = True,
        **options,
    ) -> TaskScheduler:
        settings = echo_agent_settings
        if command is not None:
            settings = AgentSettings(
                command=command,
                extra_args=settings.extra_args,
                config_dir=settings.config_dir,
                workspace_dir=settings.workspace_dir,
                grace_seconds=settings.grace_seconds,
            )
        scheduler = TaskScheduler(
            sessions=sessions or SessionStore(),
            supervisor=supervisor or ProcessSupervisor(grace_seconds=settings.grace_seconds),
            agent_settings=settings,
            **options,
        )
        created.append(scheduler)
        if start:
            scheduler.start()
        return scheduler

    yield _factory
    for scheduler in created:
        scheduler.shutdown(timeout=10.0)
