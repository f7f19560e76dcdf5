"""Controllers for agent-relay CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass

from agent_relay.config import Settings
from agent_relay.orchestrator.backend import ProcessSupervisor
from agent_relay.orchestrator.events import StreamEvent
from agent_relay.orchestrator.health import HealthChecker
from agent_relay.orchestrator.models import Task, TaskRequest, TaskStatus
from agent_relay.orchestrator.scheduler import TaskScheduler


@dataclass(slots=True)
class RunPromptsCommand:
    """CLI input for running prompts through an in-process scheduler."""

    prompts: tuple[str, ...]
    user_id: str
    timeout_ms: int | None = None
    stream: bool = False


@dataclass(slots=True)
class HealthCommand:
    """CLI input for the health report."""

    output_format: str = "table"


@dataclass(slots=True)
class CliCommandResult:
    """Lines to render and overall success flag."""

    lines: list[str]
    success: bool


class AgentRelayCliController:
    """Coordinates scheduler and health CLI operations."""

    def run_prompts(
        self,
        command: RunPromptsCommand,
        *,
        on_line: Callable[[str], None] | None = None,
    ) -> CliCommandResult:
        """Run each prompt in order, continuing one session across them."""

        settings = Settings.from_env()
        settings.validate()
        emit = on_line or (lambda _line: None)
        lines: list[str] = []
        success = True
        session_id: str | None = None

        with TaskScheduler.from_settings(settings) as scheduler:
            for prompt in command.prompts:
                task = scheduler.submit(
                    TaskRequest(
                        prompt=prompt,
                        user_id=command.user_id,
                        session_id=session_id,
                        timeout_ms=command.timeout_ms,
                    ),
                )
                session_id = task.session_id
                if command.stream:
                    for event in scheduler.stream(task.task_id):
                        emit(_format_stream_event(event))
                final = scheduler.wait(task.task_id)
                lines.extend(_format_task(final))
                success = success and final.status is TaskStatus.COMPLETED

            if session_id is not None and scheduler.sessions.is_valid(session_id):
                session = scheduler.sessions.get(session_id)
                lines.append(
                    f"Session {session.session_id}: tasks={session.task_count} "
                    f"external_session_id={session.external_session_id or '-'}",
                )
        return CliCommandResult(lines=lines, success=success)

    def health(self, command: HealthCommand) -> CliCommandResult:
        settings = Settings.from_env()
        settings.validate()
        report = HealthChecker(
            supervisor=ProcessSupervisor(
                grace_seconds=settings.agent.grace_seconds,
                probe_timeout_seconds=settings.agent.probe_timeout_seconds,
            ),
            agent_command=settings.agent.command,
            service_urls=settings.health.service_urls,
            timeout_seconds=settings.health.timeout_seconds,
        ).check()

        if command.output_format == "json":
            lines = [json.dumps(report.to_dict(), indent=2, sort_keys=True)]
        else:
            lines = [
                f"Health: {report.status} version={report.version} "
                f"uptime={report.uptime_seconds:.1f}s",
            ]
            for name, service in sorted(report.services.items()):
                suffix = f" - {service.message}" if service.message else ""
                lines.append(f"  {name}: {service.status}{suffix}")
        return CliCommandResult(lines=lines, success=report.status != "error")


def _format_task(task: Task) -> list[str]:
    lines = [f"Task {task.task_id}: status={task.status.value} session={task.session_id}"]
    if task.status is TaskStatus.COMPLETED:
        lines.append(task.result or "")
    elif task.error:
        kind = f" [{task.failure_kind.value}]" if task.failure_kind else ""
        lines.append(f"Error{kind}: {task.error}")
    return lines


def _format_stream_event(event: StreamEvent) -> str:
    detail = event.message or event.content or event.result or event.error or event.task_id
    return f"[{event.type}] {detail}"
