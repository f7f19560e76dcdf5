"""CLI entrypoint for agent-relay."""

import rich_click as click

from agent_relay import __version__
from agent_relay.config import Settings
from agent_relay.errors import AgentRelayError
from agent_relay.logging_setup import setup_logging
from agent_relay.orchestrator.controllers import (
    AgentRelayCliController,
    HealthCommand,
    RunPromptsCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentRelayCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-relay")
@click.option(
    "--log-level",
    default=None,
    help="Console log level. Defaults to AGENT_RELAY_LOG_LEVEL or INFO.",
)
def agent_relay(log_level: str | None) -> None:
    """Run headless agent tasks with bounded concurrency and session continuity."""

    try:
        setup_logging(log_level or Settings.from_env().log_level)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@agent_relay.command("run")
@click.option(
    "--prompt",
    "prompts",
    multiple=True,
    required=True,
    help="Prompt to run. Repeat to continue the same session with follow-ups.",
)
@click.option("--user-id", default="cli", show_default=True, help="Owner of the session.")
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Per-task timeout override. Defaults to AGENT_RELAY_TASK_TIMEOUT_MS.",
)
@click.option("--stream/--no-stream", default=False, help="Print task events as they arrive.")
def run(prompts: tuple[str, ...], user_id: str, timeout_ms: int | None, stream: bool) -> None:
    """Run prompts through the agent and print results."""

    try:
        result = CONTROLLER.run_prompts(
            RunPromptsCommand(
                prompts=prompts,
                user_id=user_id,
                timeout_ms=timeout_ms,
                stream=stream,
            ),
            on_line=click.echo,
        )
    except (ValueError, AgentRelayError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("One or more tasks did not complete.")


@agent_relay.command("health")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def health(output_format: str) -> None:
    """Check that the agent CLI and dependent services are reachable."""

    try:
        result = CONTROLLER.health(HealthCommand(output_format=output_format.lower()))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Health check failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_relay()
