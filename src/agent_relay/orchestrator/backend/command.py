"""Agent invocation: argv, environment and working directory."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_relay.config import AgentSettings

logger = logging.getLogger(__name__)

STREAM_OUTPUT_FORMAT = "stream-json"


@dataclass(slots=True)
class AgentCommand:
    """Everything needed to spawn one agent process."""

    argv: list[str]
    working_dir: Path | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def executable(self) -> str:
        return self.argv[0]


def build_agent_command(
    settings: AgentSettings,
    *,
    prompt: str,
    resume_session_id: str | None = None,
    working_dir: Path | None = None,
) -> AgentCommand:
    """Render the headless agent invocation for one task."""

    argv = [
        *settings.command,
        "-p",
        prompt,
        "--output-format",
        STREAM_OUTPUT_FORMAT,
        *settings.extra_args,
    ]
    if resume_session_id:
        argv.extend(["--resume", resume_session_id])

    env = os.environ.copy()
    if settings.api_key:
        env["ANTHROPIC_API_KEY"] = settings.api_key
    else:
        logger.debug("ANTHROPIC_API_KEY is not configured; agent inherits parent environment")
    env["CLAUDE_CONFIG_DIR"] = str(settings.config_dir)

    return AgentCommand(
        argv=argv,
        working_dir=working_dir or _default_working_dir(settings.workspace_dir),
        env=env,
    )


def _default_working_dir(workspace_dir: Path) -> Path | None:
    if workspace_dir.is_dir():
        return workspace_dir
    logger.debug("Workspace %s does not exist; agent runs in current directory", workspace_dir)
    return None
