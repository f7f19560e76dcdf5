"""Local deterministic agent speaking the stream-json protocol, for tests and demos."""

from __future__ import annotations

import argparse
import json
import sys
from uuid import uuid4

from agent_relay import __version__


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back as one output event."""

    parser = argparse.ArgumentParser(prog="echo-agent")
    parser.add_argument("-p", "--prompt", required=True)
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--resume", default=None)
    parser.add_argument("--version", action="version", version=f"echo-agent {__version__}")
    args, _ = parser.parse_known_args(argv)

    task_id = uuid4().hex
    session_id = args.resume or uuid4().hex
    print(f"echo agent handling task {task_id}", file=sys.stderr, flush=True)

    _emit({"type": "start", "taskId": task_id, "sessionId": session_id})
    if args.resume:
        _emit({"type": "tool_use", "toolName": "resume", "toolInput": {"sessionId": args.resume}})
        _emit({"type": "tool_result", "toolName": "resume", "toolOutput": "ok"})
    _emit({"type": "output", "content": _reply(args.prompt)})
    _emit({"type": "complete", "taskId": task_id, "status": "success"})
    return 0


def _reply(prompt: str) -> str:
    text = prompt.strip()
    if text.lower().startswith("echo "):
        return text[5:].strip()
    return text


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
