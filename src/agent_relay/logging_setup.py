"""Console logging configuration for the CLI entrypoint."""

from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class _ThirdPartyNoiseFilter(logging.Filter):
    """Keep agent_relay logs, only errors from other libraries."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("agent_relay"):
            return True
        return record.levelno >= logging.ERROR


class _StderrHandler(logging.StreamHandler):
    """Writes to whatever ``sys.stderr`` is at emit time."""

    def __init__(self, level: int) -> None:
        logging.Handler.__init__(self, level)

    @property
    def stream(self):  # type: ignore[override]
        return sys.stderr


def setup_logging(level: str | int = logging.INFO) -> None:
    """Install a single stderr handler on the root logger.

    Call this once, before the scheduler starts. Repeated calls replace the
    handler installed by a previous call instead of stacking another one.
    """

    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level!r}")
        level = resolved

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if isinstance(handler, _StderrHandler):
            root.removeHandler(handler)

    handler = _StderrHandler(level)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.addFilter(_ThirdPartyNoiseFilter())
    root.addHandler(handler)
