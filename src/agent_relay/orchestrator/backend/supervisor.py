"""Subprocess supervision for headless agent runs."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from agent_relay.errors import ProcessSpawnError
from agent_relay.orchestrator.backend.command import AgentCommand

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 1.0
_READ_CHUNK_BYTES = 64 * 1024
_STDERR_TAIL_LINES = 50
_USE_PROCESS_GROUP = os.name != "nt"
_GROUP_POLL_SECONDS = 0.05


class ProcessHandle:
    """One live agent process and its standard streams.

    Standard error is drained on a background thread into the log and a short
    tail buffer; it never reaches the stdout chunk stream.
    """

    def __init__(self, process: subprocess.Popen[bytes], *, label: str) -> None:
        self.process = process
        self.label = label
        self._release_lock = threading.Lock()
        self._released = False
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            daemon=True,
            name=f"agent-stderr-{process.pid}",
        )
        self._stderr_thread.start()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def released(self) -> bool:
        return self._released

    @property
    def returncode(self) -> int | None:
        return self.process.poll()

    def is_alive(self) -> bool:
        return self.process.poll() is None

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def iter_stdout(self) -> Iterator[bytes]:
        """Yield raw stdout chunks as they arrive until the pipe closes."""

        stream = self.process.stdout
        if stream is None:
            return
        while True:
            try:
                chunk = stream.read1(_READ_CHUNK_BYTES)
            except (OSError, ValueError):
                return
            if not chunk:
                return
            yield chunk

    def wait(self, timeout: float | None = None) -> int:
        return self.process.wait(timeout=timeout)

    def close_streams(self) -> None:
        self._stderr_thread.join(timeout=1.0)
        for stream in (self.process.stdout, self.process.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    logger.debug("Failed to close stream for %s", self.label, exc_info=True)

    def _drain_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                self._stderr_tail.append(line)
                logger.warning("Agent stderr [%s]: %s", self.label, line)
        except (OSError, ValueError):
            return


@dataclass(slots=True)
class AgentProbeResult:
    """Outcome of an agent availability probe."""

    available: bool
    executable: str
    version: str | None = None
    error: str | None = None


class ProcessSupervisor:
    """Spawns agent processes and guarantees their termination on release."""

    def __init__(
        self,
        *,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        probe_timeout_seconds: float = 10.0,
    ) -> None:
        self.grace_seconds = max(0.0, grace_seconds)
        self.probe_timeout_seconds = probe_timeout_seconds

    def acquire(self, command: AgentCommand, *, label: str = "agent") -> ProcessHandle:
        """Spawn the process; returns a live handle or raises ``ProcessSpawnError``."""

        logger.debug("Spawning agent process [%s]: %s", label, command.argv[:1])
        try:
            process = subprocess.Popen(  # noqa: S603
                command.argv,
                cwd=command.working_dir,
                env=command.env or None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=_USE_PROCESS_GROUP,
            )
        except FileNotFoundError as error:
            raise ProcessSpawnError(
                f"Agent command not found: {command.executable} ({error})",
                transient=False,
            ) from error
        except PermissionError as error:
            raise ProcessSpawnError(
                f"Agent command is not executable: {command.executable} ({error})",
                transient=False,
            ) from error
        except OSError as error:
            raise ProcessSpawnError(
                f"Agent process failed to start: {error}",
                transient=True,
            ) from error

        logger.info("Agent process started [%s] pid=%s", label, process.pid)
        return ProcessHandle(process, label=label)

    def release(self, handle: ProcessHandle) -> None:
        """Terminate gracefully, then forcefully after the grace window.

        Idempotent and never raises. A concurrent second call blocks until the
        first has finished tearing the process down.
        """

        with handle._release_lock:
            if handle._released:
                return
            handle._released = True
            try:
                self._terminate(handle)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to terminate agent process [%s]", handle.label)

    @contextmanager
    def supervise(self, command: AgentCommand, *, label: str = "agent") -> Iterator[ProcessHandle]:
        """Scoped acquisition: release runs on every exit path exactly once."""

        handle = self.acquire(command, label=label)
        try:
            yield handle
        finally:
            self.release(handle)
            handle.close_streams()

    def probe(self, command: Sequence[str]) -> AgentProbeResult:
        """Check that the agent executable resolves and answers ``--version``."""

        executable = command[0]
        resolved = shutil.which(executable)
        if resolved is None:
            return AgentProbeResult(
                available=False,
                executable=executable,
                error=f"Executable not found in PATH: {executable}",
            )
        try:
            completed = subprocess.run(  # noqa: S603
                [resolved, *command[1:], "--version"],
                check=False,
                capture_output=True,
                text=True,
                timeout=self.probe_timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return AgentProbeResult(available=False, executable=executable, error="Probe timed out.")
        except OSError as error:
            return AgentProbeResult(
                available=False,
                executable=executable,
                error=f"Probe failed to start: {error}",
            )
        if completed.returncode != 0:
            return AgentProbeResult(
                available=False,
                executable=executable,
                error=f"Probe exit code={completed.returncode}",
            )
        version = completed.stdout.strip() or None
        logger.info("Agent CLI version: %s", version)
        return AgentProbeResult(available=True, executable=executable, version=version)

    def check_availability(self, command: Sequence[str]) -> bool:
        return self.probe(command).available

    def _terminate(self, handle: ProcessHandle) -> None:
        if _USE_PROCESS_GROUP:
            self._terminate_group(handle)
            return

        process = handle.process
        if process.poll() is not None:
            return

        logger.debug("Terminating agent process [%s] pid=%s", handle.label, process.pid)
        _send_signal(process, force=False)
        try:
            process.wait(timeout=self.grace_seconds)
            return
        except subprocess.TimeoutExpired:
            pass

        logger.warning("Force killing agent process [%s] pid=%s", handle.label, process.pid)
        _send_signal(process, force=True)
        try:
            process.wait(timeout=max(self.grace_seconds, 1.0))
        except subprocess.TimeoutExpired:
            logger.error(
                "Agent process [%s] pid=%s did not exit after forced kill",
                handle.label,
                process.pid,
            )

    def _terminate_group(self, handle: ProcessHandle) -> None:
        """Signal the whole process group, even when the agent itself has exited.

        Children the agent left behind share its group and may still hold the
        stdout pipe open.
        """

        process = handle.process
        pgid = process.pid
        process.poll()
        if not _signal_group(pgid, signal.SIGTERM):
            return

        logger.debug("Terminating agent process group [%s] pgid=%s", handle.label, pgid)
        deadline = time.monotonic() + self.grace_seconds
        while True:
            # Reap the leader so its zombie does not keep the group alive.
            process.poll()
            if not _signal_group(pgid, 0):
                return
            if time.monotonic() >= deadline:
                break
            time.sleep(_GROUP_POLL_SECONDS)

        logger.warning("Force killing agent process group [%s] pgid=%s", handle.label, pgid)
        _signal_group(pgid, signal.SIGKILL)
        try:
            process.wait(timeout=max(self.grace_seconds, 1.0))
        except subprocess.TimeoutExpired:
            logger.error(
                "Agent process [%s] pid=%s did not exit after forced kill",
                handle.label,
                process.pid,
            )


def _signal_group(pgid: int, signum: int) -> bool:
    """Send ``signum`` to the group; False once no member is left."""

    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        return False
    return True


def _send_signal(process: subprocess.Popen[bytes], *, force: bool) -> None:
    try:
        if force:
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        return
