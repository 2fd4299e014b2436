"""
Process Executor
================
Runs one external command for a stage and returns its exit code and
captured output.

BOUNDARY RULES:
    - Executor ONLY runs and observes a process.
    - Executor NEVER decides on retries. That is the engine's job.
    - Executor NEVER interprets a non-zero exit as an error. The caller does.

PROCESS STRATEGY:
    - Every child starts in its own session / process group, so a timeout
      or cancellation can signal the whole tree (npm → node → ...).
    - Termination is SIGTERM to the group, then SIGKILL after
      KILL_GRACE_SECONDS. The child is always reaped before returning,
      so no zombie is left behind.
    - stdout and stderr are drained concurrently; each stream keeps at most
      MAX_OUTPUT_BYTES and drops the rest while the pipe keeps draining.

Failure modes:
    LaunchError        — the process could not be spawned
    StageTimeoutError  — the timeout elapsed; partial output attached
    CancelledError     — the awaiting task was cancelled; child killed, re-raised
"""
import os
import time
import shlex
import signal
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Union

from pipeline_runner.core.config import DEFAULT_STAGE_TIMEOUT, KILL_GRACE_SECONDS, MAX_OUTPUT_BYTES
from pipeline_runner.core.errors import LaunchError, StageTimeoutError

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096


# ---------------------------------------------------------------------------
# Process Result (returned to the engine)
# ---------------------------------------------------------------------------
@dataclass
class ProcessResult:
    """
    Structured output from a single process execution.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success). Negative when killed by a signal.
    stdout : str
        Captured standard output, possibly truncated.
    stderr : str
        Captured standard error, possibly truncated.
    truncated : bool
        True if either stream exceeded the capture limit.
    duration_seconds : float
        Wall clock duration of the execution.
    """
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    duration_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.

    If the log is short enough it is returned as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    head_lines = lines[:head]
    tail_lines = lines[-tail:] if tail else []
    omitted = total - head - tail

    return "\n".join(
        head_lines
        + [f"... ({omitted} lines omitted) ..."]
        + tail_lines
    )


class _BoundedBuffer:
    """Keeps the first ``limit`` bytes of a stream and counts the rest."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._data = bytearray()
        self.dropped = 0

    def feed(self, chunk: bytes) -> None:
        room = self.limit - len(self._data)
        if room > 0:
            self._data.extend(chunk[:room])
        self.dropped += max(0, len(chunk) - max(room, 0))

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def text(self) -> str:
        out = self._data.decode("utf-8", errors="replace")
        if self.dropped:
            out += f"\n... [truncated {self.dropped} bytes]"
        return out


async def _drain(stream: Optional[asyncio.StreamReader], buffer: _BoundedBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        buffer.feed(chunk)


def _describe(command: Union[str, Sequence[str]]) -> str:
    return command if isinstance(command, str) else shlex.join(command)


class ProcessExecutor:
    """Spawns stage commands with a timeout, bounded capture and cancellation."""

    def __init__(
        self,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
    ) -> None:
        self.max_output_bytes = max_output_bytes
        self.kill_grace_seconds = kill_grace_seconds

    async def run(
        self,
        command: Union[str, Sequence[str]],
        workdir: str = ".",
        timeout: float = DEFAULT_STAGE_TIMEOUT,
        env: Optional[Dict[str, str]] = None,
        shell: bool = False,
    ) -> ProcessResult:
        """
        Run ``command`` in ``workdir`` and wait for it.

        Parameters
        ----------
        command : str | Sequence[str]
            A command line (split with shlex unless ``shell``) or an argv list.
        workdir : str
            Working directory for the child.
        timeout : float
            Seconds before the child is terminated and StageTimeoutError raised.
        env : dict | None
            Extra environment variables layered over the current environment.
        shell : bool
            Run through /bin/sh instead of executing argv directly.
        """
        label = _describe(command)
        if not os.path.isdir(workdir):
            raise LaunchError(f"Working directory does not exist: {workdir}")

        full_env = {**os.environ, **(env or {})}
        spawn_kwargs = dict(
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=workdir,
            env=full_env,
            start_new_session=True,
        )

        try:
            if shell:
                proc = await asyncio.create_subprocess_shell(label, **spawn_kwargs)
            else:
                argv = shlex.split(command) if isinstance(command, str) else list(command)
                if not argv:
                    raise LaunchError("Empty command")
                proc = await asyncio.create_subprocess_exec(*argv, **spawn_kwargs)
        except OSError as e:
            raise LaunchError(f"Cannot start '{label}': {e}") from e

        logger.info("Started pid=%d | cmd=%s | workdir=%s | timeout=%ss", proc.pid, label, workdir, timeout)

        out = _BoundedBuffer(self.max_output_bytes)
        err = _BoundedBuffer(self.max_output_bytes)
        start = time.monotonic()

        try:
            exit_code = await asyncio.wait_for(self._communicate(proc, out, err), timeout)
        except asyncio.TimeoutError:
            logger.warning("Timeout after %ss, terminating pid=%d (%s)", timeout, proc.pid, label)
            await self._terminate(proc, out, err)
            raise StageTimeoutError(
                f"'{label}' exceeded timeout of {timeout}s",
                timeout=timeout,
                stdout=out.text(),
                stderr=err.text(),
            )
        except asyncio.CancelledError:
            logger.warning("Cancelled, terminating pid=%d (%s)", proc.pid, label)
            await self._terminate(proc, out, err)
            raise

        result = ProcessResult(
            exit_code=exit_code,
            stdout=out.text(),
            stderr=err.text(),
            truncated=out.truncated or err.truncated,
            duration_seconds=round(time.monotonic() - start, 3),
        )
        logger.info(
            "Finished pid=%d | exit=%d | time=%.2fs | truncated=%s",
            proc.pid, result.exit_code, result.duration_seconds, result.truncated,
        )
        return result

    @staticmethod
    async def _communicate(proc: asyncio.subprocess.Process, out: _BoundedBuffer, err: _BoundedBuffer) -> int:
        await asyncio.gather(_drain(proc.stdout, out), _drain(proc.stderr, err))
        return await proc.wait()

    @staticmethod
    def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass

    async def _terminate(self, proc: asyncio.subprocess.Process, out: _BoundedBuffer, err: _BoundedBuffer) -> None:
        """SIGTERM the group, SIGKILL after the grace period, always reap."""
        if proc.returncode is None:
            self._signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(self._communicate(proc, out, err), self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("pid=%d ignored SIGTERM, sending SIGKILL", proc.pid)
            self._signal_group(proc, signal.SIGKILL)
            await self._communicate(proc, out, err)
        logger.info("Reaped pid=%d (returncode=%s)", proc.pid, proc.returncode)
