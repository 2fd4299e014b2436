"""
Error Taxonomy
==============
Every failure the runner reports is a PipelineError subclass with a
machine-readable ``kind``. The kind is what lands in StageResult.error_kind
and RunRecord.error_kind, so the dashboard/CLI never parses messages.

Retry contract:
    - StageFailure is retried within the stage's retry count.
    - AdapterError, LaunchError, StageTimeoutError and NotFoundError are
      never retried. An adapter stage gets exactly one attempt.
"""
from typing import Optional


# ---------------------------------------------------------------------------
# Error kind constants
# ---------------------------------------------------------------------------
LAUNCH_ERROR = "LAUNCH_ERROR"
TIMEOUT = "TIMEOUT"
STAGE_FAILURE = "STAGE_FAILURE"
ADAPTER_ERROR = "ADAPTER_ERROR"
NOT_FOUND = "NOT_FOUND"
INTERRUPTED = "INTERRUPTED"
CONFIG_ERROR = "CONFIG_ERROR"
RUN_STATE_ERROR = "RUN_STATE_ERROR"
CANCELLED = "CANCELLED"
INTERNAL = "INTERNAL"

# ---------------------------------------------------------------------------
# Adapter reason constants
# ---------------------------------------------------------------------------
AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
UNHEALTHY_ROLLOUT = "UNHEALTHY_ROLLOUT"
ARTIFACT_MISSING = "ARTIFACT_MISSING"
TARGET_UNAVAILABLE = "TARGET_UNAVAILABLE"
REJECTED = "REJECTED"


class PipelineError(Exception):
    """Base error with a machine-readable kind."""

    kind = INTERNAL

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class LaunchError(PipelineError):
    """A stage process could not be started (missing binary, permissions, bad workdir)."""

    kind = LAUNCH_ERROR


class StageTimeoutError(PipelineError):
    """A stage exceeded its allotted time and its process was killed."""

    kind = TIMEOUT

    def __init__(self, message: str, timeout: float, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr


class StageFailure(PipelineError):
    """A stage exited non-zero."""

    kind = STAGE_FAILURE

    def __init__(self, message: str, exit_code: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class AdapterError(PipelineError):
    """A deployment target rejected a publish, deploy or healthcheck."""

    kind = ADAPTER_ERROR

    def __init__(self, message: str, reason: str = REJECTED) -> None:
        super().__init__(message)
        self.reason = reason


class NotFoundError(PipelineError):
    """Unknown pipeline, target or run."""

    kind = NOT_FOUND


class RunInterruptedError(PipelineError):
    """The host process restarted while the run was in flight."""

    kind = INTERRUPTED


class ConfigError(PipelineError):
    """Invalid pipeline descriptor or unresolvable command template."""

    kind = CONFIG_ERROR


class RunStateError(PipelineError):
    """Illegal state transition, e.g. mutating a terminal RunRecord."""

    kind = RUN_STATE_ERROR


def describe(exc: BaseException) -> tuple[str, str]:
    """Return (kind, message) for any exception, PipelineError or not."""
    if isinstance(exc, PipelineError):
        message = exc.message
        if isinstance(exc, AdapterError):
            message = f"{exc.reason}: {exc.message}"
        return exc.kind, message
    return INTERNAL, f"{type(exc).__name__}: {exc}"


def is_retryable(exc: Optional[BaseException]) -> bool:
    return isinstance(exc, StageFailure)
