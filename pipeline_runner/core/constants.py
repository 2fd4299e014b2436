"""
Constants
Centralised storage for run/stage statuses, stage actions and CLI exit codes.
"""


class RunStatus:
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.SUCCEEDED,
    RunStatus.FAILED,
    RunStatus.ABORTED,
})


class StageStatus:
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class StageAction:
    """What a stage does when it runs."""
    COMMAND = "command"
    PUBLISH = "publish"
    DEPLOY = "deploy"
    HEALTHCHECK = "healthcheck"


ADAPTER_ACTIONS = frozenset({
    StageAction.PUBLISH,
    StageAction.DEPLOY,
    StageAction.HEALTHCHECK,
})

ALL_STAGE_ACTIONS = ADAPTER_ACTIONS | {StageAction.COMMAND}

# CLI exit codes
EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2
EXIT_INTERNAL_ERROR = 3
EXIT_CONFIG_ERROR = 4
