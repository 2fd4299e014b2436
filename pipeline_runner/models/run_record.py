"""
Run Record Model
================
Pydantic models for one end-to-end execution of a pipeline.

Lifecycle:
    PENDING → RUNNING → {SUCCEEDED | FAILED | ABORTED}
    PENDING → ABORTED            (cancelled before it started)

Ownership:
    Only the Pipeline Engine mutates a RunRecord, and only through the
    transition methods below. Once the status is terminal every transition
    raises RunStateError.

Prefix invariant:
    stage_results[i].name == planned_stages[i] for every recorded result,
    so the results are always a prefix of the pipeline's stages.
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from pipeline_runner.core.constants import TERMINAL_RUN_STATUSES, RunStatus, StageStatus
from pipeline_runner.core.errors import RunStateError
from pipeline_runner.models.artifact import DeploymentArtifact


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class TriggerMetadata(BaseModel):
    ref: str
    commit: str = ""
    actor: str = ""
    event: str = "manual"

    @property
    def short_commit(self) -> str:
        return self.commit[:7]


class StageResult(BaseModel):
    name: str
    status: str
    attempts: int = 0
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    reference: Optional[str] = None     # artifact reference produced by this stage

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @classmethod
    def skipped(cls, name: str, reason: str) -> "StageResult":
        return cls(name=name, status=StageStatus.SKIPPED, error=reason)


class RunRecord(BaseModel):
    run_id: str = Field(default_factory=new_run_id)
    pipeline: str
    trigger: TriggerMetadata
    planned_stages: List[str]
    stage_results: List[StageResult] = []
    status: str = RunStatus.PENDING
    artifact: Optional[DeploymentArtifact] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def next_stage(self) -> Optional[str]:
        index = len(self.stage_results)
        return self.planned_stages[index] if index < len(self.planned_stages) else None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise RunStateError(f"run {self.run_id} is already {self.status}")

    def mark_running(self, now: Optional[datetime] = None) -> None:
        self._ensure_mutable()
        if self.status != RunStatus.PENDING:
            raise RunStateError(f"run {self.run_id} cannot start from {self.status}")
        self.status = RunStatus.RUNNING
        self.started_at = now or utcnow()

    def record_stage(self, result: StageResult) -> None:
        self._ensure_mutable()
        expected = self.next_stage
        if expected is None or result.name != expected:
            raise RunStateError(
                f"run {self.run_id}: expected result for stage '{expected}', got '{result.name}'"
            )
        self.stage_results.append(result)

    def set_artifact(self, artifact: DeploymentArtifact) -> None:
        self._ensure_mutable()
        self.artifact = artifact

    def finish(
        self,
        status: str,
        error_kind: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self._ensure_mutable()
        if status not in TERMINAL_RUN_STATUSES:
            raise RunStateError(f"'{status}' is not a terminal status")
        self.status = status
        self.error_kind = error_kind
        self.error = error
        self.finished_at = now or utcnow()
