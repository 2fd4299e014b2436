"""
Pipeline Engine
===============
Drives one RunRecord through its pipeline's stages:
    checkout → install → build → package → publish → deploy → verify

Core behaviour:
    - Stages run strictly in declared order, one at a time.
    - A stage is a command (Process Executor) or an adapter call
      (publish / deploy / healthcheck on a deployment target).
    - StageFailure (a non-zero exit) is retried up to the stage's retry
      count with linear backoff; everything else fails the stage at once.
    - A failed stage without continue_on_failure halts the run: every later
      stage is recorded SKIPPED and the run ends FAILED.
    - A failed stage with continue_on_failure is tolerated; the run goes on
      and its outcome is decided by the remaining stages.
    - A cancel request (cancel_event) aborts from any non-terminal state. The
      in-flight process is killed through the executor's cancellation path,
      the stage is recorded FAILED/CANCELLED and the rest SKIPPED.
    - The record is persisted after every transition and every stage result.
    - Whatever happens, the run ends in exactly one terminal status.

Artifact hand-off:
    A command stage with ``artifact`` creates the DeploymentArtifact on
    success. publish replaces its reference with the published one and
    takes ownership; deploy takes ownership of it.
"""
import os
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from pipeline_runner.core.config import RETRY_BACKOFF_MAX_SECONDS, RETRY_BACKOFF_SECONDS
from pipeline_runner.core.constants import RunStatus, StageAction, StageStatus
from pipeline_runner.core.errors import (
    ARTIFACT_MISSING,
    CANCELLED,
    INTERNAL,
    UNHEALTHY_ROLLOUT,
    AdapterError,
    PipelineError,
    StageFailure,
    StageTimeoutError,
    describe,
    is_retryable,
)
from pipeline_runner.adapters.factory import AdapterRegistry
from pipeline_runner.executor.command_template import TemplateContext, render_command, render_template
from pipeline_runner.executor.process_executor import ProcessExecutor
from pipeline_runner.models.artifact import DeploymentArtifact
from pipeline_runner.models.pipeline import PipelineDefinition, StageDefinition
from pipeline_runner.models.run_record import RunRecord, StageResult, TriggerMetadata, utcnow
from pipeline_runner.store.descriptor_store import DescriptorStore
from pipeline_runner.store.run_store import RunStore

logger = logging.getLogger(__name__)


class _RunCancelled(Exception):
    """Raised internally when the cancel event fires during an attempt."""


@dataclass
class _StageOutcome:
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    reference: Optional[str] = None
    artifact: Optional[DeploymentArtifact] = None


class PipelineEngine:
    """
    Executes pipeline runs. Holds no per-run state: everything about a run
    lives in its RunRecord, so one engine can serve concurrent runs.
    """

    def __init__(
        self,
        descriptors: DescriptorStore,
        run_store: RunStore,
        executor: Optional[ProcessExecutor] = None,
        adapters: Optional[AdapterRegistry] = None,
        workspace: str = ".",
        backoff_seconds: float = RETRY_BACKOFF_SECONDS,
        backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS,
        on_update: Optional[Callable[[RunRecord], None]] = None,
    ) -> None:
        self.descriptors = descriptors
        self.run_store = run_store
        self.executor = executor or ProcessExecutor()
        self.adapters = adapters or AdapterRegistry()
        self.workspace = os.path.abspath(workspace)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.on_update = on_update

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def create_run(self, pipeline_name: str, trigger: TriggerMetadata) -> RunRecord:
        """Create and persist a PENDING record. Raises NotFoundError for unknown pipelines."""
        pipeline = self.descriptors.get_pipeline(pipeline_name)
        record = RunRecord(pipeline=pipeline.name, trigger=trigger, planned_stages=pipeline.stage_names)
        self._persist(record)
        logger.info(
            "[%s] Created run of %s for %s@%s by %s",
            record.run_id, pipeline.name, trigger.ref, trigger.short_commit or "-", trigger.actor or "-",
        )
        return record

    async def run(
        self,
        pipeline_name: str,
        trigger: TriggerMetadata,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunRecord:
        record = self.create_run(pipeline_name, trigger)
        return await self.execute(record, cancel_event)

    async def execute(self, record: RunRecord, cancel_event: Optional[asyncio.Event] = None) -> RunRecord:
        """Run a PENDING record to a terminal status and return it."""
        cancel_event = cancel_event or asyncio.Event()
        pipeline = self.descriptors.get_pipeline(record.pipeline)

        if cancel_event.is_set():
            logger.info("[%s] Cancelled before start", record.run_id)
            self._abort(record, "cancelled before start")
            return record

        record.mark_running()
        self._persist(record)
        logger.info("[%s] Running %s (%d stages)", record.run_id, pipeline.name, len(pipeline.stages))

        try:
            await self._execute_stages(record, pipeline, cancel_event)
        except asyncio.CancelledError:
            if not record.is_terminal:
                self._abort(record, "runner task cancelled")
            raise
        except Exception as exc:
            logger.error("[%s] Engine error: %s", record.run_id, exc, exc_info=True)
            if not record.is_terminal:
                _, message = describe(exc)
                self._skip_remaining(record, "skipped: internal error")
                record.finish(RunStatus.FAILED, error_kind=INTERNAL, error=message)
                self._persist(record)

        logger.info("[%s] Run finished: %s", record.run_id, record.status)
        return record

    # ------------------------------------------------------------------
    # Stage sequencing
    # ------------------------------------------------------------------
    async def _execute_stages(
        self,
        record: RunRecord,
        pipeline: PipelineDefinition,
        cancel_event: asyncio.Event,
    ) -> None:
        halting_failure: Optional[StageResult] = None
        total = len(pipeline.stages)

        for index, stage in enumerate(pipeline.stages, 1):
            if cancel_event.is_set():
                self._abort(record, "cancelled")
                return

            if halting_failure is not None:
                record.record_stage(
                    StageResult.skipped(stage.name, f"skipped: stage '{halting_failure.name}' failed")
                )
                self._persist(record)
                continue

            logger.info("[%s] Stage %d/%d: %s", record.run_id, index, total, stage.name)
            result = await self._run_stage(record, pipeline, stage, cancel_event)
            record.record_stage(result)
            self._persist(record)

            if result.error_kind == CANCELLED:
                self._abort(record, f"cancelled during stage '{stage.name}'")
                return

            if result.status == StageStatus.FAILED:
                if stage.continue_on_failure:
                    logger.warning(
                        "[%s] Stage %s failed, continuing (continue_on_failure)", record.run_id, stage.name
                    )
                else:
                    logger.warning("[%s] Stage %s failed, halting run", record.run_id, stage.name)
                    halting_failure = result

        if halting_failure is not None:
            record.finish(
                RunStatus.FAILED,
                error_kind=halting_failure.error_kind,
                error=f"stage '{halting_failure.name}' failed: {halting_failure.error}",
            )
        else:
            record.finish(RunStatus.SUCCEEDED)
        self._persist(record)

    async def _run_stage(
        self,
        record: RunRecord,
        pipeline: PipelineDefinition,
        stage: StageDefinition,
        cancel_event: asyncio.Event,
    ) -> StageResult:
        result = StageResult(name=stage.name, status=StageStatus.FAILED, started_at=utcnow())
        max_attempts = stage.retries + 1

        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            try:
                outcome = await self._attempt_unless_cancelled(record, pipeline, stage, cancel_event)
            except _RunCancelled:
                result.error_kind, result.error = CANCELLED, "cancelled while running"
                break
            except asyncio.CancelledError:
                self._record_task_cancelled(record, result, "runner task cancelled while running")
                raise
            except PipelineError as exc:
                result.error_kind, result.error = describe(exc)
                if isinstance(exc, (StageFailure, StageTimeoutError)):
                    result.stdout, result.stderr = exc.stdout, exc.stderr
                result.exit_code = exc.exit_code if isinstance(exc, StageFailure) else None

                if is_retryable(exc) and attempt < max_attempts:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "[%s] %s attempt %d/%d failed (%s), retrying in %.1fs",
                        record.run_id, stage.name, attempt, max_attempts, result.error, delay,
                    )
                    try:
                        cancelled = await self._sleep_unless_cancelled(delay, cancel_event)
                    except asyncio.CancelledError:
                        self._record_task_cancelled(record, result, "runner task cancelled while waiting to retry")
                        raise
                    if cancelled:
                        result.error_kind, result.error = CANCELLED, "cancelled while waiting to retry"
                        break
                    continue

                logger.error(
                    "[%s] %s failed after %d attempt(s): %s", record.run_id, stage.name, attempt, result.error
                )
                break
            except Exception as exc:
                result.error_kind, result.error = describe(exc)
                logger.error("[%s] %s crashed: %s", record.run_id, stage.name, exc, exc_info=True)
                break
            else:
                result.status = StageStatus.SUCCEEDED
                result.exit_code = outcome.exit_code
                result.stdout, result.stderr = outcome.stdout, outcome.stderr
                result.truncated = outcome.truncated
                result.reference = outcome.reference
                result.error_kind = result.error = None
                if outcome.artifact is not None:
                    record.set_artifact(outcome.artifact)
                logger.info("[%s] %s succeeded (attempt %d)", record.run_id, stage.name, attempt)
                break

        result.finished_at = utcnow()
        return result

    def _record_task_cancelled(self, record: RunRecord, result: StageResult, reason: str) -> None:
        # a stage that ran is never recorded SKIPPED
        result.error_kind, result.error = CANCELLED, reason
        result.finished_at = utcnow()
        record.record_stage(result)
        self._persist(record)

    async def _attempt_unless_cancelled(
        self,
        record: RunRecord,
        pipeline: PipelineDefinition,
        stage: StageDefinition,
        cancel_event: asyncio.Event,
    ) -> _StageOutcome:
        attempt_task = asyncio.ensure_future(self._attempt(record, pipeline, stage))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({attempt_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            attempt_task.cancel()
            await asyncio.gather(attempt_task, return_exceptions=True)
            raise
        finally:
            cancel_task.cancel()

        if attempt_task not in done:
            logger.warning("[%s] Cancel requested, stopping %s", record.run_id, stage.name)
            attempt_task.cancel()
            # let the executor kill and reap the child before reporting
            await asyncio.gather(attempt_task, return_exceptions=True)
            raise _RunCancelled()
        return attempt_task.result()

    async def _sleep_unless_cancelled(self, delay: float, cancel_event: asyncio.Event) -> bool:
        """Sleep ``delay`` seconds. Returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_seconds * attempt, self.backoff_max_seconds)

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------
    def _context(self, record: RunRecord, pipeline: PipelineDefinition) -> TemplateContext:
        trigger = record.trigger
        return TemplateContext(
            pipeline=pipeline.name,
            run_id=record.run_id,
            ref=trigger.ref,
            commit=trigger.commit,
            actor=trigger.actor,
            artifact=record.artifact.reference if record.artifact else None,
            variables=dict(pipeline.variables),
        )

    async def _attempt(self, record: RunRecord, pipeline: PipelineDefinition, stage: StageDefinition) -> _StageOutcome:
        context = self._context(record, pipeline)
        if stage.uses_adapter:
            return await self._adapter_attempt(record, stage)
        return await self._command_attempt(stage, context)

    async def _command_attempt(self, stage: StageDefinition, context: TemplateContext) -> _StageOutcome:
        command = render_command(stage.command, context)
        env = {k: render_template(v, context) for k, v in stage.env.items()}
        workdir = os.path.normpath(os.path.join(self.workspace, stage.workdir))

        proc = await self.executor.run(command, workdir=workdir, timeout=stage.timeout, env=env, shell=stage.shell)
        if proc.exit_code != 0:
            raise StageFailure(
                f"'{command}' exited with code {proc.exit_code}",
                exit_code=proc.exit_code,
                stdout=proc.stdout,
                stderr=proc.stderr,
            )

        outcome = _StageOutcome(
            exit_code=proc.exit_code,
            stdout=proc.stdout,
            stderr=proc.stderr,
            truncated=proc.truncated,
        )
        if stage.artifact:
            reference = render_template(stage.artifact, context)
            outcome.reference = reference
            outcome.artifact = DeploymentArtifact(reference=reference, produced_by=stage.name, owner=stage.name)
        return outcome

    async def _adapter_attempt(self, record: RunRecord, stage: StageDefinition) -> _StageOutcome:
        target = self.descriptors.get_target(stage.target)
        adapter = self.adapters.for_target(target)
        artifact = record.artifact

        if stage.action in (StageAction.PUBLISH, StageAction.DEPLOY) and artifact is None:
            raise AdapterError(f"stage '{stage.name}' has no artifact to {stage.action}", reason=ARTIFACT_MISSING)

        logger.info("[%s] %s → target %s (%s)", record.run_id, stage.action, target.name, target.kind)
        try:
            if stage.action == StageAction.PUBLISH:
                published = await asyncio.wait_for(
                    asyncio.to_thread(adapter.publish, artifact, target), stage.timeout
                )
                return _StageOutcome(
                    stdout=f"published {artifact.reference} as {published}",
                    reference=published,
                    artifact=artifact.handed_to(stage.name, reference=published),
                )

            if stage.action == StageAction.DEPLOY:
                deployed = await asyncio.wait_for(
                    asyncio.to_thread(adapter.deploy, artifact.reference, target), stage.timeout
                )
                return _StageOutcome(
                    stdout=deployed.detail,
                    reference=deployed.reference,
                    artifact=artifact.handed_to(stage.name),
                )

            status = await asyncio.wait_for(asyncio.to_thread(adapter.healthcheck, target), stage.timeout)
        except asyncio.TimeoutError:
            raise StageTimeoutError(
                f"{stage.action} on target '{target.name}' exceeded timeout of {stage.timeout}s",
                timeout=stage.timeout,
            )

        if not status.healthy:
            raise AdapterError(f"target '{target.name}' unhealthy: {status.detail}", reason=UNHEALTHY_ROLLOUT)
        return _StageOutcome(stdout=status.detail)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _skip_remaining(self, record: RunRecord, reason: str) -> None:
        while record.next_stage is not None:
            record.record_stage(StageResult.skipped(record.next_stage, reason))

    def _abort(self, record: RunRecord, reason: str) -> None:
        self._skip_remaining(record, f"skipped: {reason}")
        record.finish(RunStatus.ABORTED, error_kind=CANCELLED, error=reason)
        self._persist(record)
        logger.warning("[%s] Run aborted: %s", record.run_id, reason)

    def _persist(self, record: RunRecord) -> None:
        self.run_store.save(record)
        if self.on_update is not None:
            try:
                self.on_update(record)
            except Exception:
                logger.warning("Progress callback failed", exc_info=True)
