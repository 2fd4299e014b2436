"""
Run Manager
===========
Host-side admission for concurrent runs. The engine executes one run; the
manager decides when that happens and keeps the registry of in-flight runs.

Admission rules:
    - At most MAX_CONCURRENT_RUNS runs execute at once; the rest wait PENDING.
    - A run cancelled while it waits is aborted at once instead of waiting
      for a slot or a workspace.
    - One exclusive builder per workspace directory: runs whose command
      stages share a working directory are serialised.
    - With SUPERSEDE_IN_FLIGHT, a new trigger for the same pipeline and ref
      cancels the older in-flight run (it ends ABORTED).

The registry is the only shared mutable state and is only touched from the
event loop thread.
"""
import os
import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Dict, List

from pipeline_runner.core.config import MAX_CONCURRENT_RUNS, SUPERSEDE_IN_FLIGHT
from pipeline_runner.engine.pipeline_engine import PipelineEngine
from pipeline_runner.models.run_record import RunRecord, TriggerMetadata

logger = logging.getLogger(__name__)


@dataclass
class _ActiveRun:
    record: RunRecord
    cancel_event: asyncio.Event
    task: "asyncio.Task[RunRecord]"


class RunManager:
    def __init__(
        self,
        engine: PipelineEngine,
        max_concurrent: int = MAX_CONCURRENT_RUNS,
        supersede: bool = SUPERSEDE_IN_FLIGHT,
    ) -> None:
        self.engine = engine
        self.supersede = supersede
        self._slots = asyncio.Semaphore(max(1, max_concurrent))
        self._workspace_locks: Dict[str, asyncio.Lock] = {}
        self._active: Dict[str, _ActiveRun] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def submit(self, pipeline_name: str, trigger: TriggerMetadata) -> RunRecord:
        """
        Create a PENDING run and schedule it. Returns immediately.
        Raises NotFoundError for an unknown pipeline.
        """
        record = self.engine.create_run(pipeline_name, trigger)

        if self.supersede:
            for active in list(self._active.values()):
                if active.record.pipeline == record.pipeline and active.record.trigger.ref == trigger.ref:
                    logger.info(
                        "[%s] Superseded by %s (%s@%s)",
                        active.record.run_id, record.run_id, record.pipeline, trigger.ref,
                    )
                    active.cancel_event.set()

        cancel_event = asyncio.Event()
        task = asyncio.create_task(self._execute(record, cancel_event))
        self._active[record.run_id] = _ActiveRun(record, cancel_event, task)
        task.add_done_callback(lambda t, run_id=record.run_id: self._on_done(run_id, t))
        return record

    def cancel(self, run_id: str) -> bool:
        """
        Request cancellation. True if the run was in flight, False if it had
        already finished. Raises NotFoundError for an unknown run.
        """
        active = self._active.get(run_id)
        if active is None:
            self.engine.run_store.get(run_id)
            return False
        logger.info("[%s] Cancel requested", run_id)
        active.cancel_event.set()
        return True

    async def wait(self, run_id: str) -> RunRecord:
        """Wait for a run to reach a terminal status and return its record."""
        active = self._active.get(run_id)
        if active is None:
            return self.engine.run_store.get(run_id)
        return await asyncio.shield(active.task)

    def active_runs(self) -> List[RunRecord]:
        return [a.record for a in self._active.values()]

    async def shutdown(self) -> None:
        """Cancel every in-flight run and wait for them to settle."""
        for active in list(self._active.values()):
            active.cancel_event.set()
        tasks = [a.task for a in self._active.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _workspace_dirs(self, pipeline_name: str) -> List[str]:
        pipeline = self.engine.descriptors.get_pipeline(pipeline_name)
        dirs = {
            os.path.normpath(os.path.join(self.engine.workspace, stage.workdir))
            for stage in pipeline.stages
            if not stage.uses_adapter
        }
        # sorted so concurrent runs take locks in the same order
        return sorted(dirs)

    async def _execute(self, record: RunRecord, cancel_event: asyncio.Event) -> RunRecord:
        async with AsyncExitStack() as stack:
            if not await self._admit(record, stack, cancel_event):
                logger.info("[%s] Cancelled while queued", record.run_id)
            # with the cancel event set, execute aborts the run before its first stage
            return await self.engine.execute(record, cancel_event)

    async def _admit(self, record: RunRecord, stack: AsyncExitStack, cancel_event: asyncio.Event) -> bool:
        """
        Take a run slot and the workspace locks, pushing each onto ``stack``.
        Returns False if the run was cancelled while still waiting for them.
        """
        acquire_task = asyncio.ensure_future(self._acquire(record, stack))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({acquire_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            acquire_task.cancel()
            await asyncio.gather(acquire_task, return_exceptions=True)
            raise
        finally:
            cancel_task.cancel()

        if acquire_task in done:
            acquire_task.result()
            return True
        acquire_task.cancel()
        await asyncio.gather(acquire_task, return_exceptions=True)
        return False

    async def _acquire(self, record: RunRecord, stack: AsyncExitStack) -> None:
        await stack.enter_async_context(self._slots)
        for workdir in self._workspace_dirs(record.pipeline):
            lock = self._workspace_locks.setdefault(workdir, asyncio.Lock())
            if lock.locked():
                logger.info("[%s] Waiting for workspace %s", record.run_id, workdir)
            await stack.enter_async_context(lock)

    def _on_done(self, run_id: str, task: "asyncio.Task[RunRecord]") -> None:
        self._active.pop(run_id, None)
        if task.cancelled():
            logger.warning("[%s] Run task cancelled", run_id)
        elif task.exception() is not None:
            logger.error("[%s] Run task crashed", run_id, exc_info=task.exception())
