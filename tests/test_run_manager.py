"""
Run Manager Tests
=================
Admission limits, workspace exclusivity, supersession and cancellation.
The executor is faked; stages just sleep or hang.
"""
import asyncio
import pytest

from pipeline_runner.adapters.factory import AdapterRegistry
from pipeline_runner.core.constants import RunStatus
from pipeline_runner.core.errors import NotFoundError
from pipeline_runner.engine.pipeline_engine import PipelineEngine
from pipeline_runner.engine.run_manager import RunManager
from pipeline_runner.executor.process_executor import ProcessResult
from pipeline_runner.models.run_record import TriggerMetadata
from pipeline_runner.store.descriptor_store import DescriptorStore
from pipeline_runner.store.run_store import RunStore


class SleepyExecutor:
    """Every command sleeps briefly; "hang" blocks until cancelled."""

    def __init__(self, delay=0.05):
        self.delay = delay
        self.running = 0
        self.peak = 0
        self.hang_calls = 0
        self.commands = []

    async def run(self, command, workdir=".", timeout=600, env=None, shell=False):
        self.commands.append(command)
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            if command == "hang" and self.hang_calls == 0:
                self.hang_calls += 1
                await asyncio.Event().wait()
            await asyncio.sleep(self.delay)
        finally:
            self.running -= 1
        return ProcessResult(exit_code=0, stdout=command)


PIPELINES = {
    "pipelines": {
        "web": {"stages": [{"name": "build", "command": "hang", "workdir": "web"}]},
        "api": {"stages": [{"name": "build", "command": "make", "workdir": "api"}]},
        "docs": {"stages": [{"name": "build", "command": "mkdocs", "workdir": "api"}]},
        "lib": {"stages": [{"name": "build", "command": "tox", "workdir": "lib"}]},
    }
}

MAIN = TriggerMetadata(ref="refs/heads/main")


def _manager(tmp_path, max_concurrent=4, supersede=True):
    executor = SleepyExecutor()
    engine = PipelineEngine(
        DescriptorStore.from_dict(PIPELINES),
        RunStore(str(tmp_path / "runs")),
        executor=executor,
        adapters=AdapterRegistry(adapters={}),
        workspace=str(tmp_path),
        backoff_seconds=0,
    )
    return RunManager(engine, max_concurrent=max_concurrent, supersede=supersede), executor


def test_submit_then_wait(tmp_path):
    manager, _ = _manager(tmp_path)

    async def run_test():
        record = await manager.submit("api", MAIN)
        assert record.status == RunStatus.PENDING
        assert [r.run_id for r in manager.active_runs()] == [record.run_id]
        return await manager.wait(record.run_id)

    final = asyncio.run(run_test())
    assert final.status == RunStatus.SUCCEEDED
    assert manager.active_runs() == []


def test_submit_unknown_pipeline(tmp_path):
    manager, _ = _manager(tmp_path)
    with pytest.raises(NotFoundError):
        asyncio.run(manager.submit("mobile", MAIN))


def test_concurrency_limit(tmp_path):
    manager, executor = _manager(tmp_path, max_concurrent=1)

    async def run_test():
        a = await manager.submit("api", MAIN)
        b = await manager.submit("lib", MAIN)
        return [await manager.wait(a.run_id), await manager.wait(b.run_id)]

    results = asyncio.run(run_test())
    assert [r.status for r in results] == [RunStatus.SUCCEEDED, RunStatus.SUCCEEDED]
    assert executor.peak == 1


def test_independent_workspaces_run_in_parallel(tmp_path):
    manager, executor = _manager(tmp_path, max_concurrent=4)

    async def run_test():
        a = await manager.submit("api", MAIN)
        b = await manager.submit("lib", MAIN)
        await manager.wait(a.run_id)
        await manager.wait(b.run_id)

    asyncio.run(run_test())
    assert executor.peak == 2


def test_shared_workspace_is_exclusive(tmp_path):
    manager, executor = _manager(tmp_path, max_concurrent=4)

    async def run_test():
        a = await manager.submit("api", MAIN)
        b = await manager.submit("docs", MAIN)
        await manager.wait(a.run_id)
        await manager.wait(b.run_id)

    asyncio.run(run_test())
    assert executor.peak == 1


def test_newer_trigger_supersedes_in_flight_run(tmp_path):
    manager, _ = _manager(tmp_path)

    async def run_test():
        first = await manager.submit("web", MAIN)
        await asyncio.sleep(0.1)
        second = await manager.submit("web", TriggerMetadata(ref="refs/heads/main", commit="new"))
        return await manager.wait(first.run_id), await manager.wait(second.run_id)

    first, second = asyncio.run(run_test())
    assert first.status == RunStatus.ABORTED
    assert second.status == RunStatus.SUCCEEDED


def test_other_refs_are_not_superseded(tmp_path):
    manager, _ = _manager(tmp_path)

    async def run_test():
        first = await manager.submit("web", MAIN)
        await asyncio.sleep(0.1)
        await manager.submit("web", TriggerMetadata(ref="refs/heads/dev"))
        assert manager.cancel(first.run_id) is True
        return await manager.wait(first.run_id)

    # first is only aborted by the explicit cancel
    assert asyncio.run(run_test()).status == RunStatus.ABORTED


def test_cancel_queued_run_aborts_without_waiting_for_a_slot(tmp_path):
    manager, executor = _manager(tmp_path, max_concurrent=1)

    async def run_test():
        blocker = await manager.submit("web", MAIN)
        await asyncio.sleep(0.1)
        queued = await manager.submit("lib", MAIN)
        await asyncio.sleep(0.05)
        assert manager.cancel(queued.run_id) is True
        aborted = await asyncio.wait_for(manager.wait(queued.run_id), 2)

        assert manager.engine.run_store.get(blocker.run_id).status == RunStatus.RUNNING
        manager.cancel(blocker.run_id)
        await manager.wait(blocker.run_id)
        return aborted

    record = asyncio.run(run_test())
    assert record.status == RunStatus.ABORTED
    assert [r.status for r in record.stage_results] == ["SKIPPED"]
    assert "tox" not in executor.commands


def test_queued_run_waiting_on_workspace_is_superseded(tmp_path):
    manager, executor = _manager(tmp_path)

    async def run_test():
        blocker = await manager.submit("web", TriggerMetadata(ref="refs/heads/dev"))
        await asyncio.sleep(0.1)
        # same workspace as the hanging run, so this one queues on the lock
        queued = await manager.submit("web", MAIN)
        await asyncio.sleep(0.05)
        newer = await manager.submit("web", MAIN)
        superseded = await asyncio.wait_for(manager.wait(queued.run_id), 2)

        manager.cancel(blocker.run_id)
        await manager.wait(newer.run_id)
        return superseded

    assert asyncio.run(run_test()).status == RunStatus.ABORTED


def test_cancel_finished_and_unknown(tmp_path):
    manager, _ = _manager(tmp_path)

    async def run_test():
        record = await manager.submit("api", MAIN)
        await manager.wait(record.run_id)
        return record.run_id

    run_id = asyncio.run(run_test())
    assert manager.cancel(run_id) is False
    with pytest.raises(NotFoundError):
        manager.cancel("missing")


def test_shutdown_aborts_in_flight_runs(tmp_path):
    manager, _ = _manager(tmp_path)

    async def run_test():
        record = await manager.submit("web", MAIN)
        await asyncio.sleep(0.1)
        await manager.shutdown()
        return manager.engine.run_store.get(record.run_id)

    assert asyncio.run(run_test()).status == RunStatus.ABORTED
