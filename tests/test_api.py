"""
API Tests
=========
Exercises the FastAPI app through TestClient with an in-memory pipeline
set and a fake executor. No real processes are spawned.
"""
import json
import time
import asyncio
import pytest
from fastapi.testclient import TestClient

from pipeline_runner.adapters.factory import AdapterRegistry
from pipeline_runner.api.app import create_app
from pipeline_runner.api.deps import RunnerServices
from pipeline_runner.api.webhooks import compute_signature
from pipeline_runner.core.constants import RunStatus
from pipeline_runner.engine.pipeline_engine import PipelineEngine
from pipeline_runner.engine.run_manager import RunManager
from pipeline_runner.executor.process_executor import ProcessResult
from pipeline_runner.models.run_record import RunRecord, TriggerMetadata
from pipeline_runner.store.descriptor_store import DescriptorStore
from pipeline_runner.store.run_store import RunStore

SECRET = "hook-secret"

PIPELINES = {
    "pipelines": {
        "web": {
            "branches": ["main"],
            "stages": [
                {"name": "install", "command": "npm install"},
                {"name": "build", "command": "npm run build"},
            ],
        },
        "slow": {
            "branches": ["release/*"],
            "stages": [{"name": "wait", "command": "hang", "workdir": "slow"}],
        },
    }
}


class FakeExecutor:
    async def run(self, command, workdir=".", timeout=600, env=None, shell=False):
        if command == "hang":
            await asyncio.Event().wait()
        return ProcessResult(exit_code=0, stdout=f"ran {command}")


@pytest.fixture
def runs_dir(tmp_path):
    return tmp_path / "runs"


@pytest.fixture
def client(tmp_path, runs_dir):
    def factory():
        descriptors = DescriptorStore.from_dict(PIPELINES)
        run_store = RunStore(str(runs_dir))
        engine = PipelineEngine(
            descriptors, run_store,
            executor=FakeExecutor(),
            adapters=AdapterRegistry(adapters={}),
            workspace=str(tmp_path),
        )
        return RunnerServices(descriptors, run_store, engine, RunManager(engine), webhook_secret=SECRET)

    with TestClient(create_app(factory)) as c:
        yield c


def _wait_for(client, run_id, statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/runs/{run_id}").json()
        if body["status"] in statuses:
            return body
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} never reached {statuses}")


def _signed_post(client, payload, event="push", secret=SECRET):
    body = json.dumps(payload).encode()
    headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
    if secret:
        headers["X-Hub-Signature-256"] = compute_signature(secret, body)
    return client.post("/webhooks/github", content=body, headers=headers)


# ---------------------------------------------------------------------------
# 1. Basics
# ---------------------------------------------------------------------------
def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_list_pipelines(client):
    body = client.get("/pipelines").json()
    assert body == [
        {"name": "slow", "stages": ["wait"], "branches": ["release/*"]},
        {"name": "web", "stages": ["install", "build"], "branches": ["main"]},
    ]


# ---------------------------------------------------------------------------
# 2. Runs
# ---------------------------------------------------------------------------
class TestRuns:

    def test_trigger_and_follow_run(self, client):
        response = client.post("/runs", json={"pipeline": "web", "ref": "refs/heads/main", "actor": "octocat"})
        assert response.status_code == 202
        created = response.json()
        assert created["pipeline"] == "web"
        assert created["planned_stages"] == ["install", "build"]
        assert created["trigger"]["event"] == "api"

        final = _wait_for(client, created["run_id"], {RunStatus.SUCCEEDED, RunStatus.FAILED})
        assert final["status"] == RunStatus.SUCCEEDED
        assert [s["status"] for s in final["stage_results"]] == ["SUCCEEDED", "SUCCEEDED"]

        summary = client.get(f"/runs/{created['run_id']}/summary")
        assert summary.status_code == 200
        assert summary.headers["content-type"].startswith("text/plain")
        assert summary.text.startswith(f"Run {created['run_id']} · web · SUCCEEDED")

    def test_list_runs_with_filters(self, client):
        run_id = client.post("/runs", json={"pipeline": "web", "ref": "main"}).json()["run_id"]
        _wait_for(client, run_id, {RunStatus.SUCCEEDED})

        assert [r["run_id"] for r in client.get("/runs", params={"pipeline": "web"}).json()] == [run_id]
        assert client.get("/runs", params={"pipeline": "slow"}).json() == []
        assert len(client.get("/runs", params={"status": "succeeded"}).json()) == 1

    def test_unknown_pipeline_is_404(self, client):
        response = client.post("/runs", json={"pipeline": "mobile", "ref": "main"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_invalid_body_is_400(self, client):
        response = client.post("/runs", json={"pipeline": "web"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_REQUEST"

    def test_blank_ref_is_400(self, client):
        assert client.post("/runs", json={"pipeline": "web", "ref": "  "}).status_code == 400

    def test_unknown_run_is_404(self, client):
        assert client.get("/runs/nope").status_code == 404
        assert client.get("/runs/nope/summary").status_code == 404
        assert client.post("/runs/nope/cancel").status_code == 404

    def test_cancel_run(self, client):
        run_id = client.post("/runs", json={"pipeline": "slow", "ref": "release/1"}).json()["run_id"]
        _wait_for(client, run_id, {RunStatus.RUNNING})

        response = client.post(f"/runs/{run_id}/cancel")
        assert response.status_code == 200
        assert response.json()["cancelled"] is True

        final = _wait_for(client, run_id, {RunStatus.ABORTED})
        assert final["stage_results"][0]["error_kind"] == "CANCELLED"

        again = client.post(f"/runs/{run_id}/cancel").json()
        assert again == {"run_id": run_id, "cancelled": False, "status": "ABORTED"}


def test_startup_recovers_interrupted_runs(tmp_path, runs_dir):
    stale = RunRecord(pipeline="web", trigger=TriggerMetadata(ref="main"), planned_stages=["install", "build"])
    stale.mark_running()
    RunStore(str(runs_dir)).save(stale)

    def factory():
        descriptors = DescriptorStore.from_dict(PIPELINES)
        run_store = RunStore(str(runs_dir))
        engine = PipelineEngine(descriptors, run_store, executor=FakeExecutor(), adapters=AdapterRegistry(adapters={}))
        return RunnerServices(descriptors, run_store, engine, RunManager(engine))

    with TestClient(create_app(factory)) as c:
        body = c.get(f"/runs/{stale.run_id}").json()
    assert body["status"] == RunStatus.FAILED
    assert body["error_kind"] == "INTERRUPTED"


# ---------------------------------------------------------------------------
# 3. GitHub webhook
# ---------------------------------------------------------------------------
PUSH = {
    "ref": "refs/heads/main",
    "after": "0123456789abcdef",
    "pusher": {"name": "octocat"},
    "sender": {"login": "octocat"},
}


class TestWebhook:

    def test_ping(self, client):
        response = _signed_post(client, {"zen": "Keep it logically awesome."}, event="ping")
        assert response.json() == {"message": "pong"}

    def test_push_triggers_matching_pipelines(self, client):
        response = _signed_post(client, PUSH)
        assert response.status_code == 202
        runs = response.json()["runs"]
        assert len(runs) == 1

        record = _wait_for(client, runs[0], {RunStatus.SUCCEEDED})
        assert record["pipeline"] == "web"
        assert record["trigger"] == {
            "ref": "refs/heads/main", "commit": "0123456789abcdef", "actor": "octocat", "event": "push",
        }

    def test_push_to_unmatched_branch(self, client):
        response = _signed_post(client, {**PUSH, "ref": "refs/heads/feature/x"})
        assert response.status_code == 202
        assert response.json()["runs"] == []

    def test_bad_signature(self, client):
        response = _signed_post(client, PUSH, secret="wrong")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"

    def test_missing_signature(self, client):
        response = _signed_post(client, PUSH, secret=None)
        assert response.status_code == 401

    def test_branch_deletion_ignored(self, client):
        response = _signed_post(client, {**PUSH, "deleted": True})
        assert response.status_code == 202
        assert response.json()["runs"] == []

    def test_other_events_ignored(self, client):
        response = _signed_post(client, {"action": "opened"}, event="pull_request")
        assert response.status_code == 202
        assert response.json()["message"] == "ignored"

    def test_payload_without_ref(self, client):
        response = _signed_post(client, {"after": "abc"})
        assert response.status_code == 400
