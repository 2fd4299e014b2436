"""
Unit Tests — Status Reporter
============================
Summaries must be deterministic and show the whole planned pipeline.
"""
from datetime import datetime, timedelta, timezone

from pipeline_runner.core.constants import RunStatus, StageStatus
from pipeline_runner.core.status_reporter import render_stage_line, render_summary
from pipeline_runner.models.artifact import DeploymentArtifact
from pipeline_runner.models.run_record import RunRecord, StageResult, TriggerMetadata

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def _failed_run():
    record = RunRecord(
        run_id="run123",
        pipeline="web",
        trigger=TriggerMetadata(ref="refs/heads/main", commit="0123456789", actor="octocat", event="push"),
        planned_stages=["checkout", "install", "build", "deploy"],
        created_at=T0,
    )
    record.mark_running(now=T0)
    record.record_stage(StageResult(
        name="checkout", status=StageStatus.SUCCEEDED, attempts=1, exit_code=0,
        started_at=T0, finished_at=T0 + timedelta(seconds=1.5),
    ))
    record.record_stage(StageResult(
        name="install", status=StageStatus.FAILED, attempts=3, exit_code=1,
        stdout="resolving deps", stderr="npm ERR! 404",
        started_at=T0, finished_at=T0 + timedelta(seconds=12),
        error_kind="STAGE_FAILURE", error="'npm install' exited with code 1",
    ))
    record.record_stage(StageResult.skipped("build", "skipped: stage 'install' failed"))
    record.record_stage(StageResult.skipped("deploy", "skipped: stage 'install' failed"))
    record.finish(
        RunStatus.FAILED,
        error_kind="STAGE_FAILURE",
        error="stage 'install' failed: 'npm install' exited with code 1",
        now=T0 + timedelta(seconds=13),
    )
    return record


def test_summary_layout():
    summary = render_summary(_failed_run())
    lines = summary.splitlines()

    assert lines[0] == "Run run123 · web · FAILED"
    assert lines[1] == "Trigger: refs/heads/main @ 0123456 by octocat (push)"
    assert lines[2] == "  [1/4] checkout  SUCCEEDED  1 attempt  1.5s"
    assert lines[3].startswith("  [2/4] install   FAILED     3 attempts  12.0s  exit 1  STAGE_FAILURE:")
    assert lines[4] == "  [3/4] build     SKIPPED    skipped: stage 'install' failed"
    assert lines[6] == "Error: STAGE_FAILURE: stage 'install' failed: 'npm install' exited with code 1"
    assert "--- install output (excerpt) ---" in lines
    assert "npm ERR! 404" in summary
    assert summary.endswith("\n")


def test_rerender_is_byte_identical():
    record = _failed_run()
    assert render_summary(record) == render_summary(record)
    assert render_summary(record) == render_summary(RunRecord.model_validate_json(record.model_dump_json()))


def test_pending_stages_listed_for_in_flight_run():
    record = RunRecord(
        run_id="r2", pipeline="web",
        trigger=TriggerMetadata(ref="main"),
        planned_stages=["build", "deploy"],
    )
    record.mark_running(now=T0)
    lines = render_summary(record).splitlines()
    assert lines[0] == "Run r2 · web · RUNNING"
    assert lines[1] == "Trigger: main @ - by - (manual)"
    assert lines[2] == "  [1/2] build   PENDING"
    assert lines[3] == "  [2/2] deploy  PENDING"


def test_artifact_line():
    record = RunRecord(run_id="r3", pipeline="web", trigger=TriggerMetadata(ref="main"), planned_stages=["a"])
    record.set_artifact(DeploymentArtifact(reference="acme/web:1", produced_by="a", owner="a"))
    assert "Artifact: acme/web:1 (owner: a)" in render_summary(record)


def test_stage_line_with_reference():
    result = StageResult(
        name="package", status=StageStatus.SUCCEEDED, attempts=1,
        started_at=T0, finished_at=T0 + timedelta(seconds=3), reference="acme/web:1",
    )
    assert render_stage_line(5, 8, result) == "  [5/8] package  SUCCEEDED  1 attempt  3.0s  -> acme/web:1"
