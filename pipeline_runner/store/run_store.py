"""
Run Store
=========
Persists RunRecords as one JSON document per run under RUNS_DIR.

The engine saves after every transition and every stage result, so a crash
mid-run leaves an inspectable partial record in RUNNING state. On restart
``recover_interrupted`` marks such records FAILED with kind INTERRUPTED.
They are never resumed.

Writes go to a temporary file and are moved into place with os.replace so a
reader never sees a half-written record.
"""
import os
import json
import logging
import tempfile
from typing import List, Optional

from pydantic import ValidationError

from pipeline_runner.core.config import RUNS_DIR
from pipeline_runner.core.constants import RunStatus
from pipeline_runner.core.errors import INTERRUPTED, NotFoundError, RunInterruptedError
from pipeline_runner.models.run_record import RunRecord

logger = logging.getLogger(__name__)


class RunStore:
    """Directory-backed store of RunRecords, keyed by run id."""

    def __init__(self, runs_dir: str = RUNS_DIR) -> None:
        self.runs_dir = os.path.abspath(runs_dir)
        os.makedirs(self.runs_dir, exist_ok=True)

    def _path(self, run_id: str) -> str:
        return os.path.join(self.runs_dir, f"{run_id}.json")

    def save(self, record: RunRecord) -> None:
        payload = record.model_dump_json(indent=2)
        fd, tmp_path = tempfile.mkstemp(dir=self.runs_dir, prefix=f".{record.run_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self._path(record.run_id))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug("Saved run %s (%s)", record.run_id, record.status)

    def get(self, run_id: str) -> RunRecord:
        path = self._path(run_id)
        if not os.path.isfile(path):
            raise NotFoundError(f"Unknown run '{run_id}'")
        with open(path, "r", encoding="utf-8") as f:
            return RunRecord.model_validate_json(f.read())

    def list(self, pipeline: Optional[str] = None, status: Optional[str] = None) -> List[RunRecord]:
        """All stored runs, oldest first, optionally filtered."""
        records: List[RunRecord] = []
        for fname in sorted(os.listdir(self.runs_dir)):
            if not fname.endswith(".json") or fname.startswith("."):
                continue
            path = os.path.join(self.runs_dir, fname)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    record = RunRecord.model_validate_json(f.read())
            except (OSError, ValidationError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable run file %s: %s", path, e)
                continue
            if pipeline and record.pipeline != pipeline:
                continue
            if status and record.status != status:
                continue
            records.append(record)
        records.sort(key=lambda r: r.created_at)
        return records

    def recover_interrupted(self) -> List[RunRecord]:
        """Mark every RUNNING or PENDING record left by a dead process as FAILED."""
        recovered: List[RunRecord] = []
        for record in self.list():
            if record.status not in (RunStatus.RUNNING, RunStatus.PENDING):
                continue
            error = RunInterruptedError("interrupted: runner restarted while the run was in flight")
            record.finish(RunStatus.FAILED, error_kind=INTERRUPTED, error=error.message)
            self.save(record)
            logger.warning("Recovered interrupted run %s (%s)", record.run_id, record.pipeline)
            recovered.append(record)
        return recovered
