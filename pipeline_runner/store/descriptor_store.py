"""
Stage Descriptor Store
======================
Loads pipeline and deployment-target definitions from YAML and serves them
read-only to the engine.

File layout (pipelines.yaml):

    targets:
      staging:
        kind: local_container
        container_name: web
        ports: {"80/tcp": 8080}
    pipelines:
      web:
        branches: [main]
        variables: {image: acme/web}
        stages:
          - name: install
            command: npm ci
          - name: build
            command: npm run build
          - name: package
            command: docker build -t {image}:{short_commit} .
            artifact: "{image}:{short_commit}"
          - name: deploy
            action: deploy
            target: staging

GitHub Actions import:
    ``from_github_workflow`` turns each job of a workflow file into a
    pipeline. Only ``run:`` steps become stages; ``uses:`` steps are
    skipped because they need the Actions runtime.

Read-only contract:
    The store is populated once at load time. ``get_pipeline`` and
    ``get_target`` hand out copies so a run can never mutate definitions.
"""
import os
import logging
from typing import Dict, List, Optional

import yaml
from pydantic import TypeAdapter, ValidationError

from pipeline_runner.core.errors import ConfigError, NotFoundError
from pipeline_runner.models.pipeline import PipelineDefinition, StageDefinition
from pipeline_runner.models.target import TargetConfig

logger = logging.getLogger(__name__)

_TARGET_ADAPTER = TypeAdapter(TargetConfig)


class DescriptorStore:
    """Read-only registry of pipeline definitions and deployment targets."""

    def __init__(
        self,
        pipelines: Dict[str, PipelineDefinition],
        targets: Optional[Dict[str, TargetConfig]] = None,
    ) -> None:
        self._pipelines = dict(pipelines)
        self._targets = dict(targets or {})
        self._check_target_references()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    @classmethod
    def load(cls, path: str) -> "DescriptorStore":
        """Load a pipelines YAML file. Raises ConfigError on any problem."""
        if not os.path.isfile(path):
            raise ConfigError(f"Pipeline file not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        store = cls.from_dict(data, source=path, base_dir=os.path.dirname(os.path.abspath(path)))
        logger.info(
            "Loaded %d pipeline(s) and %d target(s) from %s",
            len(store._pipelines), len(store._targets), path,
        )
        return store

    @classmethod
    def from_dict(cls, data: dict, source: str = "<dict>", base_dir: Optional[str] = None) -> "DescriptorStore":
        if not isinstance(data, dict):
            raise ConfigError(f"{source}: top level must be a mapping")

        targets: Dict[str, TargetConfig] = {}
        for name, target_def in (data.get("targets") or {}).items():
            if not isinstance(target_def, dict):
                raise ConfigError(f"{source}: target '{name}' must be a mapping")
            # manifest paths are relative to the pipelines file
            manifest = target_def.get("manifest")
            if base_dir and isinstance(manifest, str) and not os.path.isabs(manifest):
                target_def = {**target_def, "manifest": os.path.join(base_dir, manifest)}
            try:
                targets[name] = _TARGET_ADAPTER.validate_python({**target_def, "name": name})
            except ValidationError as e:
                raise ConfigError(f"{source}: invalid target '{name}': {e}") from e

        pipelines: Dict[str, PipelineDefinition] = {}
        for name, pipeline_def in (data.get("pipelines") or {}).items():
            if not isinstance(pipeline_def, dict):
                raise ConfigError(f"{source}: pipeline '{name}' must be a mapping")
            try:
                pipelines[name] = PipelineDefinition.model_validate({**pipeline_def, "name": name})
            except ValidationError as e:
                raise ConfigError(f"{source}: invalid pipeline '{name}': {e}") from e

        return cls(pipelines, targets)

    @classmethod
    def from_github_workflow(cls, path: str) -> "DescriptorStore":
        return cls({p.name: p for p in load_github_workflow(path)})

    def _check_target_references(self) -> None:
        for pipeline in self._pipelines.values():
            for stage in pipeline.stages:
                if stage.uses_adapter and stage.target not in self._targets:
                    raise ConfigError(
                        f"pipeline '{pipeline.name}' stage '{stage.name}' "
                        f"references unknown target '{stage.target}'"
                    )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_pipeline(self, name: str) -> PipelineDefinition:
        pipeline = self._pipelines.get(name)
        if pipeline is None:
            raise NotFoundError(f"Unknown pipeline '{name}'")
        return pipeline.model_copy(deep=True)

    def list_pipelines(self) -> List[str]:
        return sorted(self._pipelines)

    def get_target(self, name: str) -> TargetConfig:
        target = self._targets.get(name)
        if target is None:
            raise NotFoundError(f"Unknown deployment target '{name}'")
        return target.model_copy(deep=True)

    def list_targets(self) -> List[str]:
        return sorted(self._targets)

    def pipelines_for_ref(self, ref: str) -> List[str]:
        """Names of pipelines a push to ``ref`` should trigger."""
        return [name for name in self.list_pipelines() if self._pipelines[name].matches_ref(ref)]


# ---------------------------------------------------------------------------
# GitHub Actions Import
# ---------------------------------------------------------------------------
def _workflow_branches(data: dict) -> List[str]:
    # YAML 1.1 reads a bare `on:` key as boolean True
    triggers = data.get("on", data.get(True))
    if isinstance(triggers, dict):
        push = triggers.get("push")
        if isinstance(push, dict):
            branches = push.get("branches") or []
            return [str(b) for b in branches]
    return []


def _minutes_to_seconds(value) -> Optional[float]:
    try:
        return float(value) * 60
    except (TypeError, ValueError):
        return None


def load_github_workflow(path: str) -> List[PipelineDefinition]:
    """Convert a GitHub Actions workflow file into pipeline definitions."""
    if not os.path.isfile(path):
        raise ConfigError(f"Workflow file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: workflow must be a mapping")

    branches = _workflow_branches(data)
    pipelines: List[PipelineDefinition] = []

    for job_name, job_def in (data.get("jobs") or {}).items():
        if not isinstance(job_def, dict):
            continue

        job_workdir = "."
        defaults = job_def.get("defaults", {})
        if isinstance(defaults, dict):
            run_defaults = defaults.get("run", {})
            if isinstance(run_defaults, dict):
                job_workdir = run_defaults.get("working-directory", ".") or "."
        job_timeout = _minutes_to_seconds(job_def.get("timeout-minutes"))

        stages: List[StageDefinition] = []
        used_names: Dict[str, int] = {}
        for i, step_def in enumerate(job_def.get("steps") or []):
            if not isinstance(step_def, dict):
                continue
            run_cmd = step_def.get("run")
            if not run_cmd:
                logger.debug("Skipping action-only step %d in job %s", i, job_name)
                continue

            name = str(step_def.get("name") or f"step-{i}")
            if name in used_names:
                used_names[name] += 1
                name = f"{name}-{used_names[name]}"
            else:
                used_names[name] = 1

            stage_def = {
                "name": name,
                "command": str(run_cmd).strip(),
                "workdir": step_def.get("working-directory", job_workdir),
                "continue_on_failure": bool(step_def.get("continue-on-error", False)),
                "env": {k: str(v) for k, v in (step_def.get("env") or {}).items()},
                "shell": True,
            }
            timeout = _minutes_to_seconds(step_def.get("timeout-minutes")) or job_timeout
            if timeout:
                stage_def["timeout"] = timeout
            stages.append(StageDefinition.model_validate(stage_def))

        if not stages:
            logger.info("Job %s has no run steps, not imported", job_name)
            continue
        pipelines.append(PipelineDefinition(name=job_name, stages=stages, branches=branches))

    return pipelines
