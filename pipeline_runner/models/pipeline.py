"""
Pipeline Definition Models
==========================
Pydantic models for the static description of a pipeline.

A pipeline is an ordered, non-empty list of stages with unique names.
Stages either run a command template through the Process Executor
(action="command") or call a deployment target (publish / deploy /
healthcheck). Only command stages take a retry count. Nothing here
executes anything.

YAML keys accept both snake_case and the GitHub Actions style spelling
(``continue-on-failure``, ``working-directory``).
"""
from fnmatch import fnmatch
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from pipeline_runner.core.config import DEFAULT_STAGE_TIMEOUT
from pipeline_runner.core.constants import ADAPTER_ACTIONS, ALL_STAGE_ACTIONS, StageAction


class StageDefinition(BaseModel):
    name: str
    command: str = ""
    workdir: str = Field(
        default=".",
        validation_alias=AliasChoices("workdir", "working_directory", "working-directory"),
    )
    timeout: float = DEFAULT_STAGE_TIMEOUT
    retries: int = 0
    continue_on_failure: bool = Field(
        default=False,
        validation_alias=AliasChoices("continue_on_failure", "continue-on-failure"),
    )
    action: str = StageAction.COMMAND
    target: Optional[str] = None
    artifact: Optional[str] = None
    env: Dict[str, str] = {}
    shell: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("stage name must not be empty")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeout must be > 0, got {v}")
        return v

    @field_validator("retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"retries must be >= 0, got {v}")
        return v

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        if v not in ALL_STAGE_ACTIONS:
            raise ValueError(f"Unknown action '{v}'. Allowed values: {sorted(ALL_STAGE_ACTIONS)}")
        return v

    @model_validator(mode="after")
    def check_action_fields(self) -> "StageDefinition":
        if self.action == StageAction.COMMAND and not self.command.strip():
            raise ValueError(f"stage '{self.name}' needs a command")
        if self.action in ADAPTER_ACTIONS and not self.target:
            raise ValueError(f"stage '{self.name}' ({self.action}) needs a target")
        if self.action in ADAPTER_ACTIONS and self.retries:
            raise ValueError(f"stage '{self.name}' ({self.action}): only command stages can be retried")
        return self

    @property
    def uses_adapter(self) -> bool:
        return self.action in ADAPTER_ACTIONS


class PipelineDefinition(BaseModel):
    name: str
    stages: List[StageDefinition]
    variables: Dict[str, str] = {}
    branches: List[str] = []

    @model_validator(mode="after")
    def check_stages(self) -> "PipelineDefinition":
        if not self.stages:
            raise ValueError(f"pipeline '{self.name}' has no stages")
        seen = set()
        for stage in self.stages:
            if stage.name in seen:
                raise ValueError(f"pipeline '{self.name}' has duplicate stage '{stage.name}'")
            seen.add(stage.name)
        return self

    @property
    def stage_names(self) -> List[str]:
        return [s.name for s in self.stages]

    def matches_ref(self, ref: str) -> bool:
        """True if a push to ``ref`` should trigger this pipeline."""
        if not self.branches:
            return True
        branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
        return any(fnmatch(branch, p) or fnmatch(ref, p) for p in self.branches)
