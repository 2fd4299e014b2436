"""
Command Template
================
Resolves ``{placeholder}`` templates in stage commands and artifact
references against the run's trigger metadata and pipeline variables.

Available placeholders:
    pipeline, run_id, ref, branch, commit, short_commit, actor, artifact
    plus every key in the pipeline's ``variables`` mapping.

Pipeline variables may themselves reference the built-in placeholders
(``image: "acme/web:{short_commit}"``). Literal braces are written ``{{``
and ``}}``.

Values substituted into commands are shell-quoted, because refs and actors
arrive from webhooks and must never be able to inject shell syntax.

Resolver never executes commands. It only returns strings.
Deterministic: same template + same context → same string, always.
"""
import shlex
from dataclasses import dataclass, field
from typing import Dict, Optional

from pipeline_runner.core.errors import ConfigError


@dataclass(frozen=True)
class TemplateContext:
    """
    Immutable set of values a template may reference.

    Fields
    ------
    pipeline : str
        Pipeline name.
    run_id : str
        Id of the run being executed.
    ref : str
        Git ref that triggered the run (e.g. "refs/heads/main").
    commit : str
        Commit SHA, may be empty for manual runs.
    actor : str
        Who triggered the run.
    artifact : str | None
        Current deployment artifact reference, once a stage produced one.
    variables : dict
        Pipeline-level variables.
    """
    pipeline: str
    run_id: str
    ref: str
    commit: str = ""
    actor: str = ""
    artifact: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)

    def builtins(self) -> Dict[str, str]:
        branch = self.ref[len("refs/heads/"):] if self.ref.startswith("refs/heads/") else self.ref
        return {
            "pipeline": self.pipeline,
            "run_id": self.run_id,
            "ref": self.ref,
            "branch": branch,
            "commit": self.commit,
            "short_commit": self.commit[:7],
            "actor": self.actor,
            "artifact": self.artifact or "",
        }

    def as_mapping(self) -> Dict[str, str]:
        base = self.builtins()
        resolved = dict(base)
        for key, value in self.variables.items():
            resolved[key] = _format(str(value), base, quote=False)
        # built-ins win over variables with the same name
        resolved.update(base)
        return resolved


class _StrictMapping(dict):
    def __missing__(self, key: str) -> str:
        raise ConfigError(
            f"Unknown placeholder '{{{key}}}'. Available: {sorted(self.keys())}"
        )


def _format(template: str, values: Dict[str, str], quote: bool) -> str:
    if quote:
        values = {k: shlex.quote(v) if v else "''" for k, v in values.items()}
    try:
        return template.format_map(_StrictMapping(values))
    except (ValueError, IndexError, AttributeError) as e:
        raise ConfigError(f"Malformed template '{template}': {e}") from e


def render_template(template: str, context: TemplateContext) -> str:
    """Render a plain value template (artifact references, manifest paths)."""
    return _format(template, context.as_mapping(), quote=False)


def render_command(template: str, context: TemplateContext) -> str:
    """Render a command template with every substituted value shell-quoted."""
    return _format(template, context.as_mapping(), quote=True)
