"""
Status Reporter
===============
Renders a RunRecord as human-readable text for the CLI and the summary
endpoint.

STRICT DETERMINISM CONTRACT:
  - Pure functions of the RunRecord. No clock, no environment, no I/O.
  - Re-rendering an unchanged record returns a byte-identical string.
  - Planned stages without a result are shown as PENDING, so a summary of
    an in-flight run always lists the whole pipeline.

Summary layout:
    Run <id> · <pipeline> · <STATUS>
    Trigger: <ref> @ <short commit> by <actor> (<event>)
    Artifact: <reference> (owner: <stage>)
      [1/4] checkout  SUCCEEDED  1 attempt   0.4s
      [2/4] install   FAILED     3 attempts  12.1s  exit 1  STAGE_FAILURE: ...
      [3/4] build     SKIPPED    skipped: stage 'install' failed
    Error: STAGE_FAILURE: stage 'install' failed: ...
    --- install output (excerpt) ---
    ...
"""
from typing import List, Optional

from pipeline_runner.core.constants import StageStatus
from pipeline_runner.executor.process_executor import create_log_excerpt
from pipeline_runner.models.run_record import RunRecord, StageResult

PENDING_STAGE = "PENDING"
SEPARATOR = "·"

_STATUS_WIDTH = 9
_EXCERPT_LINES = 10


def _attempts(count: int) -> str:
    return f"{count} attempt" if count == 1 else f"{count} attempts"


def render_stage_line(index: int, total: int, result: Optional[StageResult], name: str = "", width: int = 0) -> str:
    """
    One line per stage. ``result`` is None for a stage that has not run yet,
    in which case ``name`` labels it.
    """
    label = result.name if result is not None else name
    prefix = f"  [{index}/{total}] {label.ljust(width)}"

    if result is None:
        return f"{prefix}  {PENDING_STAGE}"

    status = result.status.ljust(_STATUS_WIDTH)
    if result.status == StageStatus.SKIPPED:
        return f"{prefix}  {status}  {result.error or ''}".rstrip()

    parts = [f"{prefix}  {status}", _attempts(result.attempts), f"{result.duration_seconds:.1f}s"]
    if result.status == StageStatus.FAILED:
        if result.exit_code is not None:
            parts.append(f"exit {result.exit_code}")
        if result.error:
            parts.append(f"{result.error_kind}: {result.error}" if result.error_kind else result.error)
    elif result.reference:
        parts.append(f"-> {result.reference}")
    if result.truncated:
        parts.append("(output truncated)")
    return "  ".join(parts)


def _failed_output(result: StageResult) -> List[str]:
    output = "\n".join(s for s in (result.stdout.rstrip(), result.stderr.rstrip()) if s)
    if not output:
        return []
    excerpt = create_log_excerpt(output, head=_EXCERPT_LINES, tail=_EXCERPT_LINES)
    return [f"--- {result.name} output (excerpt) ---", excerpt]


def render_summary(record: RunRecord) -> str:
    trigger = record.trigger
    lines = [
        f"Run {record.run_id} {SEPARATOR} {record.pipeline} {SEPARATOR} {record.status}",
        f"Trigger: {trigger.ref} @ {trigger.short_commit or '-'} by {trigger.actor or '-'} ({trigger.event})",
    ]
    if record.artifact is not None:
        lines.append(f"Artifact: {record.artifact.reference} (owner: {record.artifact.owner})")

    total = len(record.planned_stages)
    width = max((len(n) for n in record.planned_stages), default=0)
    for i, name in enumerate(record.planned_stages):
        result = record.stage_results[i] if i < len(record.stage_results) else None
        lines.append(render_stage_line(i + 1, total, result, name=name, width=width))

    if record.error:
        lines.append(f"Error: {record.error_kind}: {record.error}" if record.error_kind else f"Error: {record.error}")

    for result in record.stage_results:
        if result.status == StageStatus.FAILED:
            lines.extend(_failed_output(result))

    return "\n".join(lines) + "\n"
