"""
Pipeline Runner CLI
===================
Usage:
    pipeline-runner run <pipeline> --ref REF [--commit SHA] [--actor NAME] [--json]
    pipeline-runner status <run-id> [--json]
    pipeline-runner list [--pipeline NAME] [--status STATUS]
    pipeline-runner recover
    pipeline-runner serve [--host HOST] [--port PORT]

Global options:
    --pipelines PATH   pipelines YAML (default: PIPELINES_FILE)
    --workflow PATH    use a GitHub Actions workflow file as the pipeline source
    --runs-dir PATH    Run Store directory (default: RUNS_DIR)
    --log-level LEVEL

Exit codes (run):
    0  run SUCCEEDED
    1  run FAILED
    2  run ABORTED (Ctrl-C or superseded)
    3  internal error
    4  unknown pipeline or invalid configuration

Ctrl-C during ``run`` requests cancellation: the running stage's process
group is killed, later stages are skipped and the run ends ABORTED.
"""
import sys
import json
import signal
import asyncio
import argparse
import logging
from typing import Optional, Sequence

from pipeline_runner.core.config import LOG_LEVEL, PIPELINES_FILE, RUNS_DIR
from pipeline_runner.core.constants import (
    EXIT_ABORTED,
    EXIT_CONFIG_ERROR,
    EXIT_FAILED,
    EXIT_INTERNAL_ERROR,
    EXIT_SUCCEEDED,
    RunStatus,
)
from pipeline_runner.core.errors import INTERNAL, ConfigError, NotFoundError
from pipeline_runner.core.status_reporter import render_stage_line, render_summary
from pipeline_runner.engine.pipeline_engine import PipelineEngine
from pipeline_runner.models.run_record import RunRecord, TriggerMetadata
from pipeline_runner.store.descriptor_store import DescriptorStore
from pipeline_runner.store.run_store import RunStore
from pipeline_runner.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def exit_code_for(record: RunRecord) -> int:
    if record.status == RunStatus.SUCCEEDED:
        return EXIT_SUCCEEDED
    if record.status == RunStatus.ABORTED:
        return EXIT_ABORTED
    if record.error_kind == INTERNAL:
        return EXIT_INTERNAL_ERROR
    return EXIT_FAILED


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipeline-runner",
        description="Run build-and-deploy pipelines and inspect their runs.",
    )
    parser.add_argument("--pipelines", default=PIPELINES_FILE, help="Pipelines YAML file")
    parser.add_argument("--workflow", default=None, help="GitHub Actions workflow to use instead of --pipelines")
    parser.add_argument("--runs-dir", default=RUNS_DIR, help="Directory holding run records")
    parser.add_argument(
        "--log-level",
        default=LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Log level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Run a pipeline and wait for it to finish")
    run_parser.add_argument("pipeline", help="Pipeline name")
    run_parser.add_argument("--ref", required=True, help="Git ref, e.g. refs/heads/main")
    run_parser.add_argument("--commit", default="", help="Commit SHA")
    run_parser.add_argument("--actor", default="", help="Who triggered the run")
    run_parser.add_argument("--json", action="store_true", help="Print the final record as JSON")
    run_parser.set_defaults(func=cmd_run)

    # --- status ---
    status_parser = subparsers.add_parser("status", help="Show one run")
    status_parser.add_argument("run_id", help="Run id")
    status_parser.add_argument("--json", action="store_true", help="Print the record as JSON")
    status_parser.set_defaults(func=cmd_status)

    # --- list ---
    list_parser = subparsers.add_parser("list", help="List runs")
    list_parser.add_argument("--pipeline", default=None, help="Only runs of this pipeline")
    list_parser.add_argument("--status", default=None, type=str.upper, help="Only runs in this status")
    list_parser.set_defaults(func=cmd_list)

    # --- recover ---
    recover_parser = subparsers.add_parser("recover", help="Mark runs left in flight by a crash as FAILED")
    recover_parser.set_defaults(func=cmd_recover)

    # --- serve ---
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def load_descriptors(args: argparse.Namespace) -> DescriptorStore:
    if args.workflow:
        return DescriptorStore.from_github_workflow(args.workflow)
    return DescriptorStore.load(args.pipelines)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
class _ProgressPrinter:
    """Prints each stage line once, as soon as its result is recorded."""

    def __init__(self, stream=sys.stderr) -> None:
        self.stream = stream
        self.printed = 0

    def __call__(self, record: RunRecord) -> None:
        total = len(record.planned_stages)
        while self.printed < len(record.stage_results):
            result = record.stage_results[self.printed]
            self.printed += 1
            print(render_stage_line(self.printed, total, result), file=self.stream)


async def _execute(engine: PipelineEngine, record: RunRecord) -> RunRecord:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not available, Ctrl-C will not abort gracefully")
    try:
        return await engine.execute(record, cancel_event)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def cmd_run(args: argparse.Namespace) -> int:
    try:
        descriptors = load_descriptors(args)
    except ConfigError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    engine = PipelineEngine(descriptors, RunStore(args.runs_dir), on_update=_ProgressPrinter())
    trigger = TriggerMetadata(ref=args.ref, commit=args.commit, actor=args.actor, event="manual")
    try:
        record = engine.create_run(args.pipeline, trigger)
    except NotFoundError as e:
        print(f"Error: {e.message}. Known pipelines: {', '.join(descriptors.list_pipelines()) or '-'}",
              file=sys.stderr)
        return EXIT_CONFIG_ERROR

    print(f"Run {record.run_id} started", file=sys.stderr)
    record = asyncio.run(_execute(engine, record))

    if args.json:
        print(record.model_dump_json(indent=2))
    else:
        print(render_summary(record), end="")
    return exit_code_for(record)


def cmd_status(args: argparse.Namespace) -> int:
    try:
        record = RunStore(args.runs_dir).get(args.run_id)
    except NotFoundError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_FAILED
    if args.json:
        print(record.model_dump_json(indent=2))
    else:
        print(render_summary(record), end="")
    return EXIT_SUCCEEDED


def cmd_list(args: argparse.Namespace) -> int:
    records = RunStore(args.runs_dir).list(pipeline=args.pipeline, status=args.status)
    if not records:
        print("No runs.")
        return EXIT_SUCCEEDED
    for r in records:
        print(
            f"{r.run_id}  {r.pipeline:<20} {r.status:<9}  {r.trigger.ref}"
            f"  {r.created_at.strftime('%Y-%m-%d %H:%M:%S')}"
        )
    return EXIT_SUCCEEDED


def cmd_recover(args: argparse.Namespace) -> int:
    recovered = RunStore(args.runs_dir).recover_interrupted()
    for r in recovered:
        print(f"{r.run_id}  {r.pipeline}  marked FAILED (interrupted)")
    print(f"Recovered {len(recovered)} run(s).")
    return EXIT_SUCCEEDED


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from pipeline_runner.api.app import create_app
    from pipeline_runner.api.deps import build_services

    try:
        descriptors = load_descriptors(args)
    except ConfigError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    app = create_app(lambda: build_services(descriptors=descriptors, runs_dir=args.runs_dir))
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return EXIT_SUCCEEDED


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_CONFIG_ERROR

    setup_logging(level=args.log_level)

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_ABORTED
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INTERNAL_ERROR


if __name__ == "__main__":
    sys.exit(main())
