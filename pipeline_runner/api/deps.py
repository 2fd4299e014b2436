"""
API Dependencies
Builds the runner services once per application and hands them to routes.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from pipeline_runner.core.config import GITHUB_WEBHOOK_SECRET, PIPELINES_FILE, RUNS_DIR
from pipeline_runner.engine.pipeline_engine import PipelineEngine
from pipeline_runner.engine.run_manager import RunManager
from pipeline_runner.store.descriptor_store import DescriptorStore
from pipeline_runner.store.run_store import RunStore

logger = logging.getLogger(__name__)


@dataclass
class RunnerServices:
    descriptors: DescriptorStore
    run_store: RunStore
    engine: PipelineEngine
    manager: RunManager
    webhook_secret: Optional[str] = None


def build_services(
    pipelines_file: str = PIPELINES_FILE,
    runs_dir: str = RUNS_DIR,
    webhook_secret: Optional[str] = GITHUB_WEBHOOK_SECRET,
    descriptors: Optional[DescriptorStore] = None,
) -> RunnerServices:
    """Load descriptors (unless given) and wire store, engine and manager together."""
    if descriptors is None:
        descriptors = DescriptorStore.load(pipelines_file)
    run_store = RunStore(runs_dir)
    engine = PipelineEngine(descriptors, run_store)
    return RunnerServices(
        descriptors=descriptors,
        run_store=run_store,
        engine=engine,
        manager=RunManager(engine),
        webhook_secret=webhook_secret,
    )


def get_services(request: Request) -> RunnerServices:
    return request.app.state.services
