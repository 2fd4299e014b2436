"""
GET /pipelines
Lists the configured pipelines with their stage names and branch filters.
"""
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from pipeline_runner.api.deps import RunnerServices, get_services

router = APIRouter()


class PipelineSummary(BaseModel):
    name: str
    stages: List[str]
    branches: List[str]


@router.get("/pipelines", response_model=List[PipelineSummary])
async def list_pipelines(services: RunnerServices = Depends(get_services)):
    summaries = []
    for name in services.descriptors.list_pipelines():
        pipeline = services.descriptors.get_pipeline(name)
        summaries.append(PipelineSummary(name=name, stages=pipeline.stage_names, branches=pipeline.branches))
    return summaries
