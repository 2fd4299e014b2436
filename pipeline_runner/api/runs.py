"""
Run Endpoints
=============
Routes:
    POST /runs                 trigger a pipeline, 202 with the PENDING record
    GET  /runs                 list records (filters: pipeline, status)
    GET  /runs/{run_id}        one record
    GET  /runs/{run_id}/summary  rendered text summary
    POST /runs/{run_id}/cancel   request cancellation

Records are read from the Run Store, which the engine updates after every
transition, so polling GET /runs/{run_id} shows live progress.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, field_validator

from pipeline_runner.api.deps import RunnerServices, get_services
from pipeline_runner.core.status_reporter import render_summary
from pipeline_runner.models.run_record import TriggerMetadata

logger = logging.getLogger(__name__)

router = APIRouter()


class RunRequest(BaseModel):
    pipeline: str
    ref: str
    commit: str = ""
    actor: str = ""

    @field_validator("pipeline", "ref")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool
    status: str


@router.post("/runs", status_code=202)
async def trigger_run(body: RunRequest, services: RunnerServices = Depends(get_services)):
    trigger = TriggerMetadata(ref=body.ref, commit=body.commit, actor=body.actor, event="api")
    record = await services.manager.submit(body.pipeline, trigger)
    logger.info("API triggered run %s of %s", record.run_id, record.pipeline)
    return record.model_dump(mode="json")


@router.get("/runs")
async def list_runs(
    pipeline: Optional[str] = None,
    status: Optional[str] = None,
    services: RunnerServices = Depends(get_services),
):
    records = services.run_store.list(pipeline=pipeline, status=status.upper() if status else None)
    return [r.model_dump(mode="json") for r in records]


@router.get("/runs/{run_id}")
async def get_run(run_id: str, services: RunnerServices = Depends(get_services)):
    return services.run_store.get(run_id).model_dump(mode="json")


@router.get("/runs/{run_id}/summary", response_class=PlainTextResponse)
async def get_run_summary(run_id: str, services: RunnerServices = Depends(get_services)):
    return render_summary(services.run_store.get(run_id))


@router.post("/runs/{run_id}/cancel", response_model=CancelResponse)
async def cancel_run(run_id: str, services: RunnerServices = Depends(get_services)):
    cancelled = services.manager.cancel(run_id)
    record = services.run_store.get(run_id)
    return CancelResponse(run_id=run_id, cancelled=cancelled, status=record.status)
