"""
POST /webhooks/github
=====================
GitHub push webhook. Every pipeline whose ``branches`` match the pushed ref
gets a run.

Signature:
    When a webhook secret is configured, X-Hub-Signature-256 must equal
    "sha256=" + HMAC-SHA256(secret, raw body). Mismatch → 401.

Events:
    ping   → {"message": "pong"}
    push   → 202 with the created run ids
    other  → 202, ignored
Branch deletions (``deleted: true``) are ignored.
"""
import hmac
import json
import hashlib
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from pipeline_runner.api.deps import RunnerServices, get_services
from pipeline_runner.api.errors import APIError, InvalidSignatureError
from pipeline_runner.models.run_record import TriggerMetadata

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> None:
    if not secret:
        return
    if not signature or not hmac.compare_digest(compute_signature(secret, body), signature):
        raise InvalidSignatureError()


def trigger_from_push(payload: dict) -> TriggerMetadata:
    actor = (payload.get("pusher") or {}).get("name") or (payload.get("sender") or {}).get("login") or ""
    return TriggerMetadata(
        ref=payload.get("ref", ""),
        commit=payload.get("after", ""),
        actor=actor,
        event="push",
    )


@router.post("/github")
async def github_webhook(
    request: Request,
    x_github_event: str = Header(default="push"),
    x_hub_signature_256: Optional[str] = Header(default=None),
    services: RunnerServices = Depends(get_services),
):
    body = await request.body()
    verify_signature(services.webhook_secret, body, x_hub_signature_256)

    if x_github_event == "ping":
        return {"message": "pong"}

    if x_github_event != "push":
        logger.info("Ignoring GitHub event %s", x_github_event)
        return JSONResponse(status_code=202, content={"message": "ignored", "event": x_github_event})

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError as e:
        raise APIError(code="INVALID_REQUEST", message=f"Malformed JSON payload: {e}") from e
    if not isinstance(payload, dict) or not payload.get("ref"):
        raise APIError(code="INVALID_REQUEST", message="Push payload has no ref")

    if payload.get("deleted"):
        logger.info("Ignoring branch deletion of %s", payload["ref"])
        return JSONResponse(status_code=202, content={"message": "ignored", "event": "delete", "runs": []})

    trigger = trigger_from_push(payload)
    run_ids = []
    for name in services.descriptors.pipelines_for_ref(trigger.ref):
        record = await services.manager.submit(name, trigger)
        run_ids.append(record.run_id)

    logger.info("Push to %s by %s triggered %d run(s)", trigger.ref, trigger.actor or "-", len(run_ids))
    return JSONResponse(status_code=202, content={"message": "accepted", "ref": trigger.ref, "runs": run_ids})
