"""
Deployment Target Adapter Interface
===================================
Capability set every deployment target variant provides:

    publish(artifact, target)    -> reference
    deploy(reference, target)    -> DeployOutcome
    healthcheck(target)          -> HealthStatus

Adapters are stateless; all per-target settings arrive in the target config.
They are blocking (Docker SDK, kubectl) and the engine calls them from a
worker thread.

Every adapter maps its own failures (authentication, quota, unhealthy
rollout, unreachable daemon) to AdapterError with a reason code from
pipeline_runner.core.errors. Nothing else escapes an adapter.
"""
import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol

import httpx
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from pipeline_runner.core.config import DEPLOY_POLL_INTERVAL
from pipeline_runner.core.errors import (
    AUTHENTICATION_FAILED,
    ARTIFACT_MISSING,
    QUOTA_EXCEEDED,
    REJECTED,
    TARGET_UNAVAILABLE,
    AdapterError,
)
from pipeline_runner.models.artifact import DeploymentArtifact

logger = logging.getLogger(__name__)

_MAX_POLL_INTERVAL = 15.0


@dataclass
class DeployOutcome:
    target: str
    reference: str
    detail: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass
class HealthStatus:
    healthy: bool
    detail: str = ""


class DeploymentTarget(Protocol):
    def publish(self, artifact: DeploymentArtifact, target) -> str:
        ...

    def deploy(self, reference: str, target) -> DeployOutcome:
        ...

    def healthcheck(self, target) -> HealthStatus:
        ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------
def check_http_health(url: str, timeout: float = 5.0) -> HealthStatus:
    """GET ``url``; any 2xx/3xx answer is healthy. A malformed URL is a target misconfiguration."""
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=False)
    except httpx.InvalidURL as e:
        raise AdapterError(f"invalid health URL {url!r}: {e}", reason=REJECTED) from e
    except httpx.HTTPError as e:
        return HealthStatus(False, f"GET {url} failed: {e}")
    if response.status_code < 400:
        return HealthStatus(True, f"GET {url} -> {response.status_code}")
    return HealthStatus(False, f"GET {url} -> {response.status_code}")


def wait_until_healthy(
    probe: Callable[[], HealthStatus],
    timeout: float,
    interval: float = DEPLOY_POLL_INTERVAL,
) -> HealthStatus:
    """Poll ``probe`` with growing intervals until healthy or ``timeout`` elapses."""
    start = time.monotonic()
    status = probe()
    while not status.healthy:
        elapsed = time.monotonic() - start
        if elapsed >= timeout:
            logger.warning("Rollout not healthy after %.1fs: %s", elapsed, status.detail)
            return status
        time.sleep(min(interval, max(0.0, timeout - elapsed)))
        interval = min(interval * 1.5, _MAX_POLL_INTERVAL)
        status = probe()
    return status


def map_docker_error(exc: Exception, action: str) -> AdapterError:
    """Translate a docker SDK exception into the shared taxonomy."""
    if isinstance(exc, (ImageNotFound, NotFound)):
        return AdapterError(f"{action}: {exc}", reason=ARTIFACT_MISSING)
    if isinstance(exc, APIError):
        status = exc.status_code or 0
        explanation = str(exc.explanation or exc)
        if status in (401, 403) or "unauthorized" in explanation.lower():
            return AdapterError(f"{action}: {explanation}", reason=AUTHENTICATION_FAILED)
        if status == 429:
            return AdapterError(f"{action}: {explanation}", reason=QUOTA_EXCEEDED)
        if status >= 500:
            return AdapterError(f"{action}: {explanation}", reason=TARGET_UNAVAILABLE)
        return AdapterError(f"{action}: {explanation}", reason=REJECTED)
    if isinstance(exc, DockerException):
        return AdapterError(f"{action}: Docker engine unavailable: {exc}", reason=TARGET_UNAVAILABLE)
    return AdapterError(f"{action}: {type(exc).__name__}: {exc}", reason=REJECTED)


def classify_message(message: str) -> str:
    """Reason code for a free-text rejection from a registry or cluster."""
    lowered = message.lower()
    if any(k in lowered for k in ("unauthorized", "authentication required", "denied", "forbidden")):
        return AUTHENTICATION_FAILED
    if any(k in lowered for k in ("toomanyrequests", "quota", "rate limit")):
        return QUOTA_EXCEEDED
    return REJECTED
