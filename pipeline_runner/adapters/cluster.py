"""
Cluster Target
==============
Declarative rollout to a Kubernetes cluster through ``kubectl``.

deploy:
    1. Load the target's manifest (multi-document YAML).
    2. Set the artifact image on the workload containers.
    3. ``kubectl apply -f -``.
    4. Poll the Deployment until updated/ready/available replicas reach the
       desired count for the current generation, or deploy_timeout expires.

publish:
    Clusters pull from registries, so publish hands the reference through
    unchanged. Pair a cluster target with a registry target to push first.

Failure mapping:
    Unauthorized / forbidden → AUTHENTICATION_FAILED
    exceeded quota           → QUOTA_EXCEEDED
    rollout never ready      → UNHEALTHY_ROLLOUT
    kubectl missing / hung   → TARGET_UNAVAILABLE
"""
import os
import json
import logging
import subprocess
from typing import List, Optional

import yaml

from pipeline_runner.core.config import DEPLOY_POLL_INTERVAL, KUBECTL_BIN
from pipeline_runner.core.errors import (
    AUTHENTICATION_FAILED,
    TARGET_UNAVAILABLE,
    UNHEALTHY_ROLLOUT,
    AdapterError,
)
from pipeline_runner.adapters.base import (
    DeployOutcome,
    HealthStatus,
    check_http_health,
    classify_message,
    wait_until_healthy,
)
from pipeline_runner.models.artifact import DeploymentArtifact
from pipeline_runner.models.target import ClusterConfig

logger = logging.getLogger(__name__)

_WORKLOAD_KINDS = {"Deployment", "StatefulSet", "DaemonSet"}
_KUBECTL_TIMEOUT = 60


def set_manifest_image(manifest_text: str, image: str, container: Optional[str] = None) -> str:
    """Return the manifest with ``image`` set on workload containers."""
    documents = [d for d in yaml.safe_load_all(manifest_text) if d]
    for doc in documents:
        if doc.get("kind") not in _WORKLOAD_KINDS:
            continue
        pod_spec = doc.get("spec", {}).get("template", {}).get("spec", {})
        for c in pod_spec.get("containers", []):
            if container is None or c.get("name") == container:
                c["image"] = image
    return yaml.safe_dump_all(documents, sort_keys=False)


def rollout_status(deployment: dict) -> HealthStatus:
    """Judge a `kubectl get deployment -o json` document."""
    metadata = deployment.get("metadata", {})
    spec = deployment.get("spec", {})
    status = deployment.get("status", {})

    desired = spec.get("replicas", 1)
    generation = metadata.get("generation", 0)
    observed = status.get("observedGeneration", 0)
    updated = status.get("updatedReplicas", 0)
    ready = status.get("readyReplicas", 0)
    available = status.get("availableReplicas", 0)

    detail = f"{ready}/{desired} ready, {updated} updated, {available} available"
    if observed < generation:
        return HealthStatus(False, f"generation {generation} not yet observed ({detail})")
    if updated == ready == available == desired:
        return HealthStatus(True, detail)
    return HealthStatus(False, detail)


class ClusterTarget:
    """Applies manifests with kubectl and waits for the Deployment to roll out."""

    def __init__(self, kubectl: str = KUBECTL_BIN, poll_interval: float = DEPLOY_POLL_INTERVAL) -> None:
        self.kubectl = kubectl
        self.poll_interval = poll_interval

    def _kubectl(self, target: ClusterConfig, args: List[str], input_text: Optional[str] = None) -> str:
        cmd = [self.kubectl]
        if target.context:
            cmd += ["--context", target.context]
        cmd += ["--namespace", target.namespace] + args

        try:
            proc = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=_KUBECTL_TIMEOUT,
            )
        except FileNotFoundError as e:
            raise AdapterError(f"kubectl not found: {self.kubectl}", reason=TARGET_UNAVAILABLE) from e
        except subprocess.TimeoutExpired as e:
            raise AdapterError(
                f"kubectl {' '.join(args)} timed out after {_KUBECTL_TIMEOUT}s",
                reason=TARGET_UNAVAILABLE,
            ) from e

        if proc.returncode != 0:
            message = proc.stderr.strip() or proc.stdout.strip()
            raise AdapterError(f"kubectl {args[0]}: {message}", reason=classify_message(message))
        return proc.stdout

    def publish(self, artifact: DeploymentArtifact, target: ClusterConfig) -> str:
        logger.info("Cluster %s pulls %s from its registry, nothing to push", target.name, artifact.reference)
        return artifact.reference

    def render_manifest(self, reference: str, target: ClusterConfig) -> str:
        if not os.path.isfile(target.manifest):
            raise AdapterError(f"manifest not found: {target.manifest}")
        with open(target.manifest, "r", encoding="utf-8") as f:
            text = f.read()
        try:
            return set_manifest_image(text, reference, target.container)
        except yaml.YAMLError as e:
            raise AdapterError(f"invalid manifest {target.manifest}: {e}") from e

    def deploy(self, reference: str, target: ClusterConfig) -> DeployOutcome:
        manifest = self.render_manifest(reference, target)
        applied = self._kubectl(target, ["apply", "-f", "-"], input_text=manifest)
        logger.info("Applied manifest for %s: %s", target.deployment, applied.strip().replace("\n", "; "))

        status = wait_until_healthy(
            lambda: self.healthcheck(target),
            timeout=target.deploy_timeout,
            interval=self.poll_interval,
        )
        if not status.healthy:
            raise AdapterError(
                f"deployment/{target.deployment} did not become ready: {status.detail}",
                reason=UNHEALTHY_ROLLOUT,
            )
        return DeployOutcome(
            target=target.name,
            reference=reference,
            detail=status.detail,
            metadata={"namespace": target.namespace, "deployment": target.deployment},
        )

    def healthcheck(self, target: ClusterConfig) -> HealthStatus:
        try:
            raw = self._kubectl(target, ["get", "deployment", target.deployment, "-o", "json"])
        except AdapterError as e:
            if e.reason in (AUTHENTICATION_FAILED, TARGET_UNAVAILABLE):
                raise
            return HealthStatus(False, e.message)

        try:
            status = rollout_status(json.loads(raw))
        except json.JSONDecodeError as e:
            return HealthStatus(False, f"unreadable kubectl output: {e}")

        if status.healthy and target.health_url:
            return check_http_health(target.health_url)
        return status
