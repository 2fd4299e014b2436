"""
Local Container Target
======================
Runs the artifact image as a named container on the local Docker engine,
the way the served build is meant to run: `docker run -p 8080:80 <image>`.

DOCKER STRATEGY:
    - One container per target name; deploy replaces the previous one.
    - Containers carry labels so they can be found and cleaned up.
    - Healthy = container running, Docker HEALTHCHECK (if any) reports
      healthy, and ``health_url`` (if set) answers below 400.
"""
import logging

import docker
from docker.errors import DockerException, NotFound

from pipeline_runner.core.config import DEPLOY_POLL_INTERVAL
from pipeline_runner.core.errors import UNHEALTHY_ROLLOUT, AdapterError
from pipeline_runner.adapters.base import (
    DeployOutcome,
    HealthStatus,
    check_http_health,
    map_docker_error,
    wait_until_healthy,
)
from pipeline_runner.models.artifact import DeploymentArtifact
from pipeline_runner.models.target import LocalContainerConfig

logger = logging.getLogger(__name__)

_LABELS = {"managed-by": "pipeline-runner"}


class LocalContainerTarget:
    """Deploys images as containers on the local Docker engine."""

    def __init__(self, poll_interval: float = DEPLOY_POLL_INTERVAL) -> None:
        self.poll_interval = poll_interval

    def _client(self):
        try:
            return docker.from_env()
        except DockerException as e:
            raise map_docker_error(e, "connect") from e

    def publish(self, artifact: DeploymentArtifact, target: LocalContainerConfig) -> str:
        """The local engine is its own registry: publishing checks the image exists."""
        client = self._client()
        try:
            image = client.images.get(artifact.reference)
        except DockerException as e:
            raise map_docker_error(e, f"publish {artifact.reference}") from e
        logger.info("Image %s available locally (%s)", artifact.reference, image.short_id)
        return artifact.reference

    def deploy(self, reference: str, target: LocalContainerConfig) -> DeployOutcome:
        client = self._client()

        try:
            previous = client.containers.get(target.container_name)
            logger.info("Replacing container %s (%s)", target.container_name, previous.short_id)
            previous.remove(force=True)
        except NotFound:
            pass
        except DockerException as e:
            raise map_docker_error(e, f"remove {target.container_name}") from e

        try:
            container = client.containers.run(
                image=reference,
                name=target.container_name,
                detach=True,
                ports=target.ports,
                environment=target.environment,
                restart_policy={"Name": target.restart_policy},
                labels={**_LABELS, "pipeline-runner.target": target.name},
            )
        except DockerException as e:
            raise map_docker_error(e, f"run {reference}") from e

        logger.info("Started container %s from %s", container.short_id, reference)
        status = wait_until_healthy(
            lambda: self._probe(container, target),
            timeout=target.deploy_timeout,
            interval=self.poll_interval,
        )
        if not status.healthy:
            raise AdapterError(
                f"container {target.container_name} not healthy: {status.detail}",
                reason=UNHEALTHY_ROLLOUT,
            )
        return DeployOutcome(
            target=target.name,
            reference=reference,
            detail=status.detail,
            metadata={"container_id": container.short_id},
        )

    def healthcheck(self, target: LocalContainerConfig) -> HealthStatus:
        client = self._client()
        try:
            container = client.containers.get(target.container_name)
        except NotFound:
            return HealthStatus(False, f"container {target.container_name} not found")
        except DockerException as e:
            raise map_docker_error(e, f"inspect {target.container_name}") from e
        return self._probe(container, target)

    @staticmethod
    def _probe(container, target: LocalContainerConfig) -> HealthStatus:
        try:
            container.reload()
        except DockerException as e:
            return HealthStatus(False, f"inspect failed: {e}")

        if container.status != "running":
            return HealthStatus(False, f"container status is {container.status}")

        health = container.attrs.get("State", {}).get("Health", {}).get("Status")
        if health and health != "healthy":
            return HealthStatus(False, f"docker healthcheck is {health}")

        if target.health_url:
            return check_http_health(target.health_url)
        return HealthStatus(True, "container running")
