"""
Registry Target
===============
Publishes images to a remote repository through the local Docker engine.

publish      tag <artifact> as <repository>:<tag> and push it
deploy       promote a published reference to <repository>:<promote_tag>
healthcheck  the promoted tag resolves in the registry (missing tag → unhealthy)
"""
import logging
from typing import Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from pipeline_runner.core.errors import AdapterError
from pipeline_runner.adapters.base import (
    DeployOutcome,
    HealthStatus,
    classify_message,
    map_docker_error,
)
from pipeline_runner.models.artifact import DeploymentArtifact
from pipeline_runner.models.target import RegistryConfig

logger = logging.getLogger(__name__)


def split_reference(reference: str) -> tuple[str, str]:
    """Split "host:5000/repo:tag" into ("host:5000/repo", "tag"); tag defaults to latest."""
    name, sep, tag = reference.rpartition(":")
    if sep and "/" not in tag:
        return name, tag
    return reference, "latest"


class RegistryTarget:
    """Pushes and promotes image tags in a remote registry."""

    def _client(self):
        try:
            return docker.from_env()
        except DockerException as e:
            raise map_docker_error(e, "connect") from e

    def _push(self, client, target: RegistryConfig, tag: str) -> None:
        logger.info("Pushing %s:%s", target.repository, tag)
        try:
            for line in client.images.push(
                target.repository, tag=tag, auth_config=target.auth_config, stream=True, decode=True
            ):
                error = line.get("error") or line.get("errorDetail", {}).get("message")
                if error:
                    raise AdapterError(
                        f"push {target.repository}:{tag}: {error}",
                        reason=classify_message(error),
                    )
        except DockerException as e:
            raise map_docker_error(e, f"push {target.repository}:{tag}") from e

    @staticmethod
    def _tag(image, target: RegistryConfig, tag: str) -> None:
        try:
            image.tag(target.repository, tag=tag)
        except DockerException as e:
            raise map_docker_error(e, f"tag {target.repository}:{tag}") from e

    def _local_image(self, client, reference: str, target: RegistryConfig):
        try:
            return client.images.get(reference)
        except ImageNotFound:
            repository, tag = split_reference(reference)
            logger.info("%s not present locally, pulling", reference)
            try:
                return client.images.pull(repository, tag=tag, auth_config=target.auth_config)
            except DockerException as e:
                raise map_docker_error(e, f"pull {reference}") from e
        except DockerException as e:
            raise map_docker_error(e, f"inspect {reference}") from e

    def publish(self, artifact: DeploymentArtifact, target: RegistryConfig) -> str:
        client = self._client()
        try:
            image = client.images.get(artifact.reference)
        except DockerException as e:
            raise map_docker_error(e, f"publish {artifact.reference}") from e

        _, tag = split_reference(artifact.reference)
        self._tag(image, target, tag)
        self._push(client, target, tag)
        published = f"{target.repository}:{tag}"
        logger.info("Published %s as %s", artifact.reference, published)
        return published

    def deploy(self, reference: str, target: RegistryConfig) -> DeployOutcome:
        client = self._client()
        image = self._local_image(client, reference, target)
        self._tag(image, target, target.promote_tag)
        self._push(client, target, target.promote_tag)
        promoted = f"{target.repository}:{target.promote_tag}"
        return DeployOutcome(
            target=target.name,
            reference=promoted,
            detail=f"promoted {reference} to {promoted}",
        )

    def healthcheck(self, target: RegistryConfig, tag: Optional[str] = None) -> HealthStatus:
        client = self._client()
        name = f"{target.repository}:{tag or target.promote_tag}"
        try:
            data = client.images.get_registry_data(name, auth_config=target.auth_config)
        except NotFound as e:
            return HealthStatus(False, f"{name} not resolvable: {e}")
        except DockerException as e:
            raise map_docker_error(e, f"resolve {name}") from e
        return HealthStatus(True, f"{name} -> {data.id}")
