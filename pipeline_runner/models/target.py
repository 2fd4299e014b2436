"""
Deployment Target Models
========================
Tagged variants describing where an artifact goes. The ``kind`` field is
the tag; the adapter factory resolves the adapter from it, so the engine
never inspects the variant itself.

Variants:
    local_container — run the image as a named container on the local Docker engine
    registry        — push the image to a remote repository and promote a tag
    cluster         — apply a Kubernetes manifest and wait for the rollout
"""
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field

from pipeline_runner.core.config import DEPLOY_TIMEOUT, REGISTRY_PASSWORD, REGISTRY_USERNAME


class _TargetBase(BaseModel):
    name: str = ""
    health_url: Optional[str] = None
    deploy_timeout: int = DEPLOY_TIMEOUT


class LocalContainerConfig(_TargetBase):
    kind: Literal["local_container"] = "local_container"
    container_name: str
    ports: Dict[str, int] = {}          # container port → host port, e.g. {"80/tcp": 8080}
    environment: Dict[str, str] = {}
    restart_policy: str = "unless-stopped"


class RegistryConfig(_TargetBase):
    kind: Literal["registry"] = "registry"
    repository: str                      # e.g. ghcr.io/acme/web
    promote_tag: str = "latest"
    username: Optional[str] = REGISTRY_USERNAME
    password: Optional[str] = REGISTRY_PASSWORD

    @property
    def auth_config(self) -> Optional[dict]:
        if self.username and self.password:
            return {"username": self.username, "password": self.password}
        return None


class ClusterConfig(_TargetBase):
    kind: Literal["cluster"] = "cluster"
    manifest: str                        # path to a YAML manifest
    deployment: str
    namespace: str = "default"
    container: Optional[str] = None      # None = set image on every container
    context: Optional[str] = None


TargetConfig = Annotated[
    Union[LocalContainerConfig, RegistryConfig, ClusterConfig],
    Field(discriminator="kind"),
]
