"""
Adapter Factory
Resolves the adapter for a target config from its ``kind`` tag. The engine
only ever talks to the DeploymentTarget interface returned here.
"""
import logging
from typing import Dict, Optional

from pipeline_runner.core.errors import ConfigError
from pipeline_runner.adapters.base import DeploymentTarget
from pipeline_runner.adapters.cluster import ClusterTarget
from pipeline_runner.adapters.image_registry import RegistryTarget
from pipeline_runner.adapters.local_container import LocalContainerTarget

logger = logging.getLogger(__name__)


def default_adapters() -> Dict[str, DeploymentTarget]:
    return {
        "local_container": LocalContainerTarget(),
        "registry": RegistryTarget(),
        "cluster": ClusterTarget(),
    }


class AdapterRegistry:
    def __init__(self, adapters: Optional[Dict[str, DeploymentTarget]] = None) -> None:
        self._adapters = adapters if adapters is not None else default_adapters()

    def for_target(self, target) -> DeploymentTarget:
        adapter = self._adapters.get(target.kind)
        if adapter is None:
            raise ConfigError(f"No adapter for target kind '{target.kind}'")
        return adapter
