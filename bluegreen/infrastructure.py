import logging
import time
from pathlib import Path
from typing import List

from bluegreen.config import Settings
from bluegreen.errors import CommandError, InfrastructureError
from bluegreen.models import ServiceTopology
from bluegreen.runtime import ContainerRuntime

logger = logging.getLogger(__name__)


def _matches(dependency: str, container_name: str) -> bool:
    return container_name == dependency or container_name.endswith(f"-{dependency}")


def is_infrastructure(name: str, topology: ServiceTopology, config: Settings) -> bool:
    if name in config.INFRASTRUCTURE_CONTAINERS:
        return True
    return any(_matches(dep, name) for dep in topology.shared_dependencies)


class InfrastructureGuard:
    """Makes sure a service's shared dependencies are up before deploying it."""

    def __init__(self, runtime: ContainerRuntime, config: Settings, project_root: Path, sleep=time.sleep):
        self.runtime = runtime
        self.config = config
        self.project_root = Path(project_root)
        self.sleep = sleep

    def missing(self, topology: ServiceTopology) -> List[str]:
        running = [c.name for c in self.runtime.list_containers() if c.running]
        return [
            dep for dep in topology.shared_dependencies
            if not any(_matches(dep, name) for name in running)
        ]

    def ensure(self, topology: ServiceTopology) -> None:
        missing = self.missing(topology)
        if not missing:
            if topology.shared_dependencies:
                logger.info(f"  Shared infrastructure up: {', '.join(topology.shared_dependencies)}")
            return

        compose = topology.infrastructure_compose_file
        if not compose:
            raise InfrastructureError(
                f"Shared dependencies not running for {topology.service_name}: {', '.join(missing)}"
            )

        compose_file = Path(compose)
        if not compose_file.is_absolute():
            compose_file = topology.working_dir(self.project_root) / compose_file
        logger.info(f"  Starting shared infrastructure from {compose_file.name} ({', '.join(missing)} down)")
        try:
            self.runtime.start_compose_project(
                compose_file, f"{topology.project_base}_infrastructure", cwd=compose_file.parent
            )
        except CommandError as e:
            raise InfrastructureError(f"Could not start shared infrastructure: {e}")

        self.sleep(self.config.STARTUP_DELAY_DEFAULT)
        still_missing = self.missing(topology)
        if still_missing:
            raise InfrastructureError(
                f"Shared dependencies still not running after start: {', '.join(still_missing)}"
            )
