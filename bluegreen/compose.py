"""Compose-file and .env introspection for container port auto-detection."""

import logging
from pathlib import Path
from typing import Optional

import yaml
from dotenv import dotenv_values

from bluegreen.models import Color, ServiceTopology, SubServiceSpec

logger = logging.getLogger(__name__)


def _container_port_from_entry(entry) -> Optional[int]:
    if isinstance(entry, dict):
        target = entry.get("target")
        return int(target) if target is not None else None
    if isinstance(entry, int):
        return entry
    if isinstance(entry, str):
        # "HOST:CONTAINER", "IP:HOST:CONTAINER", "CONTAINER", optional "/proto"
        value = entry.split("/")[0].rsplit(":", 1)[-1]
        if "-" in value:
            value = value.split("-")[0]
        return int(value) if value.isdigit() else None
    return None


def load_compose(compose_file: Path) -> dict:
    try:
        with open(compose_file) as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"Could not parse {compose_file}: {e}")
        return {}


def port_from_compose(compose: dict, service_key: str, container_base: str) -> Optional[int]:
    services = compose.get("services") or {}
    candidates = [services.get(service_key)]
    candidates += [
        svc for svc in services.values()
        if isinstance(svc, dict) and str(svc.get("container_name", "")).startswith(container_base)
    ]
    for svc in candidates:
        if not isinstance(svc, dict):
            continue
        for entry in svc.get("ports") or []:
            port = _container_port_from_entry(entry)
            if port:
                return port
        for entry in svc.get("expose") or []:
            port = _container_port_from_entry(entry)
            if port:
                return port
    return None


def port_from_env(env_file: Path, service_key: str, container_base: str) -> Optional[int]:
    if not env_file.exists():
        return None
    values = dotenv_values(env_file)
    keys = [
        f"{service_key.upper().replace('-', '_')}_PORT",
        f"{container_base.upper().replace('-', '_')}_PORT",
        "SERVICE_PORT",
        "PORT",
    ]
    for key in keys:
        value = (values.get(key) or "").strip()
        if value.isdigit():
            return int(value)
    return None


class PortResolver:
    """Resolves each sub-service's container port, auto-detecting when unset."""

    def __init__(self, project_root: Path):
        self.project_root = Path(project_root)
        self._cache = {}

    def container_port(self, topology: ServiceTopology, key: str, spec: SubServiceSpec,
                       color: Color = Color.BLUE) -> Optional[int]:
        if spec.container_port:
            return spec.container_port

        cache_key = (topology.service_name, key, Color(color))
        if cache_key in self._cache:
            return self._cache[cache_key]

        compose_file = topology.compose_file_for(color, self.project_root)
        port = port_from_compose(load_compose(compose_file), key, spec.container_name_base)
        source = compose_file.name
        if port is None:
            env_file = topology.working_dir(self.project_root) / ".env"
            port = port_from_env(env_file, key, spec.container_name_base)
            source = ".env"

        if port is None:
            logger.warning(
                f"No container port for {topology.service_name}/{key}; "
                "set container_port in the registry"
            )
        else:
            logger.debug(f"Detected port {port} for {topology.service_name}/{key} from {source}")
        self._cache[cache_key] = port
        return port
