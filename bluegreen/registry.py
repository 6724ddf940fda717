"""Service registry (read-only) and deployment state repository."""

import json
import logging
import os
import shutil
from pathlib import Path
from typing import List

from pydantic import ValidationError

from bluegreen.errors import ConfigurationError, StateError, StateVerificationError, TopologyNotFoundError
from bluegreen.models import DeploymentState, ServiceTopology

logger = logging.getLogger(__name__)


class ServiceRegistry:
    def __init__(self, registry_dir: Path):
        self.registry_dir = Path(registry_dir)

    def path_for(self, service_name: str) -> Path:
        return self.registry_dir / f"{service_name}.json"

    def _read(self, path: Path) -> dict:
        try:
            with open(path) as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in registry file {path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Cannot read registry file {path}: {e}")

    def list_services(self) -> List[str]:
        if not self.registry_dir.is_dir():
            return []
        return sorted(p.stem for p in self.registry_dir.glob("*.json"))

    def load_topology(self, service_name: str) -> ServiceTopology:
        path = self.path_for(service_name)
        if not path.exists():
            raise TopologyNotFoundError(f"Service '{service_name}' not found in registry ({path})")

        data = self._read(path)
        data.setdefault("service_name", service_name)
        try:
            return ServiceTopology.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid registry document for '{service_name}': {e}")

    def resolve_service_name(self, name_or_domain: str) -> str:
        """Accept either a registered service name or one of its domains."""
        if self.path_for(name_or_domain).exists():
            return name_or_domain

        for service_name in self.list_services():
            try:
                data = self._read(self.path_for(service_name))
            except ConfigurationError as e:
                logger.warning(f"Skipping unreadable registry entry: {e}")
                continue
            if data.get("domain") == name_or_domain:
                logger.debug(f"Resolved domain {name_or_domain} to service {service_name}")
                return data.get("service_name") or service_name

        raise TopologyNotFoundError(
            f"No registered service or domain matches '{name_or_domain}'"
        )


class StateStore:
    """Read-modify-write-verify access to per-service state documents."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def path_for(self, service_name: str) -> Path:
        return self.state_dir / f"{service_name}.json"

    def _read(self, path: Path) -> DeploymentState:
        try:
            with open(path) as f:
                data = json.load(f)
            return DeploymentState.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise StateError(
                f"State file {path} is corrupt ({e}); restore it from {path.name}.bak or fix it by hand"
            )
        except OSError as e:
            raise StateError(f"Cannot read state file {path}: {e}")

    def load(self, service_name: str) -> DeploymentState:
        path = self.path_for(service_name)
        if not path.exists():
            state = DeploymentState.bootstrap(service_name)
            logger.info(f"No state for {service_name}, initialising (blue active)")
            self.save(service_name, state)
            return state
        return self._read(path)

    def save(self, service_name: str, state: DeploymentState) -> None:
        # Re-validate: in-place mutations bypass model validators
        try:
            state = DeploymentState.model_validate(state.model_dump())
        except ValidationError as e:
            raise StateError(f"Refusing to persist inconsistent state for {service_name}: {e}")

        path = self.path_for(service_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            shutil.copy2(path, str(path) + ".bak")

        tmp = path.with_name(f".{path.name}.tmp")
        try:
            with open(tmp, "w") as f:
                json.dump(state.model_dump(mode="json"), f, indent=4)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StateError(f"Failed to write state for {service_name}: {e}")

    def verify(self, service_name: str, expected: DeploymentState) -> DeploymentState:
        """Re-read the persisted document and confirm it matches `expected`."""
        persisted = self._read(self.path_for(service_name))
        if persisted.active_color != expected.active_color:
            raise StateVerificationError(
                f"State verification failed for {service_name}: expected active_color="
                f"{expected.active_color.value}, found {persisted.active_color.value}"
            )
        for color in (expected.active_color, expected.inactive_color):
            if persisted.record(color).status != expected.record(color).status:
                raise StateVerificationError(
                    f"State verification failed for {service_name}: {color.value} status is "
                    f"{persisted.record(color).status.value}, expected {expected.record(color).status.value}"
                )
        return persisted

    def save_verified(self, service_name: str, state: DeploymentState) -> DeploymentState:
        self.save(service_name, state)
        return self.verify(service_name, state)
