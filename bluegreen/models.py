"""Typed registry and state documents.

Registry documents are produced by an external registration tool and are
read-only here. State documents are owned by the lifecycle manager.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _strip_null_sentinels(value: Any) -> Any:
    """Turn the registry's "null" and empty-string placeholders into real None."""
    if isinstance(value, str) and value.strip() in ("", "null", "None"):
        return None
    if isinstance(value, dict):
        return {k: _strip_null_sentinels(v) for k, v in value.items()}
    return value


class Color(str, Enum):
    BLUE = "blue"
    GREEN = "green"

    def other(self) -> "Color":
        return Color.GREEN if self is Color.BLUE else Color.BLUE

    def __str__(self) -> str:
        return self.value


class ColorStatus(str, Enum):
    RUNNING = "running"
    READY = "ready"
    STOPPED = "stopped"
    BACKUP = "backup"


# ── Topology ──────────────────────────────────────────────────────


class SubServiceSpec(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    container_name_base: str = Field(
        validation_alias=AliasChoices("container_name_base", "containerBaseName")
    )
    container_port: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("container_port", "containerPort")
    )
    # Host-side published port; used only for conflict detection.
    port: Optional[int] = None
    health_endpoint: str = Field(
        default="/health", validation_alias=AliasChoices("health_endpoint", "healthEndpoint")
    )
    health_timeout: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("health_timeout", "healthTimeout")
    )
    health_retries: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("health_retries", "healthRetries")
    )
    startup_time: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("startup_time", "startupTimeSeconds"),
    )
    location: Optional[str] = None
    source_paths: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalise(cls, data: Any) -> Any:
        return _strip_null_sentinels(data)

    @field_validator("health_endpoint", mode="before")
    @classmethod
    def _endpoint_default(cls, value: Any) -> Any:
        if value is None:
            return "/health"
        if isinstance(value, str) and not value.startswith("/"):
            return "/" + value
        return value

    @field_validator("source_paths", mode="before")
    @classmethod
    def _paths_default(cls, value: Any) -> Any:
        return [] if value is None else value

    def container_name(self, color: Color) -> str:
        return f"{self.container_name_base}-{Color(color).value}"


class ServiceTopology(BaseModel):
    """One registry document: everything needed to deploy a service."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    service_name: str = Field(validation_alias=AliasChoices("service_name", "name"))
    domain: str
    shared_dependencies: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("shared_dependencies", "sharedDependencies"),
    )
    network: Optional[str] = None
    docker_compose_file: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("docker_compose_file", "composeFile")
    )
    docker_project_base: Optional[str] = None
    service_path: Optional[str] = None
    production_path: Optional[str] = None
    infrastructure_compose_file: Optional[str] = None
    https_check_enabled: bool = True
    https_check_endpoint: str = "/"
    source_paths: List[str] = Field(default_factory=lambda: ["shared", "prisma"])
    services: Dict[str, SubServiceSpec] = Field(
        validation_alias=AliasChoices("services", "subServices")
    )

    @model_validator(mode="before")
    @classmethod
    def _normalise(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        cleaned = {k: _strip_null_sentinels(v) if k != "services" else v for k, v in data.items()}
        for key in ("shared_dependencies", "source_paths", "https_check_enabled", "https_check_endpoint"):
            if key in cleaned and cleaned[key] is None:
                del cleaned[key]
        return cleaned

    @model_validator(mode="after")
    def _unique_container_bases(self) -> "ServiceTopology":
        if not self.services:
            raise ValueError("registry document declares no services")
        seen = {}
        for key, spec in self.services.items():
            base = spec.container_name_base
            if base in seen:
                raise ValueError(
                    f"container_name_base '{base}' is used by both '{seen[base]}' and '{key}'"
                )
            seen[base] = key
        return self

    @property
    def name(self) -> str:
        return self.service_name

    @property
    def project_base(self) -> str:
        return self.docker_project_base or self.service_name

    def project_name(self, color: Color) -> str:
        return f"{self.project_base}_{Color(color).value}"

    def container_names(self, color: Color) -> List[str]:
        return [spec.container_name(color) for spec in self.services.values()]

    def working_dir(self, project_root: Path) -> Path:
        """Production checkout when present, else the service source tree."""
        project_root = Path(project_root)
        for candidate in (self.production_path, self.service_path):
            if not candidate:
                continue
            path = Path(candidate)
            if not path.is_absolute():
                path = project_root / path
            if path.is_dir():
                return path
        return project_root

    def compose_file_for(self, color: Color, project_root: Path) -> Path:
        color = Color(color)
        workdir = self.working_dir(project_root)
        candidates = []
        if self.docker_compose_file:
            name = self.docker_compose_file
            for c in Color:
                if name.endswith(f".{c.value}.yml"):
                    name = name[: -len(f".{c.value}.yml")] + f".{color.value}.yml"
                    break
            candidates.append(name)
        candidates.append(f"docker-compose.{self.service_name}.{color.value}.yml")
        candidates.append("docker-compose.yml")

        for name in candidates:
            path = Path(name)
            if not path.is_absolute():
                path = workdir / path
            if path.exists():
                return path
        first = Path(candidates[0])
        return first if first.is_absolute() else workdir / first


# ── Deployment state ──────────────────────────────────────────────


class ColorRecord(BaseModel):
    status: ColorStatus = ColorStatus.STOPPED
    deployed_at: Optional[str] = None
    version: Optional[str] = None


class LastDeployment(BaseModel):
    color: Color = Color.BLUE
    timestamp: Optional[str] = None
    success: bool = True


class HistoryEntry(BaseModel):
    timestamp: str = Field(default_factory=utcnow)
    from_color: Color
    to_color: Color
    success: bool
    rollback: bool = False
    version: Optional[str] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None


class DeploymentState(BaseModel):
    service_name: str
    active_color: Color = Color.BLUE
    blue: ColorRecord = Field(default_factory=lambda: ColorRecord(status=ColorStatus.RUNNING))
    green: ColorRecord = Field(default_factory=ColorRecord)
    last_deployment: LastDeployment = Field(default_factory=LastDeployment)
    history: List[HistoryEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _single_running_color(self) -> "DeploymentState":
        if self.blue.status == ColorStatus.RUNNING and self.green.status == ColorStatus.RUNNING:
            raise ValueError("blue and green cannot both be running")
        return self

    @classmethod
    def bootstrap(cls, service_name: str) -> "DeploymentState":
        return cls(service_name=service_name)

    @property
    def inactive_color(self) -> Color:
        return self.active_color.other()

    def record(self, color: Color) -> ColorRecord:
        return self.blue if Color(color) is Color.BLUE else self.green

    def set_record(self, color: Color, **changes) -> None:
        updated = self.record(color).model_copy(update=changes)
        if Color(color) is Color.BLUE:
            self.blue = updated
        else:
            self.green = updated

    def add_history(self, entry: HistoryEntry, limit: int = 20) -> None:
        self.history = (self.history + [entry])[-limit:]
