"""Clears container-name and host-port collisions before a color starts."""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import psutil

from bluegreen.config import Settings
from bluegreen.errors import CommandError
from bluegreen.infrastructure import is_infrastructure
from bluegreen.models import Color, ServiceTopology
from bluegreen.runtime import ContainerRuntime

logger = logging.getLogger(__name__)


@dataclass
class ConflictReport:
    removed: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.removed and not self.failed


def host_port_owner(port: int):
    """Local process listening on `port`, or None. Needs privileges to see other users' sockets."""
    try:
        for conn in psutil.net_connections(kind="inet"):
            if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
                return conn.pid
    except (psutil.AccessDenied, PermissionError):
        return None
    return None


class ConflictResolver:
    def __init__(self, runtime: ContainerRuntime, config: Settings):
        self.runtime = runtime
        self.config = config

    def _remove(self, name: str, reason: str, report: ConflictReport) -> None:
        if name in report.removed:
            return
        logger.info(f"  Removing {name} ({reason})")
        try:
            self.runtime.remove_container(name)
            report.removed.append(name)
        except CommandError as e:
            # Best-effort: a real conflict resurfaces when the container starts
            logger.warning(f"  Could not remove {name}: {e}")
            report.failed.append((name, str(e)))

    def clear_for_start(self, topology: ServiceTopology, color: Color, active_color: Color) -> ConflictReport:
        color = Color(color)
        report = ConflictReport()
        try:
            containers = self.runtime.list_containers()
        except CommandError as e:
            logger.warning(f"  Cannot list containers, skipping conflict check: {e}")
            return report

        protected = set(topology.container_names(active_color))
        by_name = {c.name: c for c in containers}

        for key, spec in topology.services.items():
            name = spec.container_name(color)
            if name in protected or is_infrastructure(name, topology, self.config):
                report.skipped.append(name)
                continue
            if name in by_name:
                self._remove(name, f"stale {by_name[name].status} container", report)

        for key, spec in topology.services.items():
            if not spec.port:
                continue
            own_name = spec.container_name(color)
            holders = [c for c in containers if spec.port in c.ports and c.name != own_name]
            for holder in holders:
                if holder.name in protected or is_infrastructure(holder.name, topology, self.config):
                    logger.warning(
                        f"  Port {spec.port} for {key} is held by protected container {holder.name}; "
                        "leaving it alone"
                    )
                    if holder.name not in report.skipped:
                        report.skipped.append(holder.name)
                    continue
                self._remove(holder.name, f"holds port {spec.port}", report)

            if not holders:
                pid = host_port_owner(spec.port)
                if pid:
                    logger.warning(
                        f"  Port {spec.port} for {key} is bound by host process pid={pid}; "
                        "container start may fail"
                    )

        if report.clean:
            logger.info(f"  No conflicts for {topology.service_name}-{color.value}")
        return report
