"""Container runtime adapter.

The lifecycle manager only talks to the runtime through the narrow
ContainerRuntime interface; DockerRuntime implements it with the docker
CLI (compose v2 plugin).
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from bluegreen.config import Settings, settings as default_settings
from bluegreen.errors import CommandError

logger = logging.getLogger(__name__)

_HOST_PORT = re.compile(r":(\d+)->")


def run_command(cmd, timeout: int = 30, check: bool = True, cwd=None) -> subprocess.CompletedProcess:
    if isinstance(cmd, str):
        cmd_list = cmd.split()
        cmd_str = cmd
    else:
        cmd_list = [str(c) for c in cmd]
        cmd_str = " ".join(cmd_list)

    logger.debug(f"  $ {cmd_str}")
    try:
        result = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=str(cwd) if cwd else None,
        )
    except subprocess.TimeoutExpired:
        raise CommandError(f"Command timed out after {timeout}s: {cmd_str}")
    except FileNotFoundError as e:
        raise CommandError(f"Command not found: {cmd_list[0]} ({e})")

    if check and result.returncode != 0:
        logger.debug(f"  Command failed (rc={result.returncode}): {result.stderr.strip()}")
        raise CommandError(
            f"Command failed: {cmd_str}\nstderr: {result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result


def parse_host_ports(ports_field: str) -> List[int]:
    """Published host ports from `docker ps` output, e.g. '0.0.0.0:3000->3000/tcp'."""
    return sorted({int(p) for p in _HOST_PORT.findall(ports_field or "")})


@dataclass
class ContainerInfo:
    name: str
    status: str
    ports: List[int] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.status.lower() == "running"


class ContainerRuntime(Protocol):
    def list_containers(self) -> List[ContainerInfo]: ...

    def start_compose_project(
        self, compose_file: Path, project_name: str, services: Sequence[str] = (), cwd: Path = None
    ) -> None: ...

    def stop_compose_project(
        self, compose_file: Path, project_name: str, services: Sequence[str] = (), cwd: Path = None
    ) -> None: ...

    def build_service(self, compose_file: Path, project_name: str, service: str, cwd: Path = None) -> None: ...

    def exec_http_probe(self, container_name: str, port: int, path: str, timeout: int) -> Optional[int]: ...

    def container_health(self, container_name: str) -> Optional[str]: ...

    def remove_container(self, container_name: str) -> None: ...


class DockerRuntime:
    def __init__(self, config: Settings = None):
        self.config = config or default_settings

    def _compose(self, compose_file: Path, project_name: str, *args) -> List[str]:
        return ["docker", "compose", "-f", str(compose_file), "-p", project_name, *args]

    def list_containers(self) -> List[ContainerInfo]:
        result = run_command(
            ["docker", "ps", "--all", "--no-trunc", "--format", "{{json .}}"],
            timeout=self.config.COMMAND_TIMEOUT,
        )
        containers = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Unparseable docker ps line: {line[:120]}")
                continue
            for name in row.get("Names", "").split(","):
                containers.append(
                    ContainerInfo(
                        name=name.strip(),
                        status=row.get("State", "unknown"),
                        ports=parse_host_ports(row.get("Ports", "")),
                    )
                )
        return containers

    def start_compose_project(self, compose_file, project_name, services=(), cwd=None) -> None:
        run_command(
            self._compose(compose_file, project_name, "up", "-d", *services),
            timeout=self.config.BUILD_TIMEOUT,
            cwd=cwd,
        )

    def stop_compose_project(self, compose_file, project_name, services=(), cwd=None) -> None:
        if services:
            run_command(
                self._compose(compose_file, project_name, "stop", *services),
                timeout=self.config.COMMAND_TIMEOUT,
                cwd=cwd,
            )
            run_command(
                self._compose(compose_file, project_name, "rm", "-f", *services),
                timeout=self.config.COMMAND_TIMEOUT,
                cwd=cwd,
            )
        else:
            run_command(
                self._compose(compose_file, project_name, "down"),
                timeout=self.config.COMMAND_TIMEOUT,
                cwd=cwd,
            )

    def build_service(self, compose_file, project_name, service, cwd=None) -> None:
        run_command(
            self._compose(compose_file, project_name, "build", service),
            timeout=self.config.BUILD_TIMEOUT,
            cwd=cwd,
        )

    def exec_http_probe(self, container_name, port, path, timeout) -> Optional[int]:
        """Probe from a throwaway container on the service network.

        Returns the HTTP status code, or None on connect failure or timeout.
        """
        url = f"http://{container_name}:{port}{path}"
        try:
            result = run_command(
                [
                    "docker", "run", "--rm", "--network", self.config.NETWORK_NAME,
                    self.config.HEALTH_CHECK_IMAGE, "curl", "-s", "-o", "/dev/null",
                    "-w", "%{http_code}", "--max-time", str(timeout), url,
                ],
                timeout=timeout + 30,
                check=False,
            )
        except CommandError as e:
            logger.debug(f"  Probe {url} did not complete: {e}")
            return None
        code = result.stdout.strip()[-3:]
        if code.isdigit() and int(code) > 0:
            return int(code)
        return None

    def container_health(self, container_name) -> Optional[str]:
        """Docker's own health status ('healthy', 'unhealthy', 'starting', 'none')."""
        result = run_command(
            [
                "docker", "inspect", "--format",
                "{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}",
                container_name,
            ],
            timeout=self.config.COMMAND_TIMEOUT,
            check=False,
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip().strip("'") or None

    def remove_container(self, container_name) -> None:
        run_command(["docker", "rm", "-f", container_name], timeout=self.config.COMMAND_TIMEOUT)
