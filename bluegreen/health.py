"""Health probing and the strict/lenient aggregate policies.

The prober only reports per-endpoint verdicts. Turning those into a
promote/rollback decision is the caller's job, through HealthPolicy.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import requests

from bluegreen import metrics
from bluegreen.compose import PortResolver
from bluegreen.config import Settings
from bluegreen.models import Color, ServiceTopology
from bluegreen.runtime import ContainerRuntime

logger = logging.getLogger(__name__)


def is_healthy_status(code: Optional[int]) -> bool:
    return code is not None and 200 <= code < 400


@dataclass
class ProbeResult:
    key: str
    container: str
    healthy: bool
    attempts: int = 0
    status_code: Optional[int] = None
    skipped: bool = False


class HealthPolicy(str, Enum):
    STRICT = "strict"
    LENIENT = "lenient"

    def evaluate(self, results: List[ProbeResult]) -> bool:
        """Aggregate verdict. Skipped sub-services do not vote; no votes is unhealthy."""
        probed = [r for r in results if not r.skipped]
        if not probed:
            return False
        if self is HealthPolicy.STRICT:
            return all(r.healthy for r in probed)
        return any(r.healthy for r in probed)


@dataclass
class ColorHealth:
    color: Color
    policy: HealthPolicy
    results: List[ProbeResult] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.policy.evaluate(self.results)

    @property
    def healthy_count(self) -> int:
        return sum(1 for r in self.results if r.healthy)

    @property
    def failed(self) -> List[str]:
        return [r.key for r in self.results if not r.healthy and not r.skipped]

    def summary(self) -> str:
        probed = [r for r in self.results if not r.skipped]
        return f"{self.healthy_count}/{len(probed)} healthy ({self.policy.value})"


class HealthProber:
    def __init__(self, runtime: ContainerRuntime, config: Settings, ports: PortResolver,
                 sleep: Callable[[float], None] = time.sleep):
        self.runtime = runtime
        self.config = config
        self.ports = ports
        self.sleep = sleep

    def probe(self, container: str, port: int, path: str, timeout: int, retries: int,
              key: str = None) -> ProbeResult:
        retries = max(1, retries)
        code = None
        for attempt in range(1, retries + 1):
            code = self.runtime.exec_http_probe(container, port, path, timeout)
            if is_healthy_status(code):
                logger.debug(f"  {container}:{port}{path} -> {code} (attempt {attempt}/{retries})")
                metrics.record_probe(True)
                return ProbeResult(key or container, container, True, attempt, code)
            logger.debug(
                f"  {container}:{port}{path} -> {code or 'no response'} (attempt {attempt}/{retries})"
            )
            if attempt < retries:
                self.sleep(self.config.PROBE_BACKOFF_SECONDS)
        metrics.record_probe(False)
        return ProbeResult(key or container, container, False, retries, code)

    def _target_container(self, base: str, color: Color, running: set) -> str:
        colored = f"{base}-{Color(color).value}"
        if colored not in running and base in running:
            logger.debug(f"  {colored} not running, probing colorless {base}")
            return base
        return colored

    def probe_color(self, topology: ServiceTopology, color: Color, policy: HealthPolicy,
                    stop_on_failure: bool = False) -> ColorHealth:
        color = Color(color)
        running = {c.name for c in self.runtime.list_containers() if c.running}
        health = ColorHealth(color=color, policy=policy)

        for key, spec in topology.services.items():
            port = self.ports.container_port(topology, key, spec, color)
            container = self._target_container(spec.container_name_base, color, running)
            if port is None:
                logger.warning(f"  Skipping {key}: no container port known")
                health.results.append(ProbeResult(key, container, False, skipped=True))
                continue

            timeout = spec.health_timeout or self.config.DEFAULT_HEALTH_TIMEOUT
            retries = spec.health_retries or self.config.DEFAULT_HEALTH_RETRIES
            result = self.probe(container, port, spec.health_endpoint, timeout, retries, key=key)
            health.results.append(result)
            if result.healthy:
                logger.info(f"  ✓ {key} ({container}) healthy after {result.attempts} attempt(s)")
            else:
                logger.warning(f"  ✗ {key} ({container}) unhealthy after {result.attempts} attempt(s)")
                if stop_on_failure:
                    break

        logger.info(f"  {topology.service_name}-{color.value}: {health.summary()}")
        return health

    def container_alive(self, topology: ServiceTopology, key: str, color: Color) -> bool:
        """Single-shot liveness used by the build planner.

        Trusts Docker's own healthcheck when the image defines one and falls
        back to one HTTP probe otherwise.
        """
        spec = topology.services[key]
        name = spec.container_name(color)
        status = self.runtime.container_health(name)
        if status is None:
            return False
        if status != "none":
            return status == "healthy"
        port = self.ports.container_port(topology, key, spec, color)
        if port is None:
            return False
        timeout = spec.health_timeout or self.config.DEFAULT_HEALTH_TIMEOUT
        return is_healthy_status(self.runtime.exec_http_probe(name, port, spec.health_endpoint, timeout))


def check_public_endpoint(topology: ServiceTopology, config: Settings,
                          sleep: Callable[[float], None] = time.sleep, session=None) -> bool:
    """HTTPS check through the public domain. Informational only."""
    if not (config.HTTPS_CHECK_ENABLED and topology.https_check_enabled):
        return True

    endpoint = topology.https_check_endpoint or "/"
    if not endpoint.startswith("/"):
        endpoint = "/" + endpoint
    url = f"https://{topology.domain}{endpoint}"
    http = session or requests
    retries = max(1, config.HTTPS_CHECK_RETRIES)

    for attempt in range(1, retries + 1):
        try:
            r = http.get(url, timeout=config.HTTPS_CHECK_TIMEOUT, verify=config.HTTPS_VERIFY_TLS)
            if r.status_code < 400:
                logger.info(f"  Public endpoint {url} -> {r.status_code}")
                return True
            logger.debug(f"  {url} -> {r.status_code} (attempt {attempt}/{retries})")
        except requests.RequestException as e:
            logger.debug(f"  {url} failed: {type(e).__name__} (attempt {attempt}/{retries})")
        if attempt < retries:
            sleep(1)

    logger.warning(f"  Public endpoint {url} not reachable; containers are healthy, check DNS/TLS")
    return False


def policy_from_name(name: str) -> HealthPolicy:
    return HealthPolicy(name.lower())
