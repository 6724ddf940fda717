"""Decides which sub-services need a rebuild and runs those builds."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from bluegreen import metrics
from bluegreen.config import Settings
from bluegreen.errors import BuildError, CommandError
from bluegreen.fingerprint import FingerprintStore, compute_fingerprint
from bluegreen.health import HealthProber
from bluegreen.models import Color, ServiceTopology
from bluegreen.runtime import ContainerRuntime

logger = logging.getLogger(__name__)


class BuildDecision(str, Enum):
    REBUILD_NEW = "rebuild-new"
    REBUILD_CHANGED = "rebuild-changed"
    REBUILD_UNHEALTHY = "rebuild-unhealthy"
    REUSE = "reuse"


@dataclass
class PlanItem:
    key: str
    decision: BuildDecision
    fingerprint: str
    stored: Optional[str] = None

    @property
    def rebuild(self) -> bool:
        return self.decision is not BuildDecision.REUSE


@dataclass
class BuildPlan:
    service_name: str
    color: Color
    items: List[PlanItem] = field(default_factory=list)

    @property
    def to_build(self) -> List[str]:
        return [i.key for i in self.items if i.rebuild]

    @property
    def reused(self) -> List[str]:
        return [i.key for i in self.items if not i.rebuild]

    @property
    def rebuild_count(self) -> int:
        return len(self.to_build)


def decide(stored: Optional[str], current: str, alive: Callable[[], bool]) -> BuildDecision:
    """Decision table: a matching fingerprint is necessary but not sufficient."""
    if stored is None:
        return BuildDecision.REBUILD_NEW
    if stored != current:
        return BuildDecision.REBUILD_CHANGED
    if alive():
        return BuildDecision.REUSE
    return BuildDecision.REBUILD_UNHEALTHY


class BuildPlanner:
    def __init__(self, runtime: ContainerRuntime, prober: HealthProber, store: FingerprintStore,
                 config: Settings, project_root: Path, fingerprint=compute_fingerprint):
        self.runtime = runtime
        self.prober = prober
        self.store = store
        self.config = config
        self.project_root = Path(project_root)
        self.fingerprint = fingerprint

    def plan(self, topology: ServiceTopology, color: Color) -> BuildPlan:
        color = Color(color)
        workdir = topology.working_dir(self.project_root)
        stored = self.store.load(topology.service_name)
        plan = BuildPlan(topology.service_name, color)

        for key in topology.services:
            current = self.fingerprint(topology, key, workdir)
            previous = stored.get(key)
            decision = decide(previous, current, lambda: self.prober.container_alive(topology, key, color))
            plan.items.append(PlanItem(key, decision, current, previous))
            metrics.record_build_decision(decision.value)
            logger.info(f"  {key}: {decision.value} ({current[:20]})")

        logger.info(
            f"  Build plan: {plan.rebuild_count} to build, {len(plan.reused)} reused"
        )
        return plan

    def execute(self, topology: ServiceTopology, plan: BuildPlan) -> None:
        """Build every sub-service marked for rebuild, in parallel.

        Fingerprints are stored only for builds that succeeded, so a failed
        build is retried on the next run.
        """
        if not plan.to_build:
            logger.info("  Nothing to build")
            return

        compose_file = topology.compose_file_for(plan.color, self.project_root)
        project = topology.project_name(plan.color)
        cwd = topology.working_dir(self.project_root)
        fingerprints = {i.key: i.fingerprint for i in plan.items}
        built: Dict[str, str] = {}
        failed: Dict[str, str] = {}

        workers = max(1, min(self.config.MAX_PARALLEL_BUILDS, len(plan.to_build)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self.runtime.build_service, compose_file, project, key, cwd): key
                for key in plan.to_build
            }
            for future in as_completed(futures):
                key = futures[future]
                try:
                    future.result()
                    built[key] = fingerprints[key]
                    logger.info(f"  Built {key}")
                except CommandError as e:
                    failed[key] = str(e)
                    logger.error(f"  Build failed for {key}: {e}")

        self.store.update(topology.service_name, built)
        if failed:
            raise BuildError(
                f"Build failed for {', '.join(sorted(failed))}", failed=sorted(failed)
            )
