#!/usr/bin/env python3
"""
Blue/Green Deployment Orchestrator

Drives one service through Prepare -> Switch -> Monitor -> Cleanup, rolling
back to the previous color when the switch or the monitoring window fails.
Runs on the HOST machine (needs the docker CLI and the nginx conf.d mount).

Usage:
    bluegreen deploy <service>          # Full pipeline
    bluegreen prepare <service>         # Build/start the inactive color only
    bluegreen switch <service>          # Move traffic to a prepared color
    bluegreen monitor <service>         # Watch the active color, roll back on failure
    bluegreen cleanup <service>         # Stop the inactive color
    bluegreen rollback <service>        # Return traffic to the previous color
    bluegreen health-check <service>    # One health pass on the active color
    bluegreen reconcile <service>       # Re-point nginx at the color in state
    bluegreen status <service>
    bluegreen history <service>
"""

import argparse
import logging
import signal
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass

from bluegreen import metrics
from bluegreen.compose import PortResolver
from bluegreen.config import Settings, settings as default_settings
from bluegreen.conflicts import ConflictResolver
from bluegreen.errors import (
    CommandError,
    ContainerStartError,
    DeploymentAborted,
    DeploymentError,
    HealthCheckError,
    SwitchError,
)
from bluegreen.fingerprint import FingerprintStore
from bluegreen.health import HealthPolicy, HealthProber, check_public_endpoint
from bluegreen.infrastructure import InfrastructureGuard, is_infrastructure
from bluegreen.locks import service_lock
from bluegreen.logging_config import setup_logging
from bluegreen.models import (
    Color,
    ColorStatus,
    DeploymentState,
    HistoryEntry,
    LastDeployment,
    ServiceTopology,
    utcnow,
)
from bluegreen.nginx import ConfigSynthesizer, ProxyLayout
from bluegreen.planner import BuildPlan, BuildPlanner
from bluegreen.proxy import NginxProxy, ReverseProxy
from bluegreen.registry import ServiceRegistry, StateStore
from bluegreen.runtime import ContainerRuntime, DockerRuntime
from bluegreen.switch import ProxySwitch

logger = logging.getLogger(__name__)


@dataclass
class PrepareResult:
    color: Color
    plan: BuildPlan
    startup_delay: int


def _raise_aborted(signum, frame):
    raise DeploymentAborted(f"Received signal {signum}")


class ColorLifecycleManager:
    def __init__(
        self,
        config: Settings = None,
        runtime: ContainerRuntime = None,
        proxy: ReverseProxy = None,
        sleep=time.sleep,
        http_session=None,
    ):
        self.config = config or default_settings
        self.project_root = self.config.resolve(self.config.PROJECT_ROOT)
        self.runtime = runtime or DockerRuntime(self.config)
        self.proxy = proxy or NginxProxy(self.config)
        self.sleep = sleep
        self.http_session = http_session

        self.registry = ServiceRegistry(self.config.registry_dir)
        self.states = StateStore(self.config.state_dir)
        self.ports = PortResolver(self.project_root)
        self.prober = HealthProber(self.runtime, self.config, self.ports, sleep=sleep)
        self.planner = BuildPlanner(
            self.runtime, self.prober, FingerprintStore(self.config.state_dir), self.config, self.project_root
        )
        self.conflicts = ConflictResolver(self.runtime, self.config)
        self.infrastructure = InfrastructureGuard(self.runtime, self.config, self.project_root, sleep=sleep)
        self.layout = ProxyLayout(self.config.nginx_conf_dir)
        self.synthesizer = ConfigSynthesizer(self.layout, self.ports, self.config.nginx_template)
        self.switcher = ProxySwitch(self.layout, self.synthesizer, self.proxy, self.runtime, self.config)

        self.promotion_policy = HealthPolicy(self.config.PROMOTION_HEALTH_POLICY)
        self.monitor_policy = HealthPolicy(self.config.MONITOR_HEALTH_POLICY)

        self._local = threading.local()

    # ── Logging & context ─────────────────────────────────────────

    def log(self, msg: str, level: str = "INFO"):
        extra = {k: getattr(self._local, k, None) for k in ("service", "color", "phase")}
        getattr(logger, level.lower(), logger.info)(msg, extra=extra)

    def banner(self, title: str):
        self.log("=" * 60)
        self.log(title)
        self.log("=" * 60)

    @contextmanager
    def _phase(self, phase: str, service: str, color: Color = None):
        saved = {k: getattr(self._local, k, None) for k in ("service", "color", "phase")}
        self._local.service = service
        self._local.color = color.value if color else saved["color"]
        self._local.phase = phase
        start = time.monotonic()
        try:
            yield
        finally:
            metrics.observe_phase(phase, time.monotonic() - start)
            for k, v in saved.items():
                setattr(self._local, k, v)

    @contextmanager
    def _locked(self, service: str):
        """Per-service deployment lock, re-entrant within one thread."""
        held = getattr(self._local, "held", None)
        if held is None:
            held = self._local.held = set()
        if service in held:
            yield
            return
        with service_lock(self.config.state_dir, service, timeout=self.config.LOCK_TIMEOUT_SECONDS):
            held.add(service)
            try:
                yield
            finally:
                held.discard(service)

    def _load(self, service: str):
        name = self.registry.resolve_service_name(service)
        return name, self.registry.load_topology(name)

    # ── Helpers ───────────────────────────────────────────────────

    def startup_delay(self, topology: ServiceTopology) -> int:
        declared = [s.startup_time for s in topology.services.values() if s.startup_time]
        delay = max(declared) if declared else self.config.STARTUP_DELAY_DEFAULT
        return max(self.config.STARTUP_DELAY_MIN, min(delay, self.config.STARTUP_DELAY_MAX))

    def _app_services(self, topology: ServiceTopology, color: Color):
        """Compose service keys for `color`, never including infrastructure."""
        return [
            key for key, spec in topology.services.items()
            if not is_infrastructure(spec.container_name(color), topology, self.config)
        ]

    def _start_color(self, topology: ServiceTopology, color: Color) -> None:
        compose_file = topology.compose_file_for(color, self.project_root)
        try:
            self.runtime.start_compose_project(
                compose_file,
                topology.project_name(color),
                self._app_services(topology, color),
                cwd=topology.working_dir(self.project_root),
            )
        except CommandError as e:
            raise ContainerStartError(f"Failed to start {topology.project_name(color)}: {e}")

    def _stop_color(self, topology: ServiceTopology, color: Color) -> bool:
        """Stop `color`'s sub-service containers. Best-effort; returns success."""
        services = self._app_services(topology, color)
        if not services:
            return True
        try:
            self.runtime.stop_compose_project(
                topology.compose_file_for(color, self.project_root),
                topology.project_name(color),
                services,
                cwd=topology.working_dir(self.project_root),
            )
            self.log(f"  Stopped {topology.project_name(color)} ({', '.join(services)})")
            return True
        except CommandError as e:
            self.log(f"  Failed to stop {topology.project_name(color)}: {e}", level="WARNING")
            return False

    def _color_running(self, topology: ServiceTopology, color: Color) -> bool:
        live = self.switcher.live_containers()
        return all(name in live for name in topology.container_names(color))

    # ── Prepare ───────────────────────────────────────────────────

    def prepare(self, service: str, version: str = None) -> PrepareResult:
        name, topology = self._load(service)
        with self._locked(name):
            state = self.states.load(name)
            target = state.inactive_color
            with self._phase("prepare", name, target):
                self.banner(f"PREPARE {name}: {state.active_color.value} active, preparing {target.value}")
                self._reconcile_quietly(topology, state)

                self.log("[1/5] Checking shared infrastructure...")
                self.infrastructure.ensure(topology)

                self.log("[2/5] Planning builds...")
                plan = self.planner.plan(topology, target)
                self.planner.execute(topology, plan)

                delay = self.startup_delay(topology)
                try:
                    self.log("[3/5] Clearing conflicts...")
                    self.conflicts.clear_for_start(topology, target, state.active_color)

                    self.log(f"[4/5] Starting {topology.project_name(target)}...")
                    self._start_color(topology, target)
                    self.log(f"  Waiting {delay}s for startup")
                    self.sleep(delay)

                    self.log(f"[5/5] Health check ({self.promotion_policy.value})...")
                    health = self.prober.probe_color(
                        topology, target, self.promotion_policy,
                        stop_on_failure=self.promotion_policy is HealthPolicy.STRICT,
                    )
                    if not health.healthy:
                        raise HealthCheckError(
                            f"{target.value} failed health check: {health.summary()}"
                            + (f", failing: {', '.join(health.failed)}" if health.failed else "")
                        )
                except (DeploymentError, KeyboardInterrupt):
                    self.log(f"  Tearing down {target.value} after failed prepare", level="ERROR")
                    self._stop_color(topology, target)
                    raise

                state = self.states.load(name)
                state.set_record(target, status=ColorStatus.READY, deployed_at=utcnow(), version=version)
                self.states.save_verified(name, state)
                self.log(f"  {target.value} is ready ({plan.rebuild_count} built, {len(plan.reused)} reused)")
                return PrepareResult(target, plan, delay)

    def _reconcile_quietly(self, topology: ServiceTopology, state: DeploymentState) -> None:
        try:
            self.switcher.reconcile(topology, state.active_color)
        except (SwitchError, CommandError) as e:
            self.log(f"  Could not reconcile proxy with state: {e}", level="WARNING")

    # ── Switch ────────────────────────────────────────────────────

    def switch_traffic(self, service: str) -> None:
        name, topology = self._load(service)
        with self._locked(name):
            state = self.states.load(name)
            target = state.inactive_color
            record = state.record(target)
            if record.status != ColorStatus.READY:
                raise DeploymentError(
                    f"{name}-{target.value} is {record.status.value}, not ready; run prepare first"
                )
            with self._phase("switch", name, target):
                self.banner(f"SWITCH {name}: {state.active_color.value} -> {target.value}")
                self._switch(name, topology, state, target)

    def _switch(self, name: str, topology: ServiceTopology, state: DeploymentState, target: Color) -> None:
        previous = state.active_color
        now = utcnow()
        try:
            self.switcher.switch(topology, target)
        except SwitchError as e:
            state.last_deployment = LastDeployment(color=target, timestamp=now, success=False)
            state.add_history(
                HistoryEntry(from_color=previous, to_color=target, success=False, error=str(e)),
                limit=self.config.HISTORY_LIMIT,
            )
            self.states.save(name, state)
            raise

        deployed_at = state.record(target).deployed_at or now
        state.active_color = target
        state.set_record(previous, status=ColorStatus.BACKUP)
        state.set_record(target, status=ColorStatus.RUNNING, deployed_at=deployed_at)
        state.last_deployment = LastDeployment(color=target, timestamp=now, success=True)
        self.states.save_verified(name, state)
        metrics.set_active_color(name, target.value)
        self.log(f"  State: {target.value}=running, {previous.value}=backup (verified)")

    # ── Monitor ───────────────────────────────────────────────────

    def monitor(self, service: str) -> int:
        """Watch the active color for the monitoring window.

        Returns the number of successful checks. On failure the previous
        color is restored before HealthCheckError(rolled_back=True) is raised.
        """
        name, topology = self._load(service)
        with self._locked(name):
            state = self.states.load(name)
            color = state.active_color
            interval = self.config.MONITOR_INTERVAL_SECONDS
            checks = max(1, self.config.MONITOR_DURATION_SECONDS // interval)
            required = min(self.config.MONITOR_REQUIRED_SUCCESSES, checks)

            with self._phase("monitor", name, color):
                self.log(
                    f"  Monitoring {name}-{color.value}: {checks} checks every {interval}s "
                    f"({self.monitor_policy.value}, {required} required)"
                )
                successes = failures = 0
                for i in range(1, checks + 1):
                    health = self.prober.probe_color(topology, color, self.monitor_policy)
                    if health.healthy:
                        successes += 1
                        self.log(f"  Check {i}/{checks}: OK ({health.summary()})")
                    else:
                        failures += 1
                        self.log(f"  Check {i}/{checks}: FAILED ({health.summary()})", level="ERROR")
                        if failures > self.config.MONITOR_FAILURE_TOLERANCE:
                            break
                    if i < checks:
                        self.sleep(interval)

                if failures > self.config.MONITOR_FAILURE_TOLERANCE or successes < required:
                    reason = f"monitoring failed: {successes}/{checks} checks passed"
                    self.log(f"  {reason}, rolling back", level="ERROR")
                    try:
                        self.rollback(name, restore=color.other(), failed=color, reason="monitor")
                    except DeploymentError as e:
                        self.log(f"  ROLLBACK FAILED: {e}; manual intervention required", level="CRITICAL")
                        raise HealthCheckError(
                            f"{name}-{color.value} {reason}; rollback failed: {e}", rolled_back=True
                        ) from e
                    raise HealthCheckError(f"{name}-{color.value} {reason}", rolled_back=True)

                check_public_endpoint(topology, self.config, sleep=self.sleep, session=self.http_session)
                self.log(f"  Monitoring passed ({successes}/{checks})")
                return successes

    # ── Cleanup ───────────────────────────────────────────────────

    def cleanup(self, service: str) -> None:
        name, topology = self._load(service)
        with self._locked(name):
            state = self.states.load(name)
            inactive = state.inactive_color
            with self._phase("cleanup", name, inactive):
                self.log(f"  Retiring {name}-{inactive.value}")
                if not self._stop_color(topology, inactive):
                    self.log("  Cleanup could not stop every container; continuing", level="WARNING")

                state.set_record(inactive, status=ColorStatus.STOPPED, deployed_at=None, version=None)
                self.states.save_verified(name, state)

                try:
                    self.switcher.refresh(topology, state.active_color)
                except (SwitchError, CommandError) as e:
                    self.log(f"  Could not refresh {topology.domain} config after cleanup: {e}", level="WARNING")

    # ── Rollback ──────────────────────────────────────────────────

    def rollback(self, service: str, restore: Color = None, failed: Color = None, reason: str = "manual") -> None:
        name, topology = self._load(service)
        with self._locked(name):
            state = self.states.load(name)
            failed = Color(failed) if failed else state.active_color
            restore = Color(restore) if restore else failed.other()
            if restore is failed:
                raise DeploymentError(f"Cannot roll back {name} from {failed.value} to itself")

            with self._phase("rollback", name, restore):
                self.banner(f"ROLLBACK {name}: {failed.value} -> {restore.value} ({reason})")

                if not self._color_running(topology, restore):
                    self.log(f"  {restore.value} not fully running, starting it...")
                    try:
                        self._start_color(topology, restore)
                        self.sleep(self.startup_delay(topology))
                    except ContainerStartError as e:
                        self.log(f"  {e}", level="ERROR")

                # Raises if even the rollback switch fails; containers are left as they are
                self.switcher.switch(topology, restore)

                self._stop_color(topology, failed)

                # Drop the stopped color's backup servers from the live document
                try:
                    self.switcher.refresh(topology, restore)
                except (SwitchError, CommandError) as e:
                    self.log(f"  Could not refresh {topology.domain} config after rollback: {e}", level="WARNING")

                now = utcnow()
                state = self.states.load(name)
                state.active_color = restore
                state.set_record(failed, status=ColorStatus.STOPPED)
                state.set_record(restore, status=ColorStatus.RUNNING)
                state.last_deployment = LastDeployment(color=failed, timestamp=now, success=False)
                state.add_history(
                    HistoryEntry(from_color=failed, to_color=restore, success=False, rollback=True, error=reason),
                    limit=self.config.HISTORY_LIMIT,
                )
                self.states.save_verified(name, state)
                metrics.record_rollback(name, reason)
                metrics.set_active_color(name, restore.value)

                self.banner(f"ROLLBACK COMPLETE: {restore.value} is now active")

    def _safe_rollback(self, name: str, restore: Color, failed: Color, reason: str) -> None:
        try:
            self.rollback(name, restore=restore, failed=failed, reason=reason)
        except DeploymentError as e:
            self.log(f"  ROLLBACK FAILED: {e}; manual intervention required", level="CRITICAL")

    # ── Full pipeline ─────────────────────────────────────────────

    def deploy(self, service: str, version: str = None) -> None:
        name, topology = self._load(service)
        deploy_start = time.time()
        with self._locked(name), self._abort_on_sigterm():
            state = self.states.load(name)
            previous, target = state.active_color, state.inactive_color
            self.banner(f"DEPLOY {name}: {previous.value} -> {target.value}")

            phase = "prepare"
            try:
                self.prepare(name, version=version)
                phase = "switch"
                self.switch_traffic(name)
                phase = "monitor"
                self.monitor(name)
                phase = "cleanup"
                try:
                    self.cleanup(name)
                except DeploymentError as e:
                    self.log(f"  Cleanup failed (non-fatal): {e}", level="WARNING")
            except (DeploymentError, KeyboardInterrupt) as exc:
                error = exc if isinstance(exc, DeploymentError) else DeploymentAborted("Deployment interrupted")
                if phase in ("switch", "monitor") and not getattr(error, "rolled_back", False):
                    self._safe_rollback(name, restore=previous, failed=target, reason=phase)
                self._record_outcome(name, previous, target, deploy_start, False, version, f"{phase}: {error}")
                metrics.record_deployment(name, f"failed-{phase}")
                self.banner(f"DEPLOY FAILED in {phase}: {error}")
                if error is exc:
                    raise
                raise error from exc

            self._record_outcome(name, previous, target, deploy_start, True, version)
            metrics.record_deployment(name, "success")
            self.banner(f"DEPLOY COMPLETE: {target.value} is live ({round(time.time() - deploy_start, 1)}s)")

    def _record_outcome(self, name, previous, target, started, success, version=None, error=None):
        try:
            state = self.states.load(name)
            state.add_history(
                HistoryEntry(
                    from_color=previous,
                    to_color=target,
                    success=success,
                    version=version,
                    duration_seconds=round(time.time() - started, 1),
                    error=error,
                ),
                limit=self.config.HISTORY_LIMIT,
            )
            self.states.save(name, state)
        except DeploymentError as e:
            self.log(f"  Could not record deployment history: {e}", level="WARNING")

    @contextmanager
    def _abort_on_sigterm(self):
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        previous = signal.signal(signal.SIGTERM, _raise_aborted)
        try:
            yield
        finally:
            signal.signal(signal.SIGTERM, previous)

    # ── Standalone checks ─────────────────────────────────────────

    def health_check(self, service: str) -> bool:
        """One monitor-policy pass on the active color; rolls back on failure."""
        name, topology = self._load(service)
        with self._locked(name):
            state = self.states.load(name)
            color = state.active_color
            with self._phase("health-check", name, color):
                health = self.prober.probe_color(topology, color, self.monitor_policy)
                if not health.healthy:
                    self.log(f"  {name}-{color.value} unhealthy ({health.summary()}), rolling back", level="ERROR")
                    self.rollback(name, restore=color.other(), failed=color, reason="health-check")
                    raise HealthCheckError(f"{name}-{color.value} unhealthy", rolled_back=True)
                check_public_endpoint(topology, self.config, sleep=self.sleep, session=self.http_session)
                return True

    def reconcile(self, service: str) -> bool:
        """Returns True when the pointer had to be moved."""
        name, topology = self._load(service)
        with self._locked(name):
            state = self.states.load(name)
            with self._phase("reconcile", name, state.active_color):
                return self.switcher.reconcile(topology, state.active_color) is not None

    # ── Status & History ──────────────────────────────────────────

    def status(self, service: str) -> None:
        name, topology = self._load(service)
        state = self.states.load(name)
        pointer = self.layout.current_color(topology.domain)
        try:
            containers = {c.name: c for c in self.runtime.list_containers()}
        except CommandError as e:
            self.log(f"  Cannot list containers: {e}", level="WARNING")
            containers = {}

        print(f"\n{'=' * 50}")
        print(f"  {name} ({topology.domain})")
        print(f"{'=' * 50}")
        print(f"  Active:      {state.active_color.value}")
        print(f"  nginx:       {pointer.value if pointer else 'no pointer'}"
              + ("" if pointer is state.active_color else "  (out of sync, run reconcile)"))
        last = state.last_deployment
        print(f"  Last Deploy: {last.timestamp or 'never'} ({last.color.value}, "
              f"{'ok' if last.success else 'failed'})")
        print()
        for color in Color:
            record = state.record(color)
            print(f"  {color.value:6} {record.status.value:8} deployed={record.deployed_at or '-'} "
                  f"version={record.version or '-'}")
            for container in topology.container_names(color):
                info = containers.get(container)
                print(f"      {container}: {info.status if info else 'absent'}")
        print(f"{'=' * 50}\n")

    def show_history(self, service: str) -> None:
        name, _ = self._load(service)
        history = self.states.load(name).history

        if not history:
            print("No deployment history.")
            return

        print(f"\n{'=' * 70}")
        print(f"  Deployment History for {name} (last {len(history)} entries)")
        print(f"{'=' * 70}")
        for i, entry in enumerate(reversed(history), 1):
            status = "OK" if entry.success else "FAILED"
            rollback = " [ROLLBACK]" if entry.rollback else ""
            error = f" - {entry.error}" if entry.error else ""
            duration = f"{entry.duration_seconds}s" if entry.duration_seconds is not None else "-"
            print(
                f"  {i}. [{status}{rollback}] "
                f"{entry.from_color.value} -> {entry.to_color.value} "
                f"| {duration} | {entry.timestamp}{error}"
            )
        print(f"{'=' * 70}\n")


COMMANDS = [
    "deploy", "prepare", "switch", "monitor", "cleanup", "rollback",
    "health-check", "reconcile", "status", "history",
]


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Blue/Green Deployment Orchestrator")
    parser.add_argument("command", choices=COMMANDS, help="Command to execute")
    parser.add_argument("service", help="Service name or domain from the service registry")
    parser.add_argument("--version", dest="release", default=None, help="Version label recorded in state")
    parser.add_argument(
        "--project-root",
        default=None,
        help="Path to project root (default: PROJECT_ROOT or current directory)",
    )
    args = parser.parse_args(argv)

    config = Settings(PROJECT_ROOT=args.project_root) if args.project_root else default_settings
    setup_logging(config)
    manager = ColorLifecycleManager(config)

    try:
        if args.command == "deploy":
            manager.deploy(args.service, version=args.release)
        elif args.command == "prepare":
            manager.prepare(args.service, version=args.release)
        elif args.command == "switch":
            manager.switch_traffic(args.service)
        elif args.command == "monitor":
            manager.monitor(args.service)
        elif args.command == "cleanup":
            manager.cleanup(args.service)
        elif args.command == "rollback":
            manager.rollback(args.service)
        elif args.command == "health-check":
            manager.health_check(args.service)
        elif args.command == "reconcile":
            manager.reconcile(args.service)
        elif args.command == "status":
            manager.status(args.service)
        elif args.command == "history":
            manager.show_history(args.service)
    except DeploymentError as e:
        print(f"\nDeployment error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        return 130
    finally:
        metrics.flush(config.METRICS_TEXTFILE)
    return 0


if __name__ == "__main__":
    sys.exit(main())
