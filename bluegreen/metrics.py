import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile

logger = logging.getLogger(__name__)

registry = CollectorRegistry()

# ── Metric definitions ──

deployments_total = Counter(
    "bluegreen_deployments_total",
    "Deployments by final outcome",
    ["service", "outcome"],
    registry=registry,
)

rollbacks_total = Counter(
    "bluegreen_rollbacks_total",
    "Rollbacks performed",
    ["service", "reason"],
    registry=registry,
)

phase_duration_seconds = Histogram(
    "bluegreen_phase_duration_seconds",
    "Time spent in each lifecycle phase",
    ["phase"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1200],
    registry=registry,
)

build_decisions_total = Counter(
    "bluegreen_build_decisions_total",
    "Build planner decisions per sub-service",
    ["decision"],
    registry=registry,
)

health_probes_total = Counter(
    "bluegreen_health_probes_total",
    "Health probe verdicts per sub-service",
    ["result"],
    registry=registry,
)

active_color = Gauge(
    "bluegreen_active_color",
    "Active color per service (1 for the live color, 0 otherwise)",
    ["service", "color"],
    registry=registry,
)


# ── Helper functions ──

def record_deployment(service: str, outcome: str):
    deployments_total.labels(service=service, outcome=outcome).inc()


def record_rollback(service: str, reason: str):
    rollbacks_total.labels(service=service, reason=reason).inc()


def observe_phase(phase: str, duration_seconds: float):
    phase_duration_seconds.labels(phase=phase).observe(duration_seconds)


def record_build_decision(decision: str):
    build_decisions_total.labels(decision=decision).inc()


def record_probe(healthy: bool):
    health_probes_total.labels(result="healthy" if healthy else "unhealthy").inc()


def set_active_color(service: str, color: str):
    """Flip the active-color gauge so exactly one color reads 1."""
    for candidate in ("blue", "green"):
        active_color.labels(service=service, color=candidate).set(1 if candidate == color else 0)


def flush(path) -> None:
    """Write the registry for the node-exporter textfile collector, if configured."""
    if not path:
        return
    try:
        write_to_textfile(str(path), registry)
    except OSError as e:
        logger.warning(f"Could not write metrics to {path}: {e}")
