from __future__ import annotations

from prometheus_client import REGISTRY, Counter, Histogram, write_to_textfile

_SERVICE_DEPLOYS = Counter(
    "deployctl_service_deploys_total",
    "Service deployment attempts by outcome",
    labelnames=("result",),
)
_HEALTH_CHECKS = Counter(
    "deployctl_health_checks_total",
    "Control plane health probes",
    labelnames=("result",),
)
_ROLLBACKS = Counter(
    "deployctl_rollbacks_total",
    "Rollbacks performed",
    labelnames=("result",),
)
_STATE_WRITES = Counter(
    "deployctl_state_writes_total",
    "State store writes",
    labelnames=("backend", "kind", "result"),
)
_CONTROL_PLANE_OPS = Counter(
    "deployctl_control_plane_operations_total",
    "Control plane command executions",
    labelnames=("action", "result"),
)
_RUNS = Counter(
    "deployctl_runs_total",
    "Orchestrator runs",
    labelnames=("result",),
)
_RUN_DURATION = Histogram(
    "deployctl_run_duration_seconds",
    "Orchestrator run duration seconds",
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0),
)


def record_service_deploy(*, result: str) -> None:
    _SERVICE_DEPLOYS.labels(result=result).inc()


def record_health_check(*, healthy: bool) -> None:
    _HEALTH_CHECKS.labels(result="healthy" if healthy else "unhealthy").inc()


def record_rollback(*, ok: bool) -> None:
    _ROLLBACKS.labels(result="ok" if ok else "error").inc()


def record_state_write(*, backend: str, kind: str, ok: bool) -> None:
    _STATE_WRITES.labels(backend=backend, kind=kind, result="ok" if ok else "error").inc()


def record_control_plane_operation(*, action: str, ok: bool) -> None:
    _CONTROL_PLANE_OPS.labels(action=action, result="ok" if ok else "error").inc()


def observe_run(*, ok: bool, duration_seconds: float) -> None:
    _RUNS.labels(result="ok" if ok else "error").inc()
    _RUN_DURATION.observe(duration_seconds)


def write_metrics_textfile(path: str) -> None:
    write_to_textfile(path, REGISTRY)
