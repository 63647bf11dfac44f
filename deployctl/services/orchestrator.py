from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Dict, List, Optional

from deployctl.errors import (
    ConfigurationError,
    ControlPlaneError,
    DeploymentCancelledError,
    HealthCheckTimeoutError,
    ServiceDeployError,
    ValidationError,
)
from deployctl.logger import get_logger
from deployctl.metrics import observe_run, record_health_check, record_rollback, record_service_deploy
from deployctl.schemas.deployments import (
    DeploymentRecord,
    DeploymentStatus,
    DeploymentUpdate,
    HealthStatus,
)
from deployctl.services.config_provider import ConfigurationProvider
from deployctl.services.control_plane import ServiceControlPlane
from deployctl.services.monitor import Monitor
from deployctl.services.resolver import resolve_order
from deployctl.services.state_store import DeploymentStateStore

_logger = get_logger("services.orchestrator")

ROLLED_BACK_VERSION = "0.0.0"


class DeployOutcome(str, Enum):
    DEPLOYED = "deployed"
    ALREADY_DEPLOYED = "already_deployed"


@dataclass
class DeploymentRun:
    ok: bool = False
    order: List[str] = field(default_factory=list)
    deployed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed_service: Optional[str] = None
    rolled_back: Optional[bool] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "ok": self.ok,
            "order": list(self.order),
            "deployed": list(self.deployed),
            "skipped": list(self.skipped),
            "failed_service": self.failed_service,
            "rolled_back": self.rolled_back,
            "error": self.error,
        }


class DeploymentOrchestrator:
    """Deploys configured services in dependency order.

    Services are deployed one at a time. The first failure rolls back that
    service only and ends the run; services later in the order are never
    attempted. A successful run is validated and then hands over to the
    monitor.
    """

    def __init__(
        self,
        *,
        config_provider: ConfigurationProvider,
        control_plane: ServiceControlPlane,
        store: DeploymentStateStore,
        monitor: Monitor,
        health_check_attempts: int = 5,
        health_check_interval: float = 5.0,
        health_check_timeout: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        self._config = config_provider
        self._control_plane = control_plane
        self._store = store
        self._monitor = monitor
        self._health_check_attempts = health_check_attempts
        self._health_check_interval = health_check_interval
        self._health_check_timeout = health_check_timeout or None
        self._stop_event = stop_event
        self._state: Dict[str, DeploymentRecord] = {}

    def get_deployment_state(self) -> Dict[str, DeploymentRecord]:
        return dict(self._state)

    async def deploy_services(self) -> bool:
        run = await self.run()
        return run.ok

    async def run(self) -> DeploymentRun:
        run = DeploymentRun()
        started = perf_counter()
        async with _logger.operation(
            "deploy.run",
            "Deploying configured services",
            environment=self._config.environment,
        ) as op:
            try:
                services = self._config.get_all_services()
                run.order = resolve_order(services)
                op.step("order.resolve", "Resolved deployment order", order=",".join(run.order))

                for name in run.order:
                    try:
                        outcome = await self.deploy_service(name)
                    except asyncio.CancelledError:
                        self._notify("error", f"Deployment of service {name} was cancelled", service=name)
                        await self.rollback_deployment(name)
                        raise
                    except Exception as exc:  # noqa: BLE001
                        run.failed_service = name
                        run.error = str(exc)
                        self._notify(
                            "error",
                            f"Failed to deploy service {name}: {exc}",
                            service=name,
                            error_type=type(exc).__name__,
                        )
                        op.step_error("service.deploy", "Service deployment failed", service=name)
                        run.rolled_back = await self.rollback_deployment(name)
                        remaining = run.order[run.order.index(name) + 1:]
                        if remaining:
                            op.step_warning(
                                "run.abort",
                                "Skipped remaining services",
                                services=",".join(remaining),
                            )
                        return run

                    if outcome is DeployOutcome.ALREADY_DEPLOYED:
                        run.skipped.append(name)
                    else:
                        run.deployed.append(name)
                    op.child("service.deploy", name, "Service is live", outcome=outcome.value)

                await self.validate_deployment()
                op.step("deployment.validate", "Validated deployment")
                await self._monitor.start_monitoring()
                op.step("monitor.start", "Started monitoring")
                run.ok = True
            except Exception as exc:  # noqa: BLE001
                run.error = str(exc)
                self._notify(
                    "error",
                    f"Deployment failed: {exc}",
                    error_type=type(exc).__name__,
                )
            finally:
                observe_run(ok=run.ok, duration_seconds=perf_counter() - started)
        return run

    def _notify(self, level: str, message: str, **fields: object) -> None:
        # Never raises; a failing sink is logged locally instead.
        sink = self._monitor.log_error if level == "error" else self._monitor.log_info
        try:
            sink(message, **fields)
        except Exception as exc:  # noqa: BLE001
            _logger.warning(
                "monitor.notify",
                "Monitor rejected a message",
                dropped=message,
                monitor_error=f"{type(exc).__name__}: {exc}",
                **fields,
            )

    async def is_service_deployed(self, name: str) -> bool:
        record = await self._store.get_deployment_status(name)
        return record is not None and record.is_live

    def _environment_for(self, name: str) -> str:
        try:
            service = self._config.get_service_config(name)
        except ConfigurationError:
            return self._config.environment
        return service.environment or self._config.environment

    async def _check_dependencies(self, name: str, dependencies: List[str]) -> None:
        if not dependencies:
            return
        deployments = await self._store.get_all_deployments()
        for dependency in dependencies:
            record = deployments.get(dependency)
            if record is None or record.status != DeploymentStatus.DEPLOYED:
                raise ServiceDeployError(name, f"dependency {dependency} is not deployed")

    async def deploy_service(self, name: str) -> DeployOutcome:
        if await self.is_service_deployed(name):
            record = await self._store.get_deployment_status(name)
            if record is not None:
                self._state[name] = record
            self._monitor.log_info(f"Service {name} is already deployed", service=name)
            record_service_deploy(result="skipped")
            return DeployOutcome.ALREADY_DEPLOYED

        service = self._config.get_service_config(name)
        await self._check_dependencies(name, service.dependencies)

        self._monitor.log_info(f"Deploying service {name}", service=name, version=service.version)
        try:
            accepted = await self._control_plane.deploy(name, service)
        except ControlPlaneError as exc:
            record_service_deploy(result="error")
            raise ServiceDeployError(name, exc.detail) from exc
        if not accepted:
            record_service_deploy(result="error")
            raise ServiceDeployError(name, "control plane rejected the deployment")

        await self._store.track_deployment(
            name,
            DeploymentUpdate(
                status=DeploymentStatus.DEPLOYED,
                environment=self._environment_for(name),
                version=service.version,
                health=HealthStatus.PENDING,
                configuration=dict(service.config),
            ),
        )

        if not await self.wait_for_service_health(name):
            record_service_deploy(result="unhealthy")
            raise HealthCheckTimeoutError(name, self._health_check_attempts)

        record = await self._store.update_service_health(name, HealthStatus.HEALTHY)
        if record is not None:
            self._state[name] = record
        record_service_deploy(result="ok")
        self._monitor.log_info(f"Service {name} deployed and healthy", service=name)
        return DeployOutcome.DEPLOYED

    async def _pause(self, name: str, seconds: float) -> None:
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise DeploymentCancelledError(name)

    async def _poll_health(self, name: str, max_attempts: int, interval: float) -> bool:
        for attempt in range(1, max_attempts + 1):
            if self._stop_event is not None and self._stop_event.is_set():
                raise DeploymentCancelledError(name)
            try:
                healthy = await self._control_plane.is_service_healthy(name)
            except Exception as exc:  # noqa: BLE001
                _logger.warning(
                    "health.probe",
                    "Health probe raised; counting as unhealthy",
                    service=name,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                healthy = False
            record_health_check(healthy=healthy)
            if healthy:
                _logger.info("health.ok", "Service reported healthy", service=name, attempt=attempt)
                return True
            _logger.debug(
                "health.wait",
                "Service not healthy yet",
                service=name,
                attempt=attempt,
                max_attempts=max_attempts,
            )
            if attempt < max_attempts:
                await self._pause(name, interval)
        return False

    async def wait_for_service_health(
        self,
        name: str,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        """Poll the control plane until ``name`` reports healthy.

        Returns False once ``max_attempts`` probes have failed or ``timeout``
        seconds have elapsed (0 means no deadline). Setting the orchestrator's stop event raises
        DeploymentCancelledError instead.
        """
        attempts = max_attempts if max_attempts is not None else self._health_check_attempts
        pause = interval if interval is not None else self._health_check_interval
        deadline = timeout if timeout is not None else self._health_check_timeout

        if not deadline:
            healthy = await self._poll_health(name, attempts, pause)
        else:
            try:
                healthy = await asyncio.wait_for(self._poll_health(name, attempts, pause), timeout=deadline)
            except asyncio.TimeoutError:
                healthy = False
        if not healthy:
            _logger.warning(
                "health.exhausted",
                "Service never reported healthy",
                service=name,
                max_attempts=attempts,
                timeout_seconds=deadline or 0,
            )
        return healthy

    async def rollback_deployment(self, name: str) -> bool:
        """Best-effort compensation for a failed deployment; never raises."""
        failures = 0
        async with _logger.operation("service.rollback", "Rolling back service", service=name) as op:
            self._notify("info", f"Rolling back deployment of service {name}", service=name)
            for step, action in (
                ("service.stop", self._control_plane.stop_service),
                ("service.remove", self._control_plane.remove_service),
            ):
                try:
                    await action(name)
                    op.step(step, "Rollback step succeeded")
                except Exception as exc:  # noqa: BLE001
                    failures += 1
                    op.step_warning(step, "Rollback step failed", error_type=type(exc).__name__, error=str(exc))

            self._state.pop(name, None)

            try:
                await self._store.track_deployment(
                    name,
                    DeploymentUpdate(
                        status=DeploymentStatus.ROLLED_BACK,
                        environment=self._environment_for(name),
                        version=ROLLED_BACK_VERSION,
                        health=HealthStatus.UNKNOWN,
                    ),
                )
                op.step("state.track", "Recorded rolled back state")
            except Exception as exc:  # noqa: BLE001
                failures += 1
                op.step_warning(
                    "state.track",
                    "Could not record rolled back state",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        ok = failures == 0
        record_rollback(ok=ok)
        if ok:
            self._notify("info", f"Successfully rolled back service {name}", service=name)
        else:
            self._notify(
                "error",
                f"Rollback of service {name} finished with {failures} failed steps",
                service=name,
            )
        return ok

    async def validate_deployment(self) -> None:
        services = self._config.get_all_services()
        deployments = await self._store.get_all_deployments()
        for name, service in services.items():
            reasons: List[str] = []
            record = deployments.get(name)
            if record is None or record.status != DeploymentStatus.DEPLOYED:
                reasons.append("not tracked as deployed")
            if not await self._control_plane.is_service_healthy(name):
                reasons.append("control plane reports unhealthy")
            for dependency in service.dependencies:
                dependency_record = deployments.get(dependency)
                if dependency_record is None or dependency_record.status != DeploymentStatus.DEPLOYED:
                    reasons.append(f"dependency {dependency} is not deployed")
            if reasons:
                raise ValidationError(name, reasons)
