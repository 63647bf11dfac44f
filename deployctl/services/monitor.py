from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol

from deployctl.logger import BoundLogger, get_logger
from deployctl.metrics import record_health_check
from deployctl.schemas.deployments import DeploymentStatus, HealthStatus
from deployctl.services.control_plane import ServiceControlPlane
from deployctl.services.state_store import DeploymentStateStore

_logger = get_logger("services.monitor")


class Monitor(Protocol):
    def log_info(self, message: str, **fields: Any) -> None: ...

    def log_error(self, message: str, **fields: Any) -> None: ...

    async def start_monitoring(self) -> None: ...


class HealthMonitor:
    """Log sink for deployment runs and post-deploy health watcher.

    ``start_monitoring`` launches a background loop that re-probes every
    service tracked as deployed and writes the outcome back to the store.
    """

    def __init__(
        self,
        *,
        store: DeploymentStateStore,
        control_plane: ServiceControlPlane,
        interval_seconds: float = 60.0,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        self._store = store
        self._control_plane = control_plane
        self._interval_seconds = interval_seconds
        self._logger = logger or _logger
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._failures: Dict[str, int] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def failures(self) -> Dict[str, int]:
        return dict(self._failures)

    def log_info(self, message: str, **fields: Any) -> None:
        self._logger.info("deploy.info", message, **fields)

    def log_error(self, message: str, **fields: Any) -> None:
        self._logger.error("deploy.error", message, **fields)

    async def start_monitoring(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())
        self._logger.info(
            "monitor.start",
            "Started health monitoring",
            interval_seconds=self._interval_seconds,
        )

    async def stop(self) -> None:
        self._stop.set()
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self._logger.info("monitor.stop", "Stopped health monitoring")

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def check_once(self) -> Dict[str, HealthStatus]:
        results: Dict[str, HealthStatus] = {}
        deployments = await self._store.get_all_deployments()
        for name, record in deployments.items():
            if record.status != DeploymentStatus.DEPLOYED:
                continue
            try:
                healthy = await self._control_plane.is_service_healthy(name)
            except Exception as exc:  # noqa: BLE001
                self._logger.warning(
                    "monitor.probe",
                    "Health probe raised",
                    service=name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                healthy = False
            record_health_check(healthy=healthy)

            if healthy:
                self._failures[name] = 0
            else:
                self._failures[name] = self._failures.get(name, 0) + 1
                self._logger.warning(
                    "monitor.unhealthy",
                    "Service reported unhealthy",
                    service=name,
                    consecutive_failures=self._failures[name],
                )

            status = HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY
            if status != record.health or not healthy:
                await self._store.update_service_health(
                    name,
                    status,
                    {"consecutive_failures": self._failures[name]},
                )
            results[name] = status
        return results

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.check_once()
            except Exception as exc:  # noqa: BLE001
                self._logger.exception(
                    "monitor.loop",
                    "Health monitoring pass failed",
                    error_type=type(exc).__name__,
                )
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval_seconds)
            except asyncio.TimeoutError:
                continue
