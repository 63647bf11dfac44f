from __future__ import annotations

import itertools
from contextlib import aclosing
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Protocol
from uuid import uuid4

from deployctl.config import Settings
from deployctl.db import get_sessionmaker
from deployctl.errors import ConfigurationError, StoreIOError
from deployctl.logger import get_logger
from deployctl.metrics import record_state_write
from deployctl.schemas.deployments import (
    DeploymentRecord,
    DeploymentState,
    DeploymentUpdate,
    HealthStatus,
    HistoricalSnapshot,
    utcnow,
)
from deployctl.services.config_provider import ConfigurationProvider
from deployctl.services.file_backend import FileStateBackend
from deployctl.services.sql_backend import SqlStateBackend

_logger = get_logger("services.state_store")

_REQUIRED_FIELDS = ("status", "timestamp", "environment", "version", "health")
_SNAPSHOT_SEQUENCE = itertools.count(1)


class StateBackend(Protocol):
    name: str

    async def load_current(self) -> Optional[DeploymentState]: ...

    async def save_current(self, state: DeploymentState) -> None: ...

    async def append_snapshot(self, snapshot: HistoricalSnapshot) -> None: ...

    def iter_snapshots(self) -> AsyncIterator[HistoricalSnapshot]: ...

    async def delete_snapshots_before(self, cutoff: datetime) -> int: ...


def new_snapshot_id(created_at: datetime) -> str:
    # Timestamp first so ids sort chronologically; the process counter orders
    # ids sharing a microsecond and the random tail separates processes.
    stamp = created_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{stamp}-{next(_SNAPSHOT_SEQUENCE):08d}-{uuid4().hex[:8]}"


def get_state_backend(settings: Settings) -> StateBackend:
    if settings.state_backend == "sql":
        return SqlStateBackend(get_sessionmaker(settings.database_url))
    return FileStateBackend(settings.state_dir)


class DeploymentStateStore:
    """Current per-service deployment records plus an append-only snapshot log.

    Every mutation writes the full current document first and then appends
    exactly one snapshot of it. A missing current document is created empty on
    first use.
    """

    def __init__(
        self,
        backend: StateBackend,
        *,
        environment: str,
        config_provider: Optional[ConfigurationProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._backend = backend
        self._environment = environment
        self._config_provider = config_provider
        self._clock = clock

    @property
    def backend(self) -> StateBackend:
        return self._backend

    async def _load(self) -> DeploymentState:
        state = await self._backend.load_current()
        if state is None:
            state = DeploymentState(last_update=self._clock())
            await self._save(state)
            _logger.info("state.init", "Created empty deployment state", backend=self._backend.name)
        return state

    async def _save(self, state: DeploymentState) -> None:
        try:
            await self._backend.save_current(state)
        except StoreIOError:
            record_state_write(backend=self._backend.name, kind="current", ok=False)
            raise
        record_state_write(backend=self._backend.name, kind="current", ok=True)

    async def _commit(self, state: DeploymentState) -> HistoricalSnapshot:
        now = self._clock()
        state.last_update = now
        await self._save(state)

        snapshot = HistoricalSnapshot(
            id=new_snapshot_id(now),
            created_at=now,
            state=state.model_copy(deep=True),
        )
        try:
            await self._backend.append_snapshot(snapshot)
        except StoreIOError:
            record_state_write(backend=self._backend.name, kind="snapshot", ok=False)
            raise
        record_state_write(backend=self._backend.name, kind="snapshot", ok=True)
        return snapshot

    async def track_deployment(
        self,
        service_name: str,
        data: DeploymentUpdate | Mapping[str, Any],
    ) -> DeploymentRecord:
        update = data if isinstance(data, DeploymentUpdate) else DeploymentUpdate.model_validate(data)
        state = await self._load()
        record = DeploymentRecord(
            service_name=service_name,
            status=update.status,
            environment=update.environment,
            version=update.version,
            health=update.health,
            metrics=dict(update.metrics),
            configuration=dict(update.configuration),
            timestamp=self._clock(),
        )
        state.deployments[service_name] = record
        snapshot = await self._commit(state)
        _logger.info(
            "deployment.track",
            "Tracked deployment",
            service=service_name,
            status=record.status.value,
            health=record.health.value,
            version=record.version,
            snapshot_id=snapshot.id,
        )
        return record

    async def update_service_health(
        self,
        service_name: str,
        status: HealthStatus,
        metrics: Optional[Mapping[str, Any]] = None,
    ) -> Optional[DeploymentRecord]:
        state = await self._load()
        current = state.deployments.get(service_name)
        if current is None:
            _logger.debug("health.skip", "No deployment record to update", service=service_name)
            return None

        changes: Dict[str, Any] = {"health": HealthStatus(status), "last_health_check": self._clock()}
        if metrics is not None:
            changes["metrics"] = dict(metrics)
        record = current.model_copy(update=changes)
        state.deployments[service_name] = record
        await self._commit(state)
        _logger.info(
            "health.update",
            "Updated service health",
            service=service_name,
            health=record.health.value,
        )
        return record

    async def get_deployment_status(self, service_name: str) -> Optional[DeploymentRecord]:
        state = await self._load()
        return state.deployments.get(service_name)

    async def get_all_deployments(self) -> Dict[str, DeploymentRecord]:
        state = await self._load()
        return dict(state.deployments)

    async def get_state(self) -> DeploymentState:
        return await self._load()

    async def get_deployment_history(self, service_name: str, limit: int = 10) -> List[DeploymentRecord]:
        if limit <= 0:
            return []
        entries: List[DeploymentRecord] = []
        async with aclosing(self._backend.iter_snapshots()) as snapshots:
            async for snapshot in snapshots:
                record = snapshot.state.deployments.get(service_name)
                if record is None:
                    continue
                entries.append(record)
                if len(entries) >= limit:
                    break
        return entries

    async def list_snapshots(self, limit: int = 20) -> List[HistoricalSnapshot]:
        if limit <= 0:
            return []
        snapshots: List[HistoricalSnapshot] = []
        async with aclosing(self._backend.iter_snapshots()) as stream:
            async for snapshot in stream:
                snapshots.append(snapshot)
                if len(snapshots) >= limit:
                    break
        return snapshots

    async def cleanup_old_history(self, days_to_keep: int = 30) -> int:
        if days_to_keep < 0:
            raise ValueError("days_to_keep must not be negative")
        cutoff = self._clock() - timedelta(days=days_to_keep)
        deleted = await self._backend.delete_snapshots_before(cutoff)
        _logger.info(
            "history.cleanup",
            "Cleaned up deployment history",
            days_to_keep=days_to_keep,
            cutoff=cutoff.isoformat(),
            deleted=deleted,
        )
        return deleted

    def _declared_environment(self, service_name: str) -> str:
        if self._config_provider is None:
            return self._environment
        service = self._config_provider.get_service_config(service_name)
        return service.environment or self._config_provider.environment

    async def validate_deployment(self, service_name: str) -> bool:
        try:
            record = await self.get_deployment_status(service_name)
            expected_environment = self._declared_environment(service_name)
        except (StoreIOError, ConfigurationError) as exc:
            _logger.warning(
                "deployment.validate",
                "Could not validate deployment record",
                service=service_name,
                error_type=type(exc).__name__,
                error=exc.detail,
            )
            return False

        if record is None:
            _logger.info("deployment.validate", "No deployment record", service=service_name)
            return False

        missing = [name for name in _REQUIRED_FIELDS if not getattr(record, name, None)]
        if missing:
            _logger.info(
                "deployment.validate",
                "Deployment record is missing required fields",
                service=service_name,
                missing=",".join(missing),
            )
            return False

        if record.environment != expected_environment:
            _logger.info(
                "deployment.validate",
                "Deployment environment mismatch",
                service=service_name,
                recorded=record.environment,
                expected=expected_environment,
            )
            return False
        return True
