from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from deployctl.db import session_scope
from deployctl.errors import StoreIOError
from deployctl.logger import get_logger
from deployctl.models import Base, Deployment, DeploymentSnapshot, DeploymentStateMeta
from deployctl.schemas.deployments import (
    DeploymentRecord,
    DeploymentState,
    HistoricalSnapshot,
)

_logger = get_logger("services.sql_backend")

_CURRENT_ID = "current"
_PAGE_SIZE = 100


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_record(row: Deployment) -> DeploymentRecord:
    return DeploymentRecord(
        service_name=row.service_name,
        status=row.status,
        environment=row.environment,
        version=row.version,
        health=row.health,
        metrics=dict(row.metrics or {}),
        configuration=dict(row.configuration or {}),
        timestamp=_as_utc(row.timestamp),
        last_health_check=_as_utc(row.last_health_check),
    )


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    _logger.info("schema.create", "Ensured deployment tables exist")


class SqlStateBackend:
    """Relational storage: one ``deployments`` row per service, a single
    ``deployment_state`` row for document metadata, and one
    ``deployment_snapshots`` row per mutation."""

    name = "sql"

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def load_current(self) -> Optional[DeploymentState]:
        try:
            async with session_scope(self._sessionmaker, "load_current") as session:
                meta = await session.get(DeploymentStateMeta, _CURRENT_ID)
                if meta is None:
                    return None
                result = await session.execute(
                    select(Deployment).order_by(Deployment.service_name.asc())
                )
                rows = list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StoreIOError("read", str(exc)) from exc

        try:
            return DeploymentState(
                deployments={row.service_name: _to_record(row) for row in rows},
                last_update=_as_utc(meta.last_update),
                version=meta.version,
            )
        except SchemaError as exc:
            raise StoreIOError("decode", f"current state: {exc}") from exc

    async def save_current(self, state: DeploymentState) -> None:
        try:
            async with session_scope(self._sessionmaker, "save_current") as session:
                result = await session.execute(select(Deployment))
                existing = {row.service_name: row for row in result.scalars().all()}
                for name, record in state.deployments.items():
                    payload = record.model_dump(mode="json")
                    row = existing.get(name)
                    if row is None:
                        row = Deployment(service_name=name)
                        session.add(row)
                    row.status = record.status.value
                    row.environment = record.environment
                    row.version = record.version
                    row.health = record.health.value
                    row.metrics = payload["metrics"]
                    row.configuration = payload["configuration"]
                    row.timestamp = record.timestamp
                    row.last_health_check = record.last_health_check

                meta = await session.get(DeploymentStateMeta, _CURRENT_ID)
                if meta is None:
                    meta = DeploymentStateMeta(id=_CURRENT_ID)
                    session.add(meta)
                meta.last_update = state.last_update
                meta.version = state.version
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreIOError("write", str(exc)) from exc

    async def append_snapshot(self, snapshot: HistoricalSnapshot) -> None:
        try:
            async with session_scope(self._sessionmaker, "append_snapshot") as session:
                session.add(
                    DeploymentSnapshot(
                        id=snapshot.id,
                        created_at=snapshot.created_at,
                        state=snapshot.state.model_dump(mode="json"),
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreIOError("append", str(exc)) from exc

    async def iter_snapshots(self) -> AsyncIterator[HistoricalSnapshot]:
        offset = 0
        while True:
            try:
                async with session_scope(self._sessionmaker, "iter_snapshots") as session:
                    result = await session.execute(
                        select(DeploymentSnapshot)
                        .order_by(DeploymentSnapshot.created_at.desc(), DeploymentSnapshot.id.desc())
                        .offset(offset)
                        .limit(_PAGE_SIZE)
                    )
                    rows = list(result.scalars().all())
            except SQLAlchemyError as exc:
                raise StoreIOError("read", str(exc)) from exc

            for row in rows:
                try:
                    snapshot = HistoricalSnapshot(
                        id=row.id,
                        created_at=_as_utc(row.created_at),
                        state=DeploymentState.model_validate(row.state),
                    )
                except SchemaError as exc:
                    raise StoreIOError("decode", f"snapshot {row.id}: {exc}") from exc
                yield snapshot
            if len(rows) < _PAGE_SIZE:
                return
            offset += _PAGE_SIZE

    async def delete_snapshots_before(self, cutoff: datetime) -> int:
        try:
            async with session_scope(self._sessionmaker, "delete_snapshots_before") as session:
                result = await session.execute(
                    delete(DeploymentSnapshot)
                    .where(DeploymentSnapshot.created_at < cutoff)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreIOError("delete", str(exc)) from exc
        deleted = int(result.rowcount or 0)
        if deleted:
            _logger.info("history.prune", "Deleted snapshot rows", deleted=deleted)
        return deleted
