"""Tests for the deployment state store against both backends."""

import json

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from deployctl.db import create_state_engine
from deployctl.errors import StoreIOError
from deployctl.models import Deployment, DeploymentSnapshot
from deployctl.schemas.deployments import (
    DeploymentStatus,
    DeploymentUpdate,
    HealthStatus,
)
from deployctl.services.config_provider import StaticConfigurationProvider
from deployctl.services.file_backend import FileStateBackend
from deployctl.services.sql_backend import SqlStateBackend, create_schema
from deployctl.services.state_store import DeploymentStateStore, new_snapshot_id
from tests.helpers.fakes import make_services


def _update(version: str = "1.0.0", **overrides) -> DeploymentUpdate:
    payload = {
        "status": DeploymentStatus.DEPLOYED,
        "environment": "test",
        "version": version,
        "health": HealthStatus.PENDING,
    }
    payload.update(overrides)
    return DeploymentUpdate(**payload)


class TestDeploymentStateStore:
    @pytest.mark.asyncio
    async def test_first_read_creates_empty_state_without_snapshot(self, store, backend):
        assert await store.get_all_deployments() == {}

        assert await backend.load_current() is not None
        assert await store.list_snapshots() == []

    @pytest.mark.asyncio
    async def test_track_deployment_stores_record(self, store, clock):
        record = await store.track_deployment("db", _update("15.2", configuration={"port": 5432}))

        stored = await store.get_deployment_status("db")
        assert stored == record
        assert stored.status is DeploymentStatus.DEPLOYED
        assert stored.health is HealthStatus.PENDING
        assert stored.version == "15.2"
        assert stored.configuration == {"port": 5432}
        assert stored.timestamp == clock.now

    @pytest.mark.asyncio
    async def test_track_accepts_plain_mapping(self, store):
        await store.track_deployment(
            "db",
            {"status": "rolled_back", "environment": "test", "version": "0.0.0"},
        )

        record = await store.get_deployment_status("db")
        assert record.status is DeploymentStatus.ROLLED_BACK
        assert record.health is HealthStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_each_mutation_appends_exactly_one_snapshot(self, store, clock):
        await store.track_deployment("db", _update())
        clock.advance(seconds=1)
        await store.track_deployment("api", _update())
        clock.advance(seconds=1)
        await store.update_service_health("db", HealthStatus.HEALTHY)

        snapshots = await store.list_snapshots()
        assert len(snapshots) == 3
        assert [sorted(s.state.deployments) for s in snapshots] == [
            ["api", "db"],
            ["api", "db"],
            ["db"],
        ]

    @pytest.mark.asyncio
    async def test_snapshots_are_not_rewritten_by_later_updates(self, store):
        await store.track_deployment("db", _update())
        await store.update_service_health("db", HealthStatus.HEALTHY)

        newest, oldest = await store.list_snapshots()
        assert newest.state.deployments["db"].health is HealthStatus.HEALTHY
        assert oldest.state.deployments["db"].health is HealthStatus.PENDING

    @pytest.mark.asyncio
    async def test_history_is_newest_first_and_limited(self, store, clock):
        for version in ("1.0.0", "1.1.0", "1.2.0"):
            await store.track_deployment("api", _update(version))
            clock.advance(minutes=5)

        history = await store.get_deployment_history("api", limit=2)

        assert [entry.version for entry in history] == ["1.2.0", "1.1.0"]

    @pytest.mark.asyncio
    async def test_history_for_unknown_service_is_empty(self, store):
        await store.track_deployment("db", _update())

        assert await store.get_deployment_history("ghost") == []
        assert await store.get_deployment_history("db", limit=0) == []

    @pytest.mark.asyncio
    async def test_update_health_without_record_is_a_no_op(self, store):
        assert await store.update_service_health("ghost", HealthStatus.HEALTHY) is None

        assert await store.list_snapshots() == []

    @pytest.mark.asyncio
    async def test_update_health_sets_check_time_and_metrics(self, store, clock):
        await store.track_deployment("db", _update(metrics={"old": 1}))
        clock.advance(seconds=30)

        record = await store.update_service_health("db", HealthStatus.UNHEALTHY, {"latency_ms": 12})

        assert record.health is HealthStatus.UNHEALTHY
        assert record.last_health_check == clock.now
        assert record.metrics == {"latency_ms": 12}
        stored = await store.get_deployment_status("db")
        assert stored.health is HealthStatus.UNHEALTHY
        assert stored.last_health_check == clock.now

    @pytest.mark.asyncio
    async def test_update_health_keeps_metrics_when_none_given(self, store):
        await store.track_deployment("db", _update(metrics={"rps": 40}))

        record = await store.update_service_health("db", HealthStatus.HEALTHY)

        assert record.metrics == {"rps": 40}

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_expired_snapshots(self, store, clock):
        await store.track_deployment("db", _update("1.0.0"))
        clock.advance(days=40)
        await store.track_deployment("db", _update("2.0.0"))

        deleted = await store.cleanup_old_history(days_to_keep=30)

        assert deleted == 1
        history = await store.get_deployment_history("db")
        assert [entry.version for entry in history] == ["2.0.0"]
        assert (await store.get_deployment_status("db")).version == "2.0.0"

    @pytest.mark.asyncio
    async def test_cleanup_with_nothing_expired(self, store):
        await store.track_deployment("db", _update())

        assert await store.cleanup_old_history() == 0

    @pytest.mark.asyncio
    async def test_cleanup_rejects_negative_retention(self, store):
        with pytest.raises(ValueError):
            await store.cleanup_old_history(days_to_keep=-1)

    @pytest.mark.asyncio
    async def test_validate_deployment(self, store):
        assert await store.validate_deployment("db") is False

        await store.track_deployment("db", _update())
        assert await store.validate_deployment("db") is True

        await store.track_deployment("api", _update(environment="prod"))
        assert await store.validate_deployment("api") is False

    @pytest.mark.asyncio
    async def test_validate_uses_declared_service_environment(self, backend, clock):
        services = make_services({"db": []})
        services["db"] = services["db"].model_copy(update={"environment": "staging"})
        store = DeploymentStateStore(
            backend,
            environment="test",
            config_provider=StaticConfigurationProvider(services, "test"),
            clock=clock,
        )
        await store.track_deployment("db", _update(environment="staging"))

        assert await store.validate_deployment("db") is True
        assert await store.validate_deployment("unknown") is False


class TestFileStateBackend:
    @pytest.mark.asyncio
    async def test_layout_on_disk(self, tmp_path, file_store):
        await file_store.track_deployment("db", _update())

        root = tmp_path / "state"
        current = json.loads((root / "current.json").read_text())
        assert current["deployments"]["db"]["status"] == "deployed"
        history = list((root / "history").glob("*.json"))
        assert len(history) == 1
        assert not list(root.rglob("*.tmp"))

    @pytest.mark.asyncio
    async def test_corrupt_current_document_raises(self, tmp_path):
        root = tmp_path / "state"
        root.mkdir()
        (root / "current.json").write_text('{"deployments": {"db": {"status": 7}}}')
        store = DeploymentStateStore(FileStateBackend(root), environment="test")

        with pytest.raises(StoreIOError) as excinfo:
            await store.get_all_deployments()

        assert excinfo.value.action == "store.decode"

    @pytest.mark.asyncio
    async def test_corrupt_store_fails_validation_quietly(self, tmp_path):
        root = tmp_path / "state"
        root.mkdir()
        (root / "current.json").write_text("not json")
        store = DeploymentStateStore(FileStateBackend(root), environment="test")

        assert await store.validate_deployment("db") is False

    @pytest.mark.asyncio
    async def test_undecodable_bytes_raise_store_error(self, tmp_path):
        """Bytes that are not UTF-8 surface as a store error, not a codec error."""
        root = tmp_path / "state"
        root.mkdir()
        (root / "current.json").write_bytes(b"\xff\xfe{garbage")
        store = DeploymentStateStore(FileStateBackend(root), environment="test")

        with pytest.raises(StoreIOError) as excinfo:
            await store.get_all_deployments()

        assert excinfo.value.action == "store.read"
        assert await store.validate_deployment("db") is False

    @pytest.mark.asyncio
    async def test_cleanup_skips_unreadable_recent_snapshot(self, tmp_path, file_store, clock):
        """Expiry comes from the snapshot id, so a damaged file does not stop pruning."""
        await file_store.track_deployment("db", _update("1.0.0"))
        clock.advance(days=40)
        await file_store.track_deployment("db", _update("2.0.0"))
        history_dir = tmp_path / "state" / "history"
        newest = max(history_dir.glob("*.json"), key=lambda item: item.name)
        newest.write_text("{broken")

        assert await file_store.cleanup_old_history(days_to_keep=30) == 1
        assert list(history_dir.glob("*.json")) == [newest]

    @pytest.mark.asyncio
    async def test_cleanup_falls_back_to_document_for_foreign_names(self, tmp_path, file_store, clock):
        await file_store.track_deployment("db", _update("1.0.0"))
        history_dir = tmp_path / "state" / "history"
        original = next(history_dir.glob("*.json"))
        original.rename(history_dir / "imported.json")
        (history_dir / "junk.json").write_text("{broken")
        clock.advance(days=40)

        assert await file_store.cleanup_old_history(days_to_keep=30) == 1
        assert [path.name for path in history_dir.glob("*.json")] == ["junk.json"]


class TestSqlStateBackend:
    @pytest_asyncio.fixture
    async def sql_store(self, tmp_path, clock):
        engine = create_state_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
        await create_schema(engine)
        sessionmaker = async_sessionmaker(bind=engine, expire_on_commit=False)
        try:
            yield DeploymentStateStore(SqlStateBackend(sessionmaker), environment="test", clock=clock), sessionmaker
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_invalid_row_raises_store_error(self, sql_store):
        """A row the schema rejects is reported as a decode failure."""
        store, sessionmaker = sql_store
        await store.track_deployment("db", _update())
        async with sessionmaker() as session:
            await session.execute(update(Deployment).values(status="bogus"))
            await session.commit()

        with pytest.raises(StoreIOError) as excinfo:
            await store.get_all_deployments()

        assert excinfo.value.action == "store.decode"
        assert await store.validate_deployment("db") is False

    @pytest.mark.asyncio
    async def test_invalid_snapshot_raises_store_error(self, sql_store, clock):
        store, sessionmaker = sql_store
        async with sessionmaker() as session:
            session.add(
                DeploymentSnapshot(
                    id="broken",
                    created_at=clock.now,
                    state={"deployments": {"db": {"status": 7}}},
                )
            )
            await session.commit()

        with pytest.raises(StoreIOError) as excinfo:
            await store.get_deployment_history("db")

        assert excinfo.value.action == "store.decode"


def test_snapshot_ids_sort_by_creation(clock):
    first = new_snapshot_id(clock.now)
    second = new_snapshot_id(clock.now)
    later = new_snapshot_id(clock.advance(microseconds=1))

    assert first < second < later
