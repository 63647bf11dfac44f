from __future__ import annotations

from typing import Any, Dict, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from deployctl.config import get_settings
from deployctl.db import create_state_engine
from deployctl.schemas.services import ServiceDefinition
from deployctl.services.config_provider import StaticConfigurationProvider
from deployctl.services.file_backend import FileStateBackend
from deployctl.services.orchestrator import DeploymentOrchestrator
from deployctl.services.sql_backend import SqlStateBackend, create_schema
from deployctl.services.state_store import DeploymentStateStore
from tests.helpers.fakes import FakeClock, FakeControlPlane, RecordingMonitor, make_services


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stack_services() -> Dict[str, ServiceDefinition]:
    # api is declared first on purpose: order must come from dependencies.
    return make_services({"api": ["db", "cache"], "db": [], "cache": []})


@pytest.fixture
def provider(stack_services) -> StaticConfigurationProvider:
    return StaticConfigurationProvider(stack_services, "test")


@pytest.fixture
def file_store(tmp_path, clock, provider) -> DeploymentStateStore:
    return DeploymentStateStore(
        FileStateBackend(tmp_path / "state"),
        environment="test",
        config_provider=provider,
        clock=clock,
    )


@pytest_asyncio.fixture(params=["file", "sql"])
async def backend(request, tmp_path):
    if request.param == "file":
        yield FileStateBackend(tmp_path / "state")
        return
    engine = create_state_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
    await create_schema(engine)
    try:
        yield SqlStateBackend(async_sessionmaker(bind=engine, expire_on_commit=False))
    finally:
        await engine.dispose()


@pytest.fixture
def store(backend, clock) -> DeploymentStateStore:
    return DeploymentStateStore(backend, environment="test", clock=clock)


@pytest.fixture
def make_orchestrator(provider, file_store):
    def factory(
        control_plane: FakeControlPlane,
        monitor: Optional[RecordingMonitor] = None,
        **options: Any,
    ) -> DeploymentOrchestrator:
        options.setdefault("health_check_attempts", 3)
        options.setdefault("health_check_interval", 0)
        return DeploymentOrchestrator(
            config_provider=options.pop("config_provider", provider),
            control_plane=control_plane,
            store=options.pop("store", file_store),
            monitor=monitor or RecordingMonitor(),
            **options,
        )

    return factory
