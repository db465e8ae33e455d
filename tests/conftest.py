"""Shared fixtures: in-memory SQLite session, fake container gateway, managers."""

import itertools
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from datafork import PROJECTS_TABLE
from datafork.config import Settings
from datafork.services.branch_manager import BranchManager
from datafork.services.config_manager import ConfigManager
from datafork.services.container_orchestrator import ContainerOrchestrator, ContainerStats, LogsResult
from datafork.services.credential_manager import CredentialManager
from datafork.services.instance_manager import InstanceManager
from datafork.services.instance_store import InstanceStore
from datafork.services.volume_service import VolumeService

TEST_KEY = "8f1e2d3c4b5a69788796a5b4c3d2e1f00f1e2d3c4b5a69788796a5b4c3d2e1f0"

OWNER = "user-1"
STRANGER = "user-2"
PROJECT = "proj1"
OTHER_PROJECT = "proj2"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite+aiosqlite://",
        data_dir=tmp_path / "databases",
        encryption_key=TEST_KEY,
        health_timeout=1.0,
        health_interval=0.0,
        fork_settle_delay=0.0,
        fork_timeout=5.0,
    )


@pytest.fixture
async def db():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    sessionmaker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with sessionmaker() as session:
        await InstanceStore.create_tables(session, include_projects=True)
        await session.execute(
            text(f'INSERT INTO "{PROJECTS_TABLE}" (id, user_id, name) VALUES (:id, :user_id, :name)'),
            [
                {"id": PROJECT, "user_id": OWNER, "name": "Project One"},
                {"id": OTHER_PROJECT, "user_id": STRANGER, "name": "Project Two"},
            ],
        )
        await session.commit()
        yield session
    await engine.dispose()


@pytest.fixture
def gateway():
    """A ContainerOrchestrator double whose containers always come up healthy."""
    counter = itertools.count(1)
    fake = MagicMock(spec=ContainerOrchestrator)
    fake.pull = AsyncMock()
    fake.create = AsyncMock(side_effect=lambda spec: f"ctr{next(counter):09d}")
    fake.start = AsyncMock()
    fake.stop = AsyncMock()
    fake.remove = AsyncMock()
    fake.status = AsyncMock(return_value="running")
    fake.wait_healthy = AsyncMock(return_value=True)
    fake.exec = AsyncMock()
    fake.logs = AsyncMock(return_value=LogsResult())
    fake.stats = AsyncMock(return_value=ContainerStats())
    return fake


@pytest.fixture
def credentials():
    return CredentialManager(TEST_KEY)


@pytest.fixture
def manager(settings, gateway, credentials):
    return InstanceManager(
        settings=settings,
        gateway=gateway,
        credentials=credentials,
        volumes=VolumeService(settings.data_dir),
    )


@pytest.fixture
def branches(manager):
    return BranchManager(manager)


@pytest.fixture
def configs(manager):
    return ConfigManager(manager)
