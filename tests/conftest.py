"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import Callable, Generator
from unittest.mock import MagicMock

import pytest

from capguard.cache import InMemorySnapshotCache
from capguard.config import Settings
from capguard.db.manager import DatabaseManager
from capguard.db.models import Project
from capguard.environment import EnvironmentPolicy
from capguard.metering import SqlUsageMeteringService
from capguard.notifications import SideEffectQueue
from capguard.quota import EnforcementEngine, QuotaStore
from capguard.suspension import SuspensionController


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    # Cleanup
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def test_settings(temp_db_path: str) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{temp_db_path}",
        scheduler_database_url=None,
        cache_backend="memory",
        admin_notification_emails=["ops@example.com"],
        side_effect_max_attempts=3,
    )


@pytest.fixture
def side_effects() -> SideEffectQueue:
    """Synchronous side-effect queue that never actually sleeps."""
    return SideEffectQueue(max_attempts=3, base_delay=0.01, inline=True, sleep=lambda _: None)


@pytest.fixture
def cache() -> InMemorySnapshotCache:
    return InMemorySnapshotCache()


@pytest.fixture
def audit_logger() -> MagicMock:
    return MagicMock()


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock()


@pytest.fixture
def environment_policy(test_settings: Settings) -> EnvironmentPolicy:
    return EnvironmentPolicy(config=test_settings)


@pytest.fixture
def controller(
    db_manager: DatabaseManager,
    side_effects: SideEffectQueue,
    cache: InMemorySnapshotCache,
    audit_logger: MagicMock,
    notifier: MagicMock,
    environment_policy: EnvironmentPolicy,
    test_settings: Settings,
) -> SuspensionController:
    """SuspensionController wired to inline side effects and mock sinks."""
    return SuspensionController(
        db_manager,
        side_effects=side_effects,
        cache=cache,
        audit_logger=audit_logger,
        notifier=notifier,
        environment_policy=environment_policy,
        config=test_settings,
    )


@pytest.fixture
def quota_store(db_manager: DatabaseManager) -> QuotaStore:
    return QuotaStore(db_manager)


@pytest.fixture
def metering(db_manager: DatabaseManager) -> SqlUsageMeteringService:
    return SqlUsageMeteringService(db_manager)


@pytest.fixture
def enforcement(quota_store: QuotaStore, metering: SqlUsageMeteringService) -> EnforcementEngine:
    return EnforcementEngine(quota_store, metering)


@pytest.fixture
def make_project(db_manager: DatabaseManager) -> Callable[..., str]:
    """Factory inserting a project row and returning its id."""

    def _make(
        project_id: str,
        environment: str | None = "prod",
        owner_email: str | None = "owner@example.com",
        status: str = "active",
    ) -> str:
        with db_manager.get_session() as session:
            session.add(
                Project(
                    id=project_id,
                    name=f"Project {project_id}",
                    environment=environment,
                    owner_email=owner_email,
                    status=status,
                )
            )
        return project_id

    return _make
