"""
Shared fixtures: an in-memory SQLite database per test plus the repositories
and services wired on top of it.
"""

from datetime import datetime, timezone
from typing import Generator
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from scripttask.core.database import build_session_factory
from scripttask.db.base import Base
from scripttask.monitoring.alerting.notification import NotificationManager
from scripttask.services.remediation import ActionHandler, RemediationRepository
from scripttask.services.scheduling import (
    JobQueueProjector,
    SchedulingRepository,
    StaticNodeDirectory,
)
from scripttask.services.scheduling.policies import ConcurrencyGate


class FrozenClock:
    """Callable clock whose current instant tests move by hand"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def db_engine() -> Generator[Engine, None, None]:
    """Yield a SQLAlchemy engine for an in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def scheduling_repository(session_factory):
    return SchedulingRepository(session_factory=session_factory)


@pytest.fixture
def remediation_repository(session_factory):
    return RemediationRepository(session_factory=session_factory)


@pytest.fixture
def node_directory():
    """Three online nodes across two meshes"""
    return StaticNodeDirectory({"node-1": "mesh-a", "node-2": "mesh-a", "node-3": "mesh-b"})


@pytest.fixture
def concurrency_gate(scheduling_repository, node_directory):
    return ConcurrencyGate(scheduling_repository, node_directory)


@pytest.fixture
def projector(scheduling_repository, node_directory, concurrency_gate):
    return JobQueueProjector(scheduling_repository, node_directory, concurrency_gate)


@pytest.fixture
def notifier():
    manager = Mock(spec=NotificationManager)
    manager.notify.return_value = True
    return manager


@pytest.fixture
def action_handler(remediation_repository, projector, notifier):
    return ActionHandler(remediation_repository, projector, notifier=notifier)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_schedule(scheduling_repository):
    """Factory persisting a schedule with sensible defaults"""

    def _make(**overrides):
        data = {
            "name": "nightly-cleanup",
            "script_id": "cleanup-temp",
            "cron_expression": "0 9 * * *",
            "timezone": "UTC",
            "nodes": ["node-1"],
            "meshes": [],
            "max_per_node": 1,
            "max_per_mesh": 10,
            "max_global": 50,
            "enabled": True,
        }
        data.update(overrides)
        return scheduling_repository.create_schedule(data)

    return _make
