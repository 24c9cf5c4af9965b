from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from prometheus_client import CollectorRegistry

from flags_gateway.config import GatewayConfig
from flags_gateway.store import FlagStore
from flags_gateway.tokens import CapabilityTokenService
from helpers import FakeIdentityProvider, RecordingStatsSink, Seeder

SIGNING_KEY = "test-signing-key-0123456789abcdef0123456789abcdef"
FIXED_NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "flags.db")


@pytest.fixture
def store(db_path):
    return FlagStore(db_path)


@pytest.fixture
def seeder(store):
    return Seeder(store.db_path)


@pytest.fixture
def example(seeder):
    """test-agent-1 in test-project-1 with two environments.

    test-env-1 (the default) holds feature-flag-1=true and feature-flag-2=false.
    test-env-2 holds feature-flag-1=false.
    """
    project = seeder.project("test-project-1")
    agent = seeder.agent(project, "test-agent-1", interval=45)
    env1 = seeder.environment(agent, "test-env-1", created_at="2024-01-01 00:00:00")
    env2 = seeder.environment(agent, "test-env-2", created_at="2024-03-01 00:00:00")
    f1 = seeder.flag(agent, env1, "feature-flag-1", True)
    f2 = seeder.flag(agent, env1, "feature-flag-2", False)
    f3 = seeder.flag(agent, env2, "feature-flag-1", False)
    return SimpleNamespace(project=project, agent=agent, env1=env1, env2=env2, f1=f1, f2=f2, f3=f3)


@pytest.fixture
def config(db_path):
    return GatewayConfig(db_path=db_path, signing_key=SIGNING_KEY)


@pytest.fixture
def tokens():
    return CapabilityTokenService(SIGNING_KEY, clock=lambda: FIXED_NOW)


@pytest.fixture
def identity():
    return FakeIdentityProvider(users={"user-1"})


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def failing_identity():
    return FakeIdentityProvider(fail=True)


@pytest.fixture
def recording_sink():
    return RecordingStatsSink()
