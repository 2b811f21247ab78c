"""Pytest configuration and shared fixtures."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from erpflow.core.config import Settings
from erpflow.core.policy import ActionPolicyEngine, Actor, GuardSources
from erpflow.core.policy.loader import StaticPolicyStore
from erpflow.db.base import Base
import erpflow.db.models  # noqa: F401  registers tables on Base.metadata

from tests.fakes import InMemoryGuardStore

FIXED_NOW = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def guard_store():
    return InMemoryGuardStore()


@pytest.fixture
def make_engine(guard_store, settings, clock):
    """Build an engine over the given policies and the in-memory guard store."""
    def _make(*policies):
        return ActionPolicyEngine(
            StaticPolicyStore(policies),
            GuardSources.single(guard_store),
            settings=settings,
            clock=clock,
        )
    return _make


@pytest.fixture
def staff():
    return Actor(user_id="u-staff", roles=["staff"], group_ids=[])


@pytest.fixture
def admin():
    return Actor(user_id="u-admin", roles=["admin"], group_ids=["mgmt", "exec"])


@pytest.fixture
def db_engine():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Session rolled back after each test."""
    session = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
