"""Tests for engine and session helpers."""

import pytest
from sqlalchemy import select

from erpflow.core.config import Settings
from erpflow.db.base import Base
from erpflow.db.models import Project
from erpflow.db.session import create_db_engine, get_session_factory, session_scope

pytestmark = pytest.mark.integration


@pytest.fixture
def factory(tmp_path):
    settings = Settings(_env_file=None, database_url=f"sqlite:///{tmp_path / 'erpflow.db'}")
    engine = create_db_engine(settings)
    Base.metadata.create_all(engine)
    yield get_session_factory(engine)
    engine.dispose()


class TestSessionScope:
    """Test transactional session scopes."""

    def test_commits_on_success(self, factory):
        with session_scope(factory) as db:
            db.add(Project(id="p-1", name="Harbor"))

        with session_scope(factory) as db:
            assert db.scalars(select(Project.id)).all() == ["p-1"]

    def test_rolls_back_on_error(self, factory):
        with pytest.raises(RuntimeError):
            with session_scope(factory) as db:
                db.add(Project(id="p-2", name="Dock"))
                db.flush()
                raise RuntimeError("boom")

        with session_scope(factory) as db:
            assert db.scalars(select(Project.id)).all() == []
