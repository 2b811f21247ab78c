"""Engine and session factory for erpflow."""

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from erpflow.core.config import Settings, get_settings


def create_db_engine(settings: Optional[Settings] = None, **kwargs) -> Engine:
    """
    Create an engine for the configured database.

    Args:
        settings: Settings providing ``database_url``
        **kwargs: Extra ``create_engine`` options

    Returns:
        SQLAlchemy engine
    """
    settings = settings or get_settings()
    url = settings.database_url
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, echo=settings.debug, future=True, **kwargs)


def get_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Provide a transactional scope: commit on success, roll back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
