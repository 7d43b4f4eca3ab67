from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from botfleet.config import settings

_engine_kwargs: dict = dict(pool_pre_ping=True)

if settings.database_url.startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    _engine_kwargs.update(pool_recycle=300)

engine = create_engine(settings.database_url, **_engine_kwargs)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def get_session(factory: sessionmaker | None = None):
    """Get a database session that is always rolled back and closed.

    Usage:
        with get_session() as session:
            # do work
            session.commit()  # if needed
    """
    session = (factory or SessionLocal)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def init_db(bind=None) -> None:
    """Create all tables that do not exist yet."""
    from botfleet import models

    models.Base.metadata.create_all(bind=bind or engine)
