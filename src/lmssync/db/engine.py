"""SQLModel engine singleton, also used as the FastAPI engine dependency."""
from sqlmodel import SQLModel, create_engine

from lmssync.config import get_settings

_engine = None


def build_engine(database_url: str):
    """Create an engine for database_url, with tables and migrations applied."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}  # SQLite only; safe for FastAPI
    engine = create_engine(database_url, connect_args=connect_args)
    # Import all models so metadata is populated before create_all
    from lmssync.models.lms import (  # noqa
        CourseProperty, LmsCourse, LmsEnrollment, LmsGroup, LmsGroupMember, LmsUser, Partner,
    )
    from lmssync.models.sync import SyncLog  # noqa
    SQLModel.metadata.create_all(engine)
    from lmssync.db.migrations import run_migrations
    run_migrations(engine)
    return engine


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database_url)
    return _engine
