"""Database setup and session management.

Only the SQL snapshot adapter uses this. SQLAlchemy + SQLite unless
DATABASE_URL points somewhere else. Engines are built per adapter instead of
at import time so tests and multiple stores don't share a connection pool.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def make_engine(database_url: str, timeout: float) -> Engine:
    """Create an engine whose connections give up after `timeout` seconds."""
    if database_url.startswith("sqlite"):
        # sqlite waits up to `timeout` for a locked database
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": timeout},
        )
    return create_engine(database_url, pool_timeout=timeout, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine):
    """Initialize database tables (create_all)."""
    # models must be imported so the table is registered on Base
    from abtesting import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
