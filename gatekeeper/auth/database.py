"""
Gatekeeper - Database Configuration

Engine and session factory for the auth store. PostgreSQL is the deployment
target; SQLite (file or in-memory) serves development and tests.

Usage:
    from gatekeeper.auth.database import get_engine, get_session_factory, init_db

    engine = get_engine()
    init_db(engine)
    new_session = get_session_factory(engine)
"""

from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from gatekeeper.config import settings


def get_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Build an engine for DATABASE_URL, or for the given URL.

    Args:
        database_url: Connection URL overriding settings
        echo: Emit SQL to the sqlalchemy logger
    """
    url = database_url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases are visible to every session
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def init_db(engine: Engine) -> None:
    """Create any missing auth tables. Existing tables are left alone."""
    from gatekeeper.auth import models  # noqa: F401  registers the tables

    SQLModel.metadata.create_all(engine)


def get_session_factory(engine: Engine) -> Callable[[], Session]:
    """
    Return a zero-argument callable opening sessions on engine.

    Sessions keep attribute values after commit so records returned by the
    store stay readable once the session is closed.
    """
    def session_factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return session_factory
