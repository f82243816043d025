"""
Database connection setup (sync SQLAlchemy + psycopg2).

The engine is created on first use so importing the app never opens a
connection.
"""

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from apps.api.config import get_settings

_engine: Engine | None = None


def get_engine() -> Engine:
    """Return the process-wide engine, creating it from settings."""
    global _engine
    if _engine is None:
        database_url = get_settings().database_url
        connect_args = {"connect_timeout": 1} if database_url.startswith("postgresql") else {}
        _engine = create_engine(
            database_url,
            pool_pre_ping=True,
            connect_args=connect_args,  # 1 second connect timeout on Postgres
        )
    return _engine


def get_db() -> Generator[Session, None, None]:
    """Yield a database session. Use as FastAPI dependency."""
    db = Session(bind=get_engine())
    try:
        yield db
    finally:
        db.close()
