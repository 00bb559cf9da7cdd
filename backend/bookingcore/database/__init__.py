"""
Database engine, session factory, and metadata shared across the booking core.
"""

from __future__ import annotations

import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from bookingcore.core.config import settings

logger = logging.getLogger(__name__)


def _build_engine_kwargs(db_url: str) -> dict[str, Any]:
    """Engine options per backend; SQLite needs cross-thread access for the async facade."""
    kwargs: dict[str, Any] = {"future": True, "echo": settings.database_echo}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url in {"sqlite://", "sqlite+pysqlite://"}:
            kwargs["poolclass"] = StaticPool
    else:
        kwargs.update({"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10})
    return kwargs


def create_db_engine(db_url: str) -> Engine:
    """Create an engine for ``db_url`` with the core's connection settings."""
    db_engine = create_engine(db_url, **_build_engine_kwargs(db_url))
    if db_engine.dialect.name == "sqlite":
        event.listen(db_engine, "connect", _enable_sqlite_foreign_keys)
    return db_engine


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(db_engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine, expire_on_commit=False)


engine: Engine = create_db_engine(settings.database_url)

SessionLocal = create_session_factory(engine)

Base: DeclarativeMeta = declarative_base()


def init_db(db_engine: Engine | None = None) -> None:
    """Create all booking tables on ``db_engine`` (defaults to the configured engine)."""
    import bookingcore.models  # noqa: F401 - populate metadata

    target = db_engine or engine
    Base.metadata.create_all(bind=target)
    logger.info("Booking tables ensured on %s", target.url.render_as_string(hide_password=True))


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
