"""Database layer for build records.

Build history lives in a single SQLite file by default so that cache
lookups survive between CLI invocations and the HTTP API can read what the
CLI wrote. Any SQLAlchemy URL works through ``SVC_IMG_DB_URL``.
"""

from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from svc_imagegen.config import get_settings

SQLITE_FILE_PREFIX = "sqlite:///"


class Base(DeclarativeBase):
    """Declarative base for BuildRecord and Artifact."""


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    # Artifact rows reference build_records; SQLite ignores that unless asked
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for ``db_url`` (defaults to the configured URL).

    For SQLite file databases the parent directory is created and foreign
    key enforcement is switched on for every connection.
    """
    if db_url is None:
        db_url = get_settings().db_url

    if not db_url.startswith("sqlite"):
        return create_engine(db_url, echo=False)

    if db_url.startswith(SQLITE_FILE_PREFIX) and ":memory:" not in db_url:
        Path(db_url[len(SQLITE_FILE_PREFIX) :]).parent.mkdir(
            parents=True, exist_ok=True
        )
    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False},
        echo=False,
    )
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory bound to ``engine``.

    Objects stay usable after commit so CLI output and HTTP responses can be
    rendered from them once the transaction is done.
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the build record tables if they do not exist yet."""
    from svc_imagegen.builds import models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session_factory",
]
