"""Database session dependency for FastAPI.

One session per request: committed when the handler returns normally,
rolled back when it raises, closed in both cases.
"""

from collections.abc import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Return the session factory installed on the app state by lifespan."""
    factory: sessionmaker[Session] = request.app.state.session_factory
    return factory


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
