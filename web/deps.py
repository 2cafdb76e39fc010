"""Request-scoped dependencies for the status API."""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Session factory created by the app lifespan."""
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a read-only database session for one request.

    Endpoints never write, so the session is only closed, never committed.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
