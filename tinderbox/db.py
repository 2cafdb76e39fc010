"""Run-history database.

One table (``provisioning_runs``) in SQLite by default, located by
``Settings.db_url``. Tables are created on first use; there is no
migration layer.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from tinderbox.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for run-history models."""


def sqlite_file(db_url: str) -> Path | None:
    """Database file of a file-backed SQLite URL, else None."""
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
        return None
    return Path(url.database)


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the run history.

    The directory of a SQLite file is created if needed, so a fresh host
    can record its first run without setup.

    Args:
        db_url: Database URL; defaults to ``Settings.db_url``.
    """
    db_url = db_url or get_settings().db_url
    connect_args = {}
    if make_url(db_url).get_backend_name() == "sqlite":
        # The watchdog and tee threads never touch the session, but the
        # API server hands sessions across its worker threads.
        connect_args["check_same_thread"] = False
        path = sqlite_file(db_url)
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(db_url, connect_args=connect_args)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Session factory bound to ``engine`` (or the configured database)."""
    return sessionmaker(bind=engine or get_engine(), autoflush=False, expire_on_commit=False)


def create_all_tables(engine: Engine | None = None) -> None:
    """Create missing run-history tables."""
    # Register models with the mapper before creating tables
    from tinderbox.provision import models as provision_models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


def open_history(db_url: str | None = None) -> sessionmaker[Session]:
    """Engine, tables and session factory in one step.

    Args:
        db_url: Database URL; defaults to ``Settings.db_url``.

    Returns:
        Session factory for the run history.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Transactional scope: commit on success, roll back on any exception.

    A flash run interrupted with Ctrl-C still has its failure committed,
    because the orchestrator records it before re-raising.

    Yields:
        Database session.
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "open_history",
    "sqlite_file",
]
