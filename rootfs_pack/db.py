"""Run history database for rootfs_pack.

The history is a small SQLite database by default. history_session opens
it, creates its table on first use, and keeps failed runs: a session is
committed when the body raises a PackagingError, so the failure the run
was marked with is stored.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from rootfs_pack.config import get_settings
from rootfs_pack.errors import PackagingError

SQLITE_PREFIX = "sqlite:///"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def get_engine(db_url: str | None = None) -> Any:
    """Create a SQLAlchemy engine for the run history.

    For file-backed SQLite URLs the parent directory is created.

    Args:
        db_url: Database URL. If not provided, uses settings default.
    """
    if db_url is None:
        db_url = get_settings().db_url

    if db_url.startswith(SQLITE_PREFIX):
        db_file = db_url[len(SQLITE_PREFIX) :]
        if db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(db_url, echo=False)


def create_all_tables(engine: Any) -> None:
    """Create the run history tables if they do not exist."""
    # Import models so they are registered with the mapper
    from rootfs_pack.packager import models as packager_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def history_session(db_url: str | None = None) -> Generator[Session, None, None]:
    """Open a session on the run history.

    Commits on success and on PackagingError; rolls back on anything else.

    Args:
        db_url: Database URL. If not provided, uses settings default.

    Yields:
        SQLAlchemy Session instance.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
        session.commit()
    except PackagingError:
        session.commit()
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
        engine.dispose()


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "history_session",
]
