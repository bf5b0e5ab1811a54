"""Transaction utilities for explicit transaction boundaries.

This module provides context managers for managing database transactions
with automatic commit/rollback semantics to prevent partial state updates.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cargo_dispatch.core.exceptions import PersistenceError


@contextmanager
def transaction(session: Session) -> Generator[Session]:
    """Context manager for explicit transaction boundaries.

    Commits on successful completion, rolls back on any exception.
    A status compare-and-set and the timeline rows it appends must go
    through one of these so they land together or not at all.

    Example:
        with transaction(session):
            repo.compare_and_set(booking, expected_status, expected_version, entries)
        # Automatic commit if no exception, rollback otherwise

    Args:
        session: SQLAlchemy session to manage

    Yields:
        The same session for use within the context

    Raises:
        Any exception raised within the context (after rollback)
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


@contextmanager
def unit_of_work(session_maker: sessionmaker[Any]) -> Generator[Session]:
    """Open a session, run one transaction, and translate driver errors.

    Raises:
        PersistenceError: when the database rejects the work
    """
    with session_maker() as session:
        try:
            with transaction(session):
                yield session
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database operation failed: {e}") from e
