# cadence/core/db/errors.py
"""Classify database exceptions into transient vs. permanent failures."""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from psycopg.errors import DeadlockDetected, LockNotAvailable, SerializationFailure
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError

_CONTENTION_ERRORS = (DeadlockDetected, LockNotAvailable, SerializationFailure)


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """True when SQLAlchemy flagged the DBAPI error as a dropped connection."""
    return bool(getattr(exc, 'connection_invalidated', False)) or bool(
        getattr(exc, 'is_disconnect', False)
    )


def is_lock_contention(exc: BaseException) -> bool:
    """True for lock/serialization conflicts that succeed when re-run.

    Covers PostgreSQL deadlock/serialization/lock-timeout errors and SQLite's
    'database is locked' busy error.
    """
    orig = exc.orig if isinstance(exc, DBAPIError) else exc
    if isinstance(orig, _CONTENTION_ERRORS):
        return True
    return 'database is locked' in str(orig)


def is_retryable_db_error(exc: BaseException) -> bool:
    """Whether a caller may safely retry the operation that raised `exc`."""
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return is_lock_contention(exc)
