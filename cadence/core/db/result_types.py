"""Typed error types for database infrastructure operations.

Result propagation policy
-------------------------
Two error systems coexist:

1. ``ExportResult[T]`` (``cadence.core.scheduler.result_types``) -- the
   outcome of every public scheduler operation.  Carries an
   ``ExportErrorCode`` the caller maps onto its own transport.

2. ``DatabaseResult[T]`` (this module) -- infrastructure outcomes for
   schema initialization and engine shutdown.  Carries
   ``DatabaseOperationError`` with a ``retryable`` flag.

Where Result stops and exceptions take over:

* **Store / ledger layer** -- raises.  Typed domain errors
  (``ScheduleValidationError``, ``InvalidStateTransitionError``,
  ``ExecutionNotFoundError``) and raw SQLAlchemy errors both propagate.

* **Scheduler service boundary** -- converts everything into
  ``ExportResult``.  Unexpected exceptions become ``INTERNAL`` after
  being logged; nothing internal crosses the boundary.

* **Process startup** -- ``run_forever`` converts a schema ``Err`` into
  an exception and lets the host decide whether to restart.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from result import Result


class DatabaseErrorCode(str, Enum):
    """Categorized database operation failure codes."""

    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    CLOSE_FAILED = 'CLOSE_FAILED'


@dataclass(slots=True, frozen=True)
class DatabaseOperationError:
    """Error payload carried inside Err(...) for database operations.

    Fields:
        code: which operation category failed
        message: human-readable description
        retryable: whether the caller can retry this operation
        exception: the original cause (if any)
    """

    code: DatabaseErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


type DatabaseResult[T] = Result[T, DatabaseOperationError]
