"""Typed error types for scheduler service operations.

Follows the same pattern as ``DatabaseOperationError`` in
``cadence/core/db/result_types.py``.

Where Result stops and exceptions take over:

* Every public ``ExportScheduler`` method returns ``ExportResult[T]``.
  The ``Ok`` side is the operation's view model; callers map each
  ``ExportErrorCode`` onto their transport (HTTP status, RPC code, ...).

* ``VALIDATION_FAILED`` carries one ``FieldError`` per offending input
  field so clients can highlight every problem at once.

* ``INTERNAL`` never carries exception text.  The full traceback is
  logged at the boundary; ``retryable`` reflects whether the cause was
  a transient database failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from result import Result


class ExportErrorCode(str, Enum):
    """Categorized scheduler operation failure codes."""

    RATE_LIMITED = 'RATE_LIMITED'
    FORBIDDEN = 'FORBIDDEN'
    VALIDATION_FAILED = 'VALIDATION_FAILED'
    QUOTA_EXCEEDED = 'QUOTA_EXCEEDED'
    NOT_FOUND = 'NOT_FOUND'
    INVALID_STATE_TRANSITION = 'INVALID_STATE_TRANSITION'
    INTERNAL = 'INTERNAL'


@dataclass(slots=True, frozen=True)
class FieldError:
    field: str
    message: str


@dataclass(slots=True, frozen=True)
class ExportOperationError:
    """Error payload carried inside ``Err(...)`` for scheduler operations.

    Fields:
        code: which failure category
        message: human-readable description, safe to show to clients
        retryable: whether the caller can safely retry
        fields: per-field problems (VALIDATION_FAILED only)
    """

    code: ExportErrorCode
    message: str
    retryable: bool = False
    fields: tuple[FieldError, ...] = ()


type ExportResult[T] = Result[T, ExportOperationError]
