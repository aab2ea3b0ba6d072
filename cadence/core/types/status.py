# core/types/status.py
"""
Core types and enums used throughout the application.
This module should not import from other application modules.
"""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Export execution status"""

    PENDING = 'pending'  # Selected by the sweep, delivery in flight.

    SUCCEEDED = 'succeeded'  # Delivery collaborator reported success.

    FAILED = 'failed'  # Delivery raised, timed out, or was abandoned.

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in EXECUTION_TERMINAL_STATES


EXECUTION_TERMINAL_STATES: frozenset[ExecutionStatus] = frozenset({
    ExecutionStatus.SUCCEEDED,
    ExecutionStatus.FAILED,
})
