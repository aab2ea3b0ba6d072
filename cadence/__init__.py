"""cadence - recurring export schedules with per-tenant quotas and an audited sweep"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.models.config import CadenceConfig, DatabaseConfig, SweepConfig
from .core.models.schedule import (
    Frequency,
    ExportFormat,
    DailyRecurrence,
    WeeklyRecurrence,
    MonthlyRecurrence,
    RecurrencePattern,
    ScheduleInput,
    ExportScheduleView,
    ScheduleSummary,
    ExecutionView,
    BulkUpdateResult,
    BulkDeleteResult,
)
from .core.types.status import ExecutionStatus, EXECUTION_TERMINAL_STATES
from .core.errors import (
    ErrorCode,
    CadenceError,
    ConfigurationError,
    ScheduleValidationError,
    ValidationReport,
    MultipleValidationErrors,
)
from .core.db.engine import Database
from .core.db.result_types import (
    DatabaseErrorCode,
    DatabaseOperationError,
    DatabaseResult,
)
from .core.scheduler.collaborators import (
    RateLimitDecision,
    RateLimiter,
    PermissionChecker,
    DeliveryJob,
    ExportDelivery,
)
from .core.scheduler.result_types import (
    ExportErrorCode,
    ExportOperationError,
    ExportResult,
    FieldError,
)
from .core.scheduler import (
    ExportScheduler,
    RequestContext,
    SweepReport,
    calculate_next_fire,
)

__all__ = [
    # Config
    'CadenceConfig',
    'DatabaseConfig',
    'SweepConfig',
    'Database',
    # Schedules
    'Frequency',
    'ExportFormat',
    'DailyRecurrence',
    'WeeklyRecurrence',
    'MonthlyRecurrence',
    'RecurrencePattern',
    'ScheduleInput',
    'ExportScheduleView',
    'ScheduleSummary',
    'ExecutionView',
    'BulkUpdateResult',
    'BulkDeleteResult',
    'ExecutionStatus',
    'EXECUTION_TERMINAL_STATES',
    # Errors
    'ErrorCode',
    'CadenceError',
    'ConfigurationError',
    'ScheduleValidationError',
    'ValidationReport',
    'MultipleValidationErrors',
    'DatabaseErrorCode',
    'DatabaseOperationError',
    'DatabaseResult',
    # Scheduler
    'ExportScheduler',
    'RequestContext',
    'SweepReport',
    'calculate_next_fire',
    'RateLimitDecision',
    'RateLimiter',
    'PermissionChecker',
    'DeliveryJob',
    'ExportDelivery',
    'ExportErrorCode',
    'ExportOperationError',
    'ExportResult',
    'FieldError',
]
