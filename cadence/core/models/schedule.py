# cadence/core/models/schedule.py
from __future__ import annotations
import re
from collections.abc import Mapping
from datetime import datetime, time as datetime_time
from enum import Enum
from typing import Any, Literal, Optional, Union
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    ValidationInfo,
    field_validator,
)
from pydantic.alias_generators import to_camel
from cadence.core.defaults import DEFAULT_SCHEDULE_TIME
from cadence.core.errors import (
    ErrorCode,
    ScheduleValidationError,
    ValidationReport,
    raise_collected,
)
from cadence.core.types.status import ExecutionStatus

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
TIME_OF_DAY_RE = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')


class Frequency(str, Enum):
    """How often a schedule fires."""

    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


class ExportFormat(str, Enum):
    """Output formats the delivery collaborator knows how to render."""

    CSV = 'csv'
    XLSX = 'xlsx'
    JSON = 'json'
    PDF = 'pdf'


# =============================================================================
# Recurrence patterns
# =============================================================================


class DailyRecurrence(BaseModel):
    """
    Fire every day at a specific time.

    Examples:
        - Daily at 09:00 -> DailyRecurrence(time=time(9, 0))
    """

    type: Literal['daily'] = 'daily'
    time: datetime_time = Field(description='Time of day to fire (HH:MM)')


class WeeklyRecurrence(BaseModel):
    """
    Fire once a week on one day at a specific time.

    Days are numbered 0-6 starting at Sunday.

    Examples:
        - Mondays at 08:30 -> WeeklyRecurrence(day_of_week=1, time=time(8, 30))
    """

    type: Literal['weekly'] = 'weekly'
    day_of_week: int = Field(ge=0, le=6, description='Day of week (0=Sunday .. 6=Saturday)')
    time: datetime_time = Field(description='Time of day to fire (HH:MM)')


class MonthlyRecurrence(BaseModel):
    """
    Fire once a month on a specific day at a specific time.

    Note: If day_of_month > days in month (e.g., 31 in February),
    the schedule fires on that month's last day instead.

    Examples:
        - 15th of each month at 15:00:
          MonthlyRecurrence(day_of_month=15, time=time(15, 0))
    """

    type: Literal['monthly'] = 'monthly'
    day_of_month: int = Field(ge=1, le=31, description='Day of month (1-31)')
    time: datetime_time = Field(description='Time of day to fire (HH:MM)')


RecurrencePattern = Union[
    DailyRecurrence,
    WeeklyRecurrence,
    MonthlyRecurrence,
]


def parse_time_of_day(value: str) -> datetime_time:
    """Parse an `HH:MM` 24h string. Raises ValueError on anything else."""
    match = TIME_OF_DAY_RE.match(value)
    if match is None:
        raise ValueError(f"invalid time of day '{value}', expected HH:MM")
    return datetime_time(int(match.group(1)), int(match.group(2)))


def build_recurrence(
    frequency: Frequency | str,
    time: str,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> RecurrencePattern:
    """Build the recurrence pattern for stored or submitted schedule fields."""
    time_of_day = parse_time_of_day(time)
    match Frequency(frequency):
        case Frequency.DAILY:
            return DailyRecurrence(time=time_of_day)
        case Frequency.WEEKLY:
            if day_of_week is None:
                raise ValueError('weekly recurrence requires day_of_week')
            return WeeklyRecurrence(day_of_week=day_of_week, time=time_of_day)
        case Frequency.MONTHLY:
            if day_of_month is None:
                raise ValueError('monthly recurrence requires day_of_month')
            return MonthlyRecurrence(day_of_month=day_of_month, time=time_of_day)


# =============================================================================
# Schedule input
# =============================================================================

# Pydantic error locations are reported by alias; map them to codes and help.
_FIELD_RULES: dict[str, tuple[ErrorCode, Optional[str]]] = {
    'name': (
        ErrorCode.SCHEDULE_MISSING_NAME,
        'give the schedule a short descriptive name',
    ),
    'frequency': (
        ErrorCode.SCHEDULE_INVALID_FREQUENCY,
        "use one of 'daily', 'weekly', 'monthly'",
    ),
    'format': (ErrorCode.SCHEDULE_INVALID_FORMAT, None),
    'recipients': (
        ErrorCode.SCHEDULE_INVALID_RECIPIENTS,
        'addresses must look like local@domain.tld',
    ),
    'time': (
        ErrorCode.SCHEDULE_INVALID_TIME,
        "use 24h notation, e.g. '09:00' or '17:45'",
    ),
    'dayOfWeek': (
        ErrorCode.SCHEDULE_INVALID_DAY_OF_WEEK,
        'use 0 (Sunday) through 6 (Saturday)',
    ),
    'dayOfMonth': (
        ErrorCode.SCHEDULE_INVALID_DAY_OF_MONTH,
        'use 1 through 31; short months fire on their last day',
    ),
}


class ScheduleInput(BaseModel):
    """
    Validated definition of an export schedule, as submitted by a client.

    Accepts camelCase keys (`dayOfWeek`, `emailSubject`, ...) or their
    snake_case field names. Unknown keys are ignored and never persisted.

    Every rule is a field validator, so a single validation pass reports
    type errors and rule violations for all fields together.

    Fields:
        - name: Display name, required and non-blank
        - description: Optional free text
        - frequency: daily | weekly | monthly
        - format: csv | xlsx | json | pdf
        - recipients: Non-empty list of email addresses
        - day_of_week: 0-6 (0=Sunday), required iff frequency is weekly
        - day_of_month: 1-31, required iff frequency is monthly
        - time: HH:MM (24h), defaults to 09:00
        - email_subject / email_body: Passed opaquely to delivery
        - filter_preset_id: Opaque reference to an external filter
        - is_active: Whether the schedule starts active (default True)
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra='ignore',
        str_strip_whitespace=True,
    )

    name: str = Field(description='Schedule display name')
    description: Optional[str] = Field(default=None)
    frequency: Frequency = Field(description='Recurrence frequency')
    format: ExportFormat = Field(description='Output format')
    recipients: list[str] = Field(description='Delivery email addresses')
    # validate_default so a missing day is checked against the frequency
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6, validate_default=True)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31, validate_default=True)
    time: str = Field(default=DEFAULT_SCHEDULE_TIME, description='Time of day (HH:MM)')
    email_subject: Optional[str] = Field(default=None)
    email_body: Optional[str] = Field(default=None)
    filter_preset_id: Optional[str] = Field(default=None)
    is_active: bool = Field(default=True)

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value:
            raise ValueError('name must not be empty')
        return value

    @field_validator('recipients')
    @classmethod
    def validate_recipients(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError('recipients must not be empty')
        invalid = [r for r in value if not EMAIL_RE.match(r)]
        if invalid:
            raise ValueError(f'invalid recipient email(s): {invalid}')
        return value

    @field_validator('time')
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not TIME_OF_DAY_RE.match(value):
            raise ValueError(f"time '{value}' is not a valid HH:MM time of day")
        return value

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(
        cls, value: Optional[int], info: ValidationInfo
    ) -> Optional[int]:
        """Required for weekly schedules, cleared for every other frequency."""
        # frequency is absent from info.data when it failed its own validation
        if info.data.get('frequency') != Frequency.WEEKLY:
            return None
        if value is None:
            raise ValueError('dayOfWeek is required for weekly schedules')
        return value

    @field_validator('day_of_month')
    @classmethod
    def validate_day_of_month(
        cls, value: Optional[int], info: ValidationInfo
    ) -> Optional[int]:
        """Required for monthly schedules, cleared for every other frequency."""
        if info.data.get('frequency') != Frequency.MONTHLY:
            return None
        if value is None:
            raise ValueError('dayOfMonth is required for monthly schedules')
        return value

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> ScheduleInput:
        """
        Parse an arbitrary request body into a ScheduleInput.

        Raises:
            ScheduleValidationError: one offending field
            MultipleValidationErrors: several offending fields
        """
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as exc:
            report = ValidationReport('schedule')
            for err in exc.errors():
                loc = err.get('loc') or ()
                field_name = str(loc[0]) if loc else 'body'
                code, help_text = _FIELD_RULES.get(
                    field_name, (ErrorCode.SCHEDULE_INVALID_FIELD, None)
                )
                if err['type'] == 'value_error':
                    message = str(err['ctx']['error'])
                else:
                    message = f'{field_name}: {err["msg"]}'
                report.add(
                    ScheduleValidationError(
                        message=message,
                        code=code,
                        field=field_name,
                        notes=[f'got: {err.get("input")!r}'],
                        help_text=help_text,
                    )
                )
            raise_collected(report)
            raise

    def recurrence(self) -> RecurrencePattern:
        """Recurrence pattern described by this input."""
        return build_recurrence(
            self.frequency, self.time, self.day_of_week, self.day_of_month
        )


# =============================================================================
# Read views
# =============================================================================


class ExportScheduleView(BaseModel):
    """Read-only projection of a stored schedule."""

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    tenant_id: str
    user_id: str
    name: str
    description: Optional[str] = None
    frequency: Frequency
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    time: str
    format: ExportFormat
    recipients: list[str]
    email_subject: Optional[str] = None
    email_body: Optional[str] = None
    filter_preset_id: Optional[str] = None
    is_active: bool
    next_fire_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ScheduleSummary(ExportScheduleView):
    """Schedule listing entry annotated with its execution count."""

    execution_count: int = 0


class ExecutionView(BaseModel):
    """Read-only projection of one firing attempt."""

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    schedule_id: str
    status: ExecutionStatus
    output_format: ExportFormat
    scheduled_for: Optional[datetime] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_detail: Optional[str] = None


class BulkUpdateResult(BaseModel):
    """Outcome of a bulk activate/deactivate/toggle."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    updated_count: int


class BulkDeleteResult(BaseModel):
    """Outcome of a bulk delete."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    deleted_count: int
