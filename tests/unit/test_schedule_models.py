"""Unit tests for ScheduleInput parsing and the schedule view models."""

from __future__ import annotations

from datetime import datetime, time as datetime_time, timezone
from types import SimpleNamespace
from typing import Any

import pytest

from cadence.core.errors import (
    ErrorCode,
    MultipleValidationErrors,
    ScheduleValidationError,
    iter_validation_errors,
)
from cadence.core.models.schedule import (
    DailyRecurrence,
    ExportFormat,
    ExportScheduleView,
    Frequency,
    MonthlyRecurrence,
    ScheduleInput,
    WeeklyRecurrence,
    build_recurrence,
    parse_time_of_day,
)

pytestmark = pytest.mark.unit


def _body(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        'name': 'Weekly roster',
        'frequency': 'weekly',
        'format': 'csv',
        'recipients': ['ops@example.com'],
        'dayOfWeek': 1,
        'time': '08:30',
    }
    body.update(overrides)
    return body


def _fields_of(exc: BaseException) -> set[str | None]:
    assert isinstance(exc, (ScheduleValidationError, MultipleValidationErrors))
    return {err.field for err in iter_validation_errors(exc)}


class TestScheduleInputAccepts:
    """Valid bodies parse into a normalized ScheduleInput."""

    def test_camel_case_body(self) -> None:
        parsed = ScheduleInput.parse(
            _body(emailSubject='Roster', filterPresetId='preset-1', isActive=False)
        )

        assert parsed.name == 'Weekly roster'
        assert parsed.frequency == Frequency.WEEKLY
        assert parsed.format == ExportFormat.CSV
        assert parsed.day_of_week == 1
        assert parsed.email_subject == 'Roster'
        assert parsed.filter_preset_id == 'preset-1'
        assert parsed.is_active is False

    def test_snake_case_body(self) -> None:
        body = _body()
        body['day_of_week'] = body.pop('dayOfWeek')

        assert ScheduleInput.parse(body).day_of_week == 1

    def test_defaults(self) -> None:
        parsed = ScheduleInput.parse(
            {
                'name': 'Daily',
                'frequency': 'daily',
                'format': 'json',
                'recipients': ['a@b.co'],
            }
        )

        assert parsed.time == '09:00'
        assert parsed.is_active is True
        assert parsed.description is None

    def test_unknown_fields_ignored(self) -> None:
        parsed = ScheduleInput.parse(_body(tenantId='other', isAdmin=True))

        dumped = parsed.model_dump()
        assert 'tenantId' not in dumped
        assert 'tenant_id' not in dumped
        assert 'isAdmin' not in dumped

    def test_name_whitespace_stripped(self) -> None:
        assert ScheduleInput.parse(_body(name='  Roster  ')).name == 'Roster'

    def test_recipient_order_preserved(self) -> None:
        recipients = ['z@example.com', 'a@example.com', 'm@example.com']

        assert ScheduleInput.parse(_body(recipients=recipients)).recipients == recipients

    def test_day_fields_cleared_for_other_frequencies(self) -> None:
        """A daily schedule never keeps a stray dayOfWeek/dayOfMonth."""
        parsed = ScheduleInput.parse(
            _body(frequency='daily', dayOfWeek=3, dayOfMonth=12)
        )

        assert parsed.day_of_week is None
        assert parsed.day_of_month is None

    def test_monthly_keeps_only_day_of_month(self) -> None:
        parsed = ScheduleInput.parse(_body(frequency='monthly', dayOfMonth=31))

        assert parsed.day_of_month == 31
        assert parsed.day_of_week is None

    def test_recurrence(self) -> None:
        parsed = ScheduleInput.parse(_body())

        assert parsed.recurrence() == WeeklyRecurrence(
            day_of_week=1, time=datetime_time(8, 30)
        )


class TestScheduleInputRejects:
    """Invalid bodies raise errors naming every offending field."""

    def test_missing_name(self) -> None:
        body = _body()
        del body['name']

        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(body)

        assert exc_info.value.field == 'name'
        assert exc_info.value.code == ErrorCode.SCHEDULE_MISSING_NAME

    def test_blank_name(self) -> None:
        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(_body(name='   '))

        assert exc_info.value.field == 'name'

    def test_empty_recipients(self) -> None:
        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(_body(recipients=[]))

        assert exc_info.value.field == 'recipients'
        assert exc_info.value.code == ErrorCode.SCHEDULE_INVALID_RECIPIENTS

    @pytest.mark.parametrize(
        'bad',
        ['not-an-email', 'a@b', 'two words@example.com', '@example.com'],
    )
    def test_malformed_recipient(self, bad: str) -> None:
        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(_body(recipients=['ok@example.com', bad]))

        assert exc_info.value.field == 'recipients'
        assert any(bad in note for note in exc_info.value.notes)

    def test_unknown_format(self) -> None:
        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(_body(format='docx'))

        assert exc_info.value.field == 'format'
        assert exc_info.value.code == ErrorCode.SCHEDULE_INVALID_FORMAT

    def test_unknown_frequency(self) -> None:
        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(_body(frequency='hourly'))

        assert exc_info.value.field == 'frequency'

    @pytest.mark.parametrize('bad_time', ['24:00', '9:00', '09:60', 'noon'])
    def test_invalid_time(self, bad_time: str) -> None:
        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(_body(time=bad_time))

        assert exc_info.value.field == 'time'
        assert exc_info.value.code == ErrorCode.SCHEDULE_INVALID_TIME

    def test_weekly_requires_day_of_week(self) -> None:
        body = _body()
        del body['dayOfWeek']

        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(body)

        assert exc_info.value.field == 'dayOfWeek'

    def test_day_of_week_out_of_range(self) -> None:
        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(_body(dayOfWeek=7))

        assert exc_info.value.field == 'dayOfWeek'
        assert exc_info.value.code == ErrorCode.SCHEDULE_INVALID_DAY_OF_WEEK

    def test_monthly_requires_day_of_month(self) -> None:
        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(_body(frequency='monthly'))

        assert exc_info.value.field == 'dayOfMonth'

    def test_day_of_month_out_of_range(self) -> None:
        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(_body(frequency='monthly', dayOfMonth=0))

        assert exc_info.value.field == 'dayOfMonth'

    def test_every_field_problem_reported_together(self) -> None:
        """Rule violations are collected, not reported one at a time."""
        with pytest.raises(MultipleValidationErrors) as exc_info:
            ScheduleInput.parse(
                _body(name='', recipients=['bad'], time='25:00', dayOfWeek=None)
            )

        assert _fields_of(exc_info.value) == {'name', 'recipients', 'time', 'dayOfWeek'}

    def test_type_errors_reported_together(self) -> None:
        with pytest.raises(MultipleValidationErrors) as exc_info:
            ScheduleInput.parse(_body(format='docx', frequency='hourly'))

        assert _fields_of(exc_info.value) == {'format', 'frequency'}

    def test_type_errors_do_not_hide_rule_violations(self) -> None:
        """A bad enum value still lets name/recipients/time rules report."""
        with pytest.raises(MultipleValidationErrors) as exc_info:
            ScheduleInput.parse(
                {
                    'name': '',
                    'frequency': 'hourly',
                    'format': 'csv',
                    'recipients': [],
                    'time': 'noon',
                }
            )

        assert _fields_of(exc_info.value) == {'frequency', 'name', 'recipients', 'time'}

    def test_missing_day_reported_alongside_bad_format(self) -> None:
        body = _body(format='docx')
        del body['dayOfWeek']

        with pytest.raises(MultipleValidationErrors) as exc_info:
            ScheduleInput.parse(body)

        errors = {err.field: err for err in iter_validation_errors(exc_info.value)}
        assert set(errors) == {'format', 'dayOfWeek'}
        assert errors['dayOfWeek'].code == ErrorCode.SCHEDULE_INVALID_DAY_OF_WEEK
        assert errors['dayOfWeek'].message == 'dayOfWeek is required for weekly schedules'
        assert errors['dayOfWeek'].help_text is not None

    def test_non_mapping_body(self) -> None:
        with pytest.raises(ScheduleValidationError) as exc_info:
            ScheduleInput.parse(['not', 'a', 'dict'])  # type: ignore[arg-type]

        assert exc_info.value.field == 'body'


class TestRecurrenceHelpers:
    """Tests for parse_time_of_day and build_recurrence."""

    def test_parse_time_of_day(self) -> None:
        assert parse_time_of_day('00:00') == datetime_time(0, 0)
        assert parse_time_of_day('23:59') == datetime_time(23, 59)

    def test_parse_time_of_day_rejects(self) -> None:
        with pytest.raises(ValueError):
            parse_time_of_day('7:5')

    def test_build_daily(self) -> None:
        assert build_recurrence('daily', '06:15') == DailyRecurrence(
            time=datetime_time(6, 15)
        )

    def test_build_monthly(self) -> None:
        assert build_recurrence(Frequency.MONTHLY, '06:15', None, 28) == MonthlyRecurrence(
            day_of_month=28, time=datetime_time(6, 15)
        )

    def test_build_weekly_without_day_raises(self) -> None:
        with pytest.raises(ValueError, match='day_of_week'):
            build_recurrence(Frequency.WEEKLY, '06:15')


class TestExportScheduleView:
    """Tests for the read projection."""

    def test_dumps_camel_case(self) -> None:
        now = datetime(2025, 6, 1, tzinfo=timezone.utc)
        row = SimpleNamespace(
            id='s1',
            tenant_id='t1',
            user_id='u1',
            name='Roster',
            description=None,
            frequency=Frequency.DAILY,
            day_of_week=None,
            day_of_month=None,
            time='09:00',
            format=ExportFormat.PDF,
            recipients=['a@b.co'],
            email_subject=None,
            email_body=None,
            filter_preset_id=None,
            is_active=True,
            next_fire_at=now,
            created_at=now,
            updated_at=now,
        )

        dumped = ExportScheduleView.model_validate(row).model_dump(by_alias=True)

        assert dumped['tenantId'] == 't1'
        assert dumped['isActive'] is True
        assert dumped['nextFireAt'] == now
        assert 'pending_execution_id' not in dumped
