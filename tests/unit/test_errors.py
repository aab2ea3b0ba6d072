"""Unit tests for Rust-style error formatting and error collection."""

from __future__ import annotations

import inspect
import os
import sys
import tempfile
from io import StringIO
from unittest import mock

import pytest

from cadence.core.errors import (
    CadenceError,
    ConfigurationError,
    ErrorCode,
    ExecutionNotFoundError,
    InvalidStateTransitionError,
    MultipleValidationErrors,
    ScheduleValidationError,
    SourceLocation,
    ValidationReport,
    _cadence_excepthook,
    _should_show_verbose,
    _should_use_colors,
    _should_use_plain_errors,
    install_error_handler,
    iter_validation_errors,
    raise_collected,
    uninstall_error_handler,
)

pytestmark = pytest.mark.unit


# =============================================================================
# SourceLocation Tests
# =============================================================================


class TestSourceLocation:
    """Tests for SourceLocation."""

    def test_format_short(self) -> None:
        loc = SourceLocation(file='/path/to/file.py', line=42)
        assert loc.format_short() == '/path/to/file.py:42'

    def test_get_source_line_existing_file(self) -> None:
        with tempfile.NamedTemporaryFile(mode='w', suffix='.py', delete=False) as f:
            f.write('line 1\n')
            f.write('    line 2\n')
            temp_path = f.name

        try:
            loc = SourceLocation(file=temp_path, line=2)
            assert loc.get_source_line() == 'line 2'
        finally:
            os.unlink(temp_path)

    def test_get_source_line_nonexistent_file(self) -> None:
        loc = SourceLocation(file='/nonexistent/path.py', line=1)
        assert loc.get_source_line() is None

    def test_from_frame(self) -> None:
        frame = inspect.currentframe()
        assert frame is not None
        loc = SourceLocation.from_frame(frame)
        assert loc.file.endswith('test_errors.py')
        assert loc.line > 0


# =============================================================================
# CadenceError Tests
# =============================================================================


class TestCadenceError:
    """Tests for CadenceError base class."""

    def test_basic_creation(self) -> None:
        err = CadenceError(message='something went wrong')
        assert err.message == 'something went wrong'
        assert err.code is None
        assert err.notes == []
        assert err.help_text is None

    def test_exception_args_contains_message(self) -> None:
        err = CadenceError(message='msg')
        assert err.args == ('msg',)

    def test_configuration_error_locates_caller(self) -> None:
        """Location is taken from the first frame outside the package."""
        err = ConfigurationError(message='auto-located')
        assert err.location is not None
        assert err.location.file.endswith('test_errors.py')

    def test_request_validation_error_has_no_location(self) -> None:
        err = ScheduleValidationError(message='bad time', field='time')
        assert err.location is None
        assert '-->' not in str(err)

    def test_format_with_code(self) -> None:
        err = CadenceError(
            message='recipients must not be empty',
            code=ErrorCode.SCHEDULE_INVALID_RECIPIENTS,
        )
        formatted = err.format_rust_style(use_colors=False)
        assert 'error[E103]:' in formatted
        assert 'recipients must not be empty' in formatted

    def test_format_with_location_snippet(self) -> None:
        with tempfile.NamedTemporaryFile(mode='w', suffix='.py', delete=False) as f:
            f.write('x = 1\n')
            f.write('    config = load()\n')
            temp_path = f.name

        try:
            err = CadenceError(
                message='bad config',
                location=SourceLocation(file=temp_path, line=2),
            )
            formatted = err.format_rust_style(use_colors=False)
            assert f'--> {temp_path}:2' in formatted
            assert '| config = load()' in formatted
        finally:
            os.unlink(temp_path)

    def test_format_notes_and_help(self) -> None:
        err = CadenceError(
            message='error',
            notes=['first note', 'second note'],
            help_text='try this',
        )
        formatted = err.format_rust_style(use_colors=False)
        assert '= note: first note' in formatted
        assert '= note: second note' in formatted
        assert '= help: try this' in formatted

    def test_format_with_colors(self) -> None:
        err = CadenceError(message='colored error')
        assert '\033[' in err.format_rust_style(use_colors=True)

    def test_default_colors_auto_detects(self) -> None:
        err = CadenceError(message='auto')
        with mock.patch('cadence.core.errors._should_use_colors', return_value=False):
            formatted = err.format_rust_style(use_colors=None)
        assert '\033[' not in formatted

    def test_str_is_plain(self) -> None:
        err = CadenceError(message='test')
        assert 'error: test' in str(err)
        assert '\033[' not in str(err)


class TestSpecificErrors:
    """Tests for the concrete error subclasses."""

    @pytest.mark.parametrize(
        'cls',
        [
            ConfigurationError,
            ScheduleValidationError,
            ExecutionNotFoundError,
            InvalidStateTransitionError,
        ],
    )
    def test_inherit_from_cadence_error(self, cls: type[CadenceError]) -> None:
        err = cls(message='x')
        assert isinstance(err, CadenceError)
        assert isinstance(err, Exception)

    def test_schedule_validation_error_field(self) -> None:
        err = ScheduleValidationError(
            message='bad time',
            code=ErrorCode.SCHEDULE_INVALID_TIME,
            field='time',
        )
        assert err.field == 'time'
        assert 'error[E104]:' in str(err)


# =============================================================================
# Error collection
# =============================================================================


class TestRaiseCollected:
    """Tests for ValidationReport + raise_collected."""

    def test_no_errors_is_noop(self) -> None:
        raise_collected(ValidationReport('schedule'))

    def test_single_error_raised_as_is(self) -> None:
        report = ValidationReport('schedule')
        original = ScheduleValidationError(message='bad', field='name')
        report.add(original)

        with pytest.raises(ScheduleValidationError) as exc_info:
            raise_collected(report)

        assert exc_info.value is original

    def test_multiple_errors_wrapped(self) -> None:
        report = ValidationReport('schedule')
        report.add(ScheduleValidationError(message='a', field='name'))
        report.add(ScheduleValidationError(message='b', field='time'))

        with pytest.raises(MultipleValidationErrors) as exc_info:
            raise_collected(report)

        assert len(exc_info.value.report.errors) == 2
        assert 'aborting due to 2 previous errors' in str(exc_info.value)

    def test_iter_validation_errors_flattens(self) -> None:
        report = ValidationReport('schedule')
        report.add(ScheduleValidationError(message='a', field='name'))
        report.add(ConfigurationError(message='unrelated'))
        report.add(ScheduleValidationError(message='b', field='time'))
        wrapped = MultipleValidationErrors(message='', report=report)

        assert [e.field for e in iter_validation_errors(wrapped)] == ['name', 'time']

    def test_iter_validation_errors_single(self) -> None:
        err = ScheduleValidationError(message='a', field='recipients')
        assert iter_validation_errors(err) == [err]

    def test_iter_validation_errors_other(self) -> None:
        assert iter_validation_errors(ConfigurationError(message='x')) == []


# =============================================================================
# Environment switches and excepthook
# =============================================================================


class TestEnvironmentSwitches:
    """Tests for CADENCE_* environment variables."""

    def test_force_color(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv('CADENCE_FORCE_COLOR', '1')
        assert _should_use_colors() is True

    def test_no_color(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv('CADENCE_FORCE_COLOR', raising=False)
        monkeypatch.setenv('NO_COLOR', '')
        assert _should_use_colors() is False

    def test_verbose(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv('CADENCE_VERBOSE', 'true')
        assert _should_show_verbose() is True

    def test_plain_errors(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv('CADENCE_PLAIN_ERRORS', 'yes')
        assert _should_use_plain_errors() is True


class TestExcepthook:
    """Tests for install/uninstall and the hook itself."""

    def test_install_and_uninstall(self) -> None:
        original = sys.excepthook
        try:
            install_error_handler()
            assert sys.excepthook is _cadence_excepthook
            uninstall_error_handler()
            assert sys.excepthook is not _cadence_excepthook
        finally:
            sys.excepthook = original

    def test_hook_prints_rust_style(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv('CADENCE_PLAIN_ERRORS', raising=False)
        monkeypatch.delenv('CADENCE_VERBOSE', raising=False)
        monkeypatch.setenv('NO_COLOR', '1')
        monkeypatch.delenv('CADENCE_FORCE_COLOR', raising=False)
        err = ConfigurationError(message='bad url', code=ErrorCode.CONFIG_INVALID_DATABASE_URL)
        buffer = StringIO()

        with mock.patch.object(sys, 'stderr', buffer):
            _cadence_excepthook(type(err), err, None)

        assert 'error[E200]: bad url' in buffer.getvalue()

    def test_hook_delegates_non_cadence_errors(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv('CADENCE_PLAIN_ERRORS', raising=False)
        err = RuntimeError('boom')

        with mock.patch('cadence.core.errors._original_excepthook') as original:
            _cadence_excepthook(type(err), err, None)

        original.assert_called_once_with(RuntimeError, err, None)
