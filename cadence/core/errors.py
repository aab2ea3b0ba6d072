"""Rust-style error display for cadence configuration and validation errors."""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

# Absolute path to the cadence package directory.
# Used by _find_user_frame to distinguish library frames from user code.
_CADENCE_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for configuration/validation errors.

    Organized by category:
    - E100-E199: Schedule definition errors
    - E200-E299: Config/database errors
    - E300-E399: Execution ledger errors
    """

    # Schedule definition (E100-E199)
    SCHEDULE_MISSING_NAME = 'E100'
    SCHEDULE_INVALID_FREQUENCY = 'E101'
    SCHEDULE_INVALID_FORMAT = 'E102'
    SCHEDULE_INVALID_RECIPIENTS = 'E103'
    SCHEDULE_INVALID_TIME = 'E104'
    SCHEDULE_INVALID_DAY_OF_WEEK = 'E105'
    SCHEDULE_INVALID_DAY_OF_MONTH = 'E106'
    SCHEDULE_INVALID_FIELD = 'E107'

    # Config/database (E200-E299)
    CONFIG_INVALID_DATABASE_URL = 'E200'
    CONFIG_INVALID_SWEEP = 'E201'
    CONFIG_INVALID_TIMEZONE = 'E202'
    CONFIG_INVALID_QUOTA = 'E203'
    CONFIG_INVALID_CAPABILITY = 'E204'

    # Execution ledger (E300-E399)
    EXECUTION_NOT_FOUND = 'E300'
    EXECUTION_INVALID_TRANSITION = 'E301'


# ANSI color codes
class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if os.environ.get('CADENCE_FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        return True

    # Check NO_COLOR standard (https://no-color.org/)
    if os.environ.get('NO_COLOR') is not None:
        return False

    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _should_show_verbose() -> bool:
    """Determine if verbose output (full traceback) should be shown."""
    return os.environ.get('CADENCE_VERBOSE', '').lower() in ('1', 'true', 'yes')


def _should_use_plain_errors() -> bool:
    """Determine if plain Python errors should be used instead of Rust-style."""
    return os.environ.get('CADENCE_PLAIN_ERRORS', '').lower() in ('1', 'true', 'yes')


@dataclass
class SourceLocation:
    """File and line of the user code that produced an error."""

    file: str
    line: int

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    def get_source_line(self) -> str | None:
        """The stripped source line, or None when the file is unreadable."""
        line = linecache.getline(self.file, self.line)
        return line.strip() or None

    def format_short(self) -> str:
        return f'{self.file}:{self.line}'


@dataclass
class CadenceError(Exception):
    """Base exception for cadence configuration/validation errors.

    Renders as:

        error[E203]: max_schedules_per_tenant must be positive
          --> app/settings.py:14
           | config = CadenceConfig(...)
           = note: got max_schedules_per_tenant=0
           = help: the default is 20

    Only error types with `locate_caller` set record where user code raised
    them; request validation errors carry a field name instead.
    """

    locate_caller: ClassVar[bool] = False

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

        if self.location is None and self.locate_caller:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error in Rust style."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        code_part = f'[{self.code.value}]' if self.code else ''
        lines = ['', f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}']

        if self.location:
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )
            source_line = self.location.get_source_line()
            if source_line:
                lines.append(f'   {c.BLUE}|{c.RESET} {source_line}')

        for note in self.notes:
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note}')

        if self.help_text:
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}: {self.help_text}'
            )

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain text rendering (no ANSI colors), safe for logs and storage."""
        return self.format_rust_style(use_colors=False)


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    DIM = ''


_original_excepthook = sys.excepthook


def _cadence_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Custom exception hook for CadenceError exceptions."""
    if _should_use_plain_errors():
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    if isinstance(exc_value, CadenceError):
        print(exc_value.format_rust_style(), file=sys.stderr)

        if _should_show_verbose():
            print(file=sys.stderr)
            c = _Colors if _should_use_colors() else _NoColors
            print(
                f'{c.DIM}Full traceback (CADENCE_VERBOSE=1):{c.RESET}',
                file=sys.stderr,
            )
            traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)
    else:
        _original_excepthook(exc_type, exc_value, exc_tb)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _cadence_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


# =============================================================================
# Specific Error Classes
# =============================================================================


@dataclass
class ConfigurationError(CadenceError):
    """Raised when service/database configuration is invalid."""

    locate_caller: ClassVar[bool] = True


@dataclass
class ScheduleValidationError(CadenceError):
    """Raised when an export schedule definition is invalid.

    `field` names the offending input field using its external (camelCase) name.
    """

    field: str | None = None


@dataclass
class ExecutionNotFoundError(CadenceError):
    """Raised when an execution id does not match any ledger row."""

    pass


@dataclass
class InvalidStateTransitionError(CadenceError):
    """Raised when a terminal execution is asked to change status."""

    pass


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple CadenceError instances within a validation phase.

    Formats all collected errors together with a summary line,
    similar to rustc's multi-error output.
    """

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[CadenceError] = []

    def add(self, error: CadenceError) -> None:
        """Append an error to the report."""
        self.errors.append(error)

    def has_errors(self) -> bool:
        """Return True if any errors were collected."""
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format all collected errors, then append an aborting summary."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts: list[str] = []

        for error in self.errors:
            parts.append(error.format_rust_style(use_colors=use_colors))

        count = len(self.errors)
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {count} previous errors'
        )

        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(CadenceError):
    """Wraps a ValidationReport containing 2+ errors.

    Raised when a validation phase collects multiple errors.
    Single errors are raised as their original type.
    """

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            count = len(self.report.errors)
            self.message = f'aborting due to {count} previous errors'
        # Location is per-error in the report
        super(CadenceError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Delegate formatting to the underlying report."""
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op (returns normally)
    - 1 error: raises the original error
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def iter_validation_errors(
    exc: CadenceError,
) -> list[ScheduleValidationError]:
    """Flatten a raised validation error into its ScheduleValidationError parts."""
    if isinstance(exc, MultipleValidationErrors):
        return [
            err for err in exc.report.errors if isinstance(err, ScheduleValidationError)
        ]
    if isinstance(exc, ScheduleValidationError):
        return [exc]
    return []


def _find_user_frame() -> Any | None:
    """Find the first frame outside of cadence internals."""
    frame = inspect.currentframe()
    if frame is None:
        return None

    while frame is not None:
        filename = frame.f_code.co_filename

        # Skip synthetic frames (e.g., <string>, <module>)
        if filename.startswith('<'):
            frame = frame.f_back
            continue

        if not filename.startswith(_CADENCE_PKG_DIR) and '/site-packages/' not in filename:
            return frame

        frame = frame.f_back

    return None
