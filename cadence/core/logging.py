# cadence/core/logging.py
"""
Component loggers for cadence.

Every logger is named `cadence.<component>` and writes tabular lines to
stdout:

    [14:02:11] [scheduler.store]   [INFO]    Created schedule 's1' ...

Colors are used only when stdout is a terminal. NO_COLOR disables them and
CADENCE_FORCE_COLOR=1 forces them. CADENCE_LOG_LEVEL (DEBUG, INFO, ...)
sets the starting level.
"""

import logging
import os
import sys
from datetime import datetime
from typing import IO, Optional

_ROOT = 'cadence'

# Widest tag is [scheduler.ledger]
_COMPONENT_WIDTH = 20
_LEVEL_WIDTH = 10


def _level_from_env() -> int:
    level = logging.getLevelName(os.environ.get('CADENCE_LOG_LEVEL', 'INFO').upper())
    return level if isinstance(level, int) else logging.INFO


# Level for new loggers; set_default_level() also re-levels existing ones
_default_level: int = _level_from_env()


def _stream_supports_color(stream: IO[str]) -> bool:
    if os.environ.get('CADENCE_FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        return True
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(stream, 'isatty') and stream.isatty()


class ComponentFormatter(logging.Formatter):
    """Formats `[time] [component] [LEVEL] message`, optionally colored."""

    RESET = '\033[0m'
    TIME_COLOR = '\033[94m'
    TEXT_COLOR = '\033[97m'

    LEVEL_COLORS = {
        'DEBUG': '\033[90m',
        'INFO': '\033[92m',
        'WARNING': '\033[93m',
        'ERROR': '\033[91m',
        'CRITICAL': '\033[1;91m',
    }

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors

    def _paint(self, text: str, color: str) -> str:
        return f'{color}{text}{self.RESET}' if self.use_colors else text

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'cadence.scheduler.store' -> 'scheduler.store'
        component = record.name
        if component.startswith(f'{_ROOT}.'):
            component = component[len(_ROOT) + 1 :]

        level_color = self.LEVEL_COLORS.get(record.levelname, self.TEXT_COLOR)
        formatted = (
            self._paint(f'[{time_str}]', self.TIME_COLOR)
            + ' '
            + self._paint(f'[{component}]'.ljust(_COMPONENT_WIDTH), self.TEXT_COLOR)
            + self._paint(f'[{record.levelname}]'.ljust(_LEVEL_WIDTH), level_color)
            + self._paint(record.getMessage(), self.TEXT_COLOR)
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the level of every cadence logger, existing and future."""
    global _default_level
    _default_level = level
    for name, existing in logging.Logger.manager.loggerDict.items():
        if name.startswith(f'{_ROOT}.') and isinstance(existing, logging.Logger):
            existing.setLevel(level)
            for handler in existing.handlers:
                handler.setLevel(level)


def get_logger(component_name: str, stream: Optional[IO[str]] = None) -> logging.Logger:
    """
    Get the logger for a component, e.g. `get_logger('scheduler.store')`.

    The handler is attached on first use only; `stream` (default stdout)
    is ignored for a logger that already exists.
    """
    logger = logging.getLogger(f'{_ROOT}.{component_name}')

    if not logger.handlers:
        out = stream if stream is not None else sys.stdout
        handler = logging.StreamHandler(out)
        handler.setFormatter(ComponentFormatter(use_colors=_stream_supports_color(out)))
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)
        logger.propagate = False

    return logger
