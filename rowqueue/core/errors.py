"""Compiler-style display for rowqueue startup/configuration errors.

A ``RowQueueError`` renders as::

    error[E201]: invalid database URL
      --> app.py:12
       |
     12| app = RowQueue(database_url='mysql://...')
       | ^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^
       = note: ...
       = help:
            ...

Environment switches: ``ROWQUEUE_FORCE_COLOR``, ``NO_COLOR``,
``ROWQUEUE_VERBOSE`` (append the traceback) and ``ROWQUEUE_PLAIN_ERRORS``
(leave the default excepthook alone).
"""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

_ROWQUEUE_PKG_DIR = str(Path(__file__).absolute().parent.parent)
_TRUTHY = frozenset({'1', 'true', 'yes'})


class ErrorCode(str, Enum):
    """Codes shown in ``error[...]``.

    E2xx: configuration, connection and CLI input.
    E3xx: handler registry.
    """

    CONFIG_MISSING_DATABASE = 'E200'
    CONFIG_INVALID_DATABASE_URL = 'E201'
    CONFIG_INVALID_FRAMEWORK_CONFIG = 'E202'
    CONFIG_INVALID_WORKER = 'E203'
    CLI_INVALID_ARGS = 'E206'
    WORKER_INVALID_LOCATOR = 'E207'

    HANDLER_NOT_REGISTERED = 'E300'
    HANDLER_DUPLICATE_NAME = 'E301'
    HANDLER_INVALID_NAME = 'E302'


@dataclass(frozen=True)
class _Palette:
    reset: str = ''
    bold: str = ''
    red: str = ''
    blue: str = ''
    cyan: str = ''
    green: str = ''
    dim: str = ''


_ANSI = _Palette(
    reset='\033[0m',
    bold='\033[1m',
    red='\033[91m',
    blue='\033[94m',
    cyan='\033[96m',
    green='\033[92m',
    dim='\033[2m',
)
_PLAIN = _Palette()


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').strip().lower() in _TRUTHY


def _stderr_is_tty() -> bool:
    isatty = getattr(sys.stderr, 'isatty', None)
    return bool(isatty is not None and isatty())


def _palette(use_colors: bool | None = None) -> _Palette:
    if use_colors is None:
        if _env_flag('ROWQUEUE_FORCE_COLOR'):
            use_colors = True
        elif 'NO_COLOR' in os.environ:
            # https://no-color.org/
            use_colors = False
        else:
            use_colors = _stderr_is_tty()
    return _ANSI if use_colors else _PLAIN


@dataclass
class SourceLocation:
    """A file and 1-based line number."""

    file: str
    line: int

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    @classmethod
    def from_function(cls, fn: Callable[..., Any]) -> SourceLocation | None:
        """Location of ``def fn``; None for builtins, partials and mocks."""
        code = getattr(fn, '__code__', None)
        if code is None:
            return None
        return cls(file=code.co_filename, line=code.co_firstlineno)

    def get_source_line(self) -> str | None:
        text = linecache.getline(self.file, self.line).rstrip('\n')
        return text or None

    def format_short(self) -> str:
        return f'{self.file}:{self.line}'


def _snippet_lines(location: SourceLocation, p: _Palette) -> list[str]:
    out = [f'  {p.blue}-->{p.reset} {p.cyan}{location.format_short()}{p.reset}']
    source = location.get_source_line()
    if source is None:
        return out
    number = str(location.line)
    gutter = ' ' * len(number)
    code = source.lstrip()
    carets = ' ' * (len(source) - len(code)) + '^' * len(code)
    out.append(f'   {p.blue}{gutter}|{p.reset}')
    out.append(f'   {p.blue}{number}|{p.reset} {source}')
    out.append(f'   {p.blue}{gutter}|{p.reset} {p.red}{carets}{p.reset}')
    return out


def _note_lines(note: str, p: _Palette) -> list[str]:
    head, *tail = note.split('\n')
    out = [f'   {p.blue}={p.reset} {p.bold}{p.blue}note{p.reset}: {head}']
    out.extend(f'          {line}' for line in tail)
    return out


def _help_lines(help_text: str, p: _Palette) -> list[str]:
    out = ['', f'   {p.blue}={p.reset} {p.bold}{p.green}help{p.reset}:']
    out.extend(f'        {line}' for line in help_text.split('\n'))
    return out


@dataclass
class RowQueueError(Exception):
    """Base class for errors raised before any job runs.

    ``location`` defaults to the first caller frame outside the package, so
    a bad ``RowQueue(...)`` call points at the user's line.
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=list)
    help_text: str | None = None

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)
        if self.location is None:
            frame = _find_user_frame()
            if frame is not None:
                self.location = SourceLocation.from_frame(frame)

    def with_note(self, note: str) -> RowQueueError:
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> RowQueueError:
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        p = _palette(use_colors)
        code = f'[{self.code.value}]' if self.code is not None else ''
        out = ['', f'{p.bold}{p.red}error{code}:{p.reset} {self.message}']
        if self.location is not None:
            out += _snippet_lines(self.location, p)
        for note in self.notes:
            out += _note_lines(note, p)
        if self.help_text:
            out += _help_lines(self.help_text, p)
        return '\n'.join(out)

    def __str__(self) -> str:
        # Log sinks get no escape codes.
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _rowqueue_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    if _env_flag('ROWQUEUE_PLAIN_ERRORS') or not isinstance(exc_value, RowQueueError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    p = _palette()
    print(exc_value.format_rust_style(use_colors=p is _ANSI), file=sys.stderr)
    if _env_flag('ROWQUEUE_VERBOSE'):
        print(f'\n{p.dim}Full traceback (ROWQUEUE_VERBOSE=1):{p.reset}', file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Route uncaught RowQueueError through the compiler-style formatter."""
    sys.excepthook = _rowqueue_excepthook


def uninstall_error_handler() -> None:
    sys.excepthook = _original_excepthook


@dataclass
class ConfigurationError(RowQueueError):
    """Connection, app or worker configuration is invalid or missing."""


@dataclass
class RegistryError(RowQueueError):
    """A handler could not be registered or resolved."""


class ValidationReport:
    """Errors gathered during one validation pass, raised together."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name = phase_name
        self.errors: list[RowQueueError] = []

    def add(self, error: RowQueueError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        p = _palette(use_colors)
        colored = p is _ANSI
        blocks = [error.format_rust_style(use_colors=colored) for error in self.errors]
        blocks.append(
            f'\n{p.bold}{p.red}error{p.reset}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(blocks)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(RowQueueError):
    """Two or more errors from one ``ValidationReport``."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Each wrapped error carries its own location.
        Exception.__init__(self, self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """No-op when empty, the lone error itself, or MultipleValidationErrors."""
    match report.errors:
        case []:
            return
        case [only]:
            raise only
        case errors:
            raise MultipleValidationErrors(
                message=f'aborting due to {len(errors)} previous errors',
                report=report,
            )


def _is_library_file(filename: str) -> bool:
    return (
        filename.startswith('<')
        or filename.startswith(_ROWQUEUE_PKG_DIR)
        or '/site-packages/' in filename
    )


def _find_user_frame() -> Any | None:
    """Nearest caller frame that belongs to neither rowqueue nor an installed package."""
    frame = inspect.currentframe()
    while frame is not None and _is_library_file(frame.f_code.co_filename):
        frame = frame.f_back
    return frame
