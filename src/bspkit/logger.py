"""
Logging helpers for bspkit.

Loggers returned from :py:func:`get_logger` take :external:py:meth:`str.format()`
style arguments instead of ``%`` formatting, and can include context tags set with
:py:func:`context`.
"""
from typing import (
    TYPE_CHECKING, Any, Callable, Dict, Generator, List, Mapping, Optional, Tuple, Type,
    Union, cast,
)
from pathlib import Path
from types import TracebackType
import contextlib
import contextvars
import logging
import os
import sys

from bspkit import StringPath


__all__ = ['LoggerAdapter', 'get_handler', 'get_logger', 'init_logging', 'context']
CTX_STACK: 'contextvars.ContextVar[List[str]]' = contextvars.ContextVar('bspkit_logger')
DEBUG_VAR = 'BSPKIT_DEBUG'


class LogMessage:
    """Delays str.format() until the record is actually emitted."""
    fmt: str
    args: Tuple[object, ...]
    kwargs: Dict[str, object]

    def __init__(self, fmt: str, args: Tuple[object, ...], kwargs: Dict[str, object]) -> None:
        self.fmt = fmt
        self.args = args
        self.kwargs = kwargs

    def __str__(self) -> str:
        # Without arguments, braces in the message are left alone.
        if self.args or self.kwargs:
            self.fmt = self.fmt.format(*self.args, **self.kwargs)
            self.args = ()
            self.kwargs = {}
        if '\n' not in self.fmt:
            return self.fmt
        # Indent continuation lines, so they stay attached to the tag.
        lines = self.fmt.rstrip().split('\n')
        return '\n | '.join(lines) + '\n |___\n'


_SysExcInfoType = Union[
    Tuple[Type[BaseException], BaseException, Optional[TracebackType]],
    Tuple[None, None, None]
]
if TYPE_CHECKING:  # Only generic in stubs.
    _AdapterBase = logging.LoggerAdapter[logging.Logger]
else:
    _AdapterBase = logging.LoggerAdapter


class LoggerAdapter(_AdapterBase):
    """Wraps a logger to use str.format(), and apply the current context."""
    logger: logging.Logger
    alias: Optional[str]

    def __init__(self, logger: logging.Logger, alias: Optional[str] = None) -> None:
        self.alias = alias
        self.logger = logger
        logging.LoggerAdapter.__init__(self, logger, extra={})

    def log(
        self,
        level: int,
        msg: Any,
        *args: Any,
        exc_info: Union[None, bool, _SysExcInfoType, BaseException] = None,
        stack_info: bool = False,
        extra: Optional[Mapping[str, object]] = None,
        stacklevel: int = 0,
        **kwargs: Any,
    ) -> None:
        """Log a message, formatting with ``args`` and ``kwargs`` using :external:py:meth:`str.format()`."""
        if not self.isEnabledFor(level):
            return
        ctx = ', '.join(CTX_STACK.get([]))

        new_extra = {} if extra is None else dict(extra)
        new_extra['_bspkit_alias'] = self.alias
        new_extra['bspkit_context'] = f' ({ctx})' if ctx else ''

        # The adapter adds two extra frames in 3.10+.
        if sys.version_info >= (3, 10):
            stacklevel += 2

        # noinspection PyProtectedMember
        self.logger._log(
            level,
            LogMessage(str(msg), args, kwargs),
            (),
            extra=new_extra,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
        )

    def __getattr__(self, attr: str) -> Any:
        """Delegate unknown methods to the logger."""
        return getattr(self.logger, attr)


class Formatter(logging.Formatter):
    """Formatter which tolerates records produced by other loggers."""
    def format(self, record: logging.LogRecord) -> str:
        """Ensure a default context is set in the record."""
        record.__dict__.setdefault('bspkit_context', '')
        return super().format(record)


class NewLogRecord(logging.LogRecord):
    """Log record which allows overriding the displayed module name."""
    _bspkit_alias: Optional[str] = None
    bspkit_context: str = ''
    module: str

    def getMessage(self) -> str:
        """Apply the alias just before the message is formatted."""
        if self._bspkit_alias is not None:
            self.module = self._bspkit_alias
        return super().getMessage()


def get_handler(filename: StringPath, backups: int = 5) -> logging.FileHandler:
    """Shift previous log files up by one number, then open a fresh handler.

    ``map.log`` becomes ``map.1.log``, and so on up to ``backups``.
    """
    path = Path(filename)
    ext = ''.join(path.suffixes)
    stem = path.with_suffix('')
    while stem.suffix:
        stem = stem.with_suffix('')

    def numbered(num: int) -> Path:
        return stem.with_name(f'{stem.name}.{num}{ext}') if num else path

    numbered(backups).unlink(missing_ok=True)
    for num in reversed(range(backups)):
        try:
            numbered(num).rename(numbered(num + 1))
        except FileNotFoundError:
            pass
    return logging.FileHandler(path, mode='w', encoding='utf8')


def init_logging(
    filename: Optional[StringPath] = None,
    main_logger: str = '',
    *,
    error: Optional[Callable[[BaseException], object]] = None,
) -> logging.Logger:
    """Set up the root logger, console handlers and an optional log file.

    Console output is INFO and above, or DEBUG and above if the ``BSPKIT_DEBUG``
    environment variable is ``1``. Warnings and errors go to stderr instead of stdout.
    This also sets :py:func:`sys.excepthook`, so uncaught exceptions are logged, then
    passed to ``error`` if provided.
    """
    if logging.getLogRecordFactory() is not NewLogRecord:
        if logging.getLogRecordFactory() is not logging.LogRecord:
            raise ValueError('Unknown record factory: ', logging.getLogRecordFactory())
        logging.setLogRecordFactory(NewLogRecord)

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    long_log_format = Formatter(
        '[{levelname}]{bspkit_context} {module}.{funcName}(): {message}',
        style='{',
    )
    short_log_format = Formatter(
        '[{levelname[0]}]{bspkit_context} {module}.{funcName}(): {message}',
        style='{',
    )

    if filename is not None:
        Path(filename).parent.mkdir(parents=True, exist_ok=True)
        log_handler = get_handler(filename)
        log_handler.setLevel(logging.DEBUG)
        log_handler.setFormatter(long_log_format)
        logger.addHandler(log_handler)

    if sys.stdout is not None:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(
            logging.DEBUG if os.environ.get(DEBUG_VAR, '0') == '1' else logging.INFO
        )
        stdout_handler.setFormatter(short_log_format)
        # Warnings are sent to stderr instead.
        stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)
        logger.addHandler(stdout_handler)

    if sys.stderr is not None:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING)
        stderr_handler.setFormatter(short_log_format)
        logger.addHandler(stderr_handler)

    old_except_handler = sys.excepthook

    def except_handler(
        exc_type: Type[BaseException],
        exc_value: BaseException,
        exc_tb: Optional[TracebackType],
    ) -> None:
        """Log uncaught exceptions."""
        if isinstance(exc_value, (SystemExit, KeyboardInterrupt)):
            return
        logger.error('Uncaught Exception:', exc_info=(exc_type, exc_value, exc_tb))
        if error is not None:
            error(exc_value)
        if old_except_handler is not sys.__excepthook__:
            old_except_handler(exc_type, exc_value, exc_tb)

    sys.excepthook = except_handler

    return get_logger(main_logger)


def get_logger(name: str = '', alias: Optional[str] = None) -> logging.Logger:
    """Get the named logger object.

    This puts the logger into the ``bspkit`` namespace, and wraps it to
    use :external:py:meth:`str.format()` instead of ``%`` formatting.
    If set, ``alias`` is the name to show for the module.
    """
    if name.startswith('bspkit.') or name == 'bspkit':
        log = logging.getLogger(name)
    elif name:
        log = logging.getLogger('bspkit.' + name)
    else:
        log = logging.getLogger('bspkit')
    return cast(logging.Logger, LoggerAdapter(log, alias))


@contextlib.contextmanager
def context(name: str) -> Generator[str, None, None]:
    """Include the given tag in every message logged inside this block."""
    stack = CTX_STACK.get([])
    token = CTX_STACK.set([*stack, name])
    try:
        yield name
    finally:
        CTX_STACK.reset(token)
