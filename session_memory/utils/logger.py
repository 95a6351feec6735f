"""Structured logging with automatic operation-context injection.

Log level guidelines:
   - ERROR: summarizer failures, failed manifest commits
   - WARNING: integrity anomalies (index/timestamp divergence, stale locks,
     missing artifacts, keep markers that did not make it into the output)
   - INFO: compression / composition start and completion
   - DEBUG: routine reads and lock bookkeeping

Always pass contextual data through ``extra``::

    logger.info(
        "Compression completed",
        extra={"session_id": session_id, "duration_ms": duration},
    )

Project and session ids bound with ``bind_operation_context`` are added
to every record emitted while the context is active.
"""

import functools
import inspect
import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterator, TypeVar

import structlog
from pythonjsonlogger import jsonlogger

if TYPE_CHECKING:
    from ..config.models import LoggingConfig

F = TypeVar('F', bound=Callable[..., Any])

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-40s | %(message)s"

# Error categories that are refusals of a request rather than faults
_EXPECTED_CATEGORIES = {"validation", "conflict", "not_found", "content"}


def setup_logging(config: "LoggingConfig") -> None:
    """Configure stdlib handlers and structlog processors.

    Args:
        config: Logging configuration
    """
    handlers: list[logging.Handler] = []

    if config.format == "json":
        formatter: logging.Formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "module"},
        )
    else:
        formatter = logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if config.console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(
        level=getattr(logging, config.level.upper()),
        handlers=handlers,
        force=True,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
        **kwargs: Additional context to bind to the logger
    """
    logger = structlog.get_logger(name)
    if kwargs:
        logger = logger.bind(**kwargs)
    return logger


@contextmanager
def bind_operation_context(**context: Any) -> Iterator[None]:
    """Attach ids (project_id, session_id, operation) to every log line inside the block."""
    tokens = structlog.contextvars.bind_contextvars(**context)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def _preview(result: Any) -> Any:
    if result is None:
        return None
    if isinstance(result, dict):
        return {k: type(v).__name__ for k, v in list(result.items())[:5]}
    if isinstance(result, (list, tuple)):
        return f"{type(result).__name__}[{len(result)}]"
    return type(result).__name__


def log_execution(func: F) -> F:
    """Decorator logging entry, exit, duration and exceptions.

    Exit is logged at INFO when the call took longer than 100ms,
    DEBUG otherwise. Refusals (validation, conflict, not found, content
    errors) are logged at WARNING, everything else at ERROR.
    """
    logger = get_logger(func.__module__)
    func_name = func.__qualname__

    def _entry(args: tuple, kwargs: dict) -> None:
        params = {}
        if args:
            params['args_count'] = len(args)
        if kwargs:
            params['kwargs'] = sorted(kwargs)
        logger.debug(f"Entering {func_name}", extra={'function': func_name, 'params': params})

    def _failure(start: float, e: Exception) -> None:
        category = getattr(getattr(e, 'category', None), 'value', None)
        log_method = logger.warning if category in _EXPECTED_CATEGORIES else logger.error
        log_method(
            f"Exception in {func_name}",
            extra={
                'function': func_name,
                'error': str(e),
                'error_type': type(e).__name__,
                'error_code': getattr(getattr(e, 'code', None), 'value', None),
                'duration_ms': round((time.time() - start) * 1000, 2),
            },
        )

    def _exit(start: float, result: Any) -> None:
        elapsed_ms = (time.time() - start) * 1000
        log_method = logger.info if elapsed_ms > 100 else logger.debug
        log_method(
            f"Exiting {func_name}",
            extra={
                'function': func_name,
                'duration_ms': round(elapsed_ms, 2),
                'result_type': _preview(result),
            }
        )

    @functools.wraps(func)
    async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
        _entry(args, kwargs)
        start = time.time()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            _failure(start, e)
            raise
        _exit(start, result)
        return result

    @functools.wraps(func)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        _entry(args, kwargs)
        start = time.time()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            _failure(start, e)
            raise
        _exit(start, result)
        return result

    if inspect.iscoroutinefunction(func):
        return async_wrapper  # type: ignore
    return sync_wrapper  # type: ignore
