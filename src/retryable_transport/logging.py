"""Structured logging helpers with correlation IDs.

This module provides a LoggerAdapter that injects structured fields
(correlation_id, operation, status) into every record, a JSON formatter
for applications that want machine-readable logs, and module-level
loggers with NullHandler so the library never configures output itself.

Examples
--------
>>> from retryable_transport.logging import get_logger
>>> logger = get_logger(__name__)
>>> logger.info("Attempt started", extra={"operation": "http.attempt", "status": "started"})
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from typing import TYPE_CHECKING, Any, Self

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from types import TracebackType

__all__ = [
    "CorrelationContext",
    "JsonFormatter",
    "LoggerAdapter",
    "get_correlation_id",
    "get_logger",
    "set_correlation_id",
    "setup_logging",
]

# Context variable for correlation ID propagation (async-safe)
_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

_STRUCTURED_FIELDS = ("correlation_id", "operation", "status", "duration_ms")

# Standard LogRecord attributes that never go into the JSON payload
_EXCLUDED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "ts",
    }
)


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Formats log records as JSON with timestamp, level, name, message and
    the structured fields. Falls back to the correlation ID held in
    contextvars when the record does not carry one.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Parameters
        ----------
        record : logging.LogRecord
            Log record to format. May include extra fields in record.__dict__.

        Returns
        -------
        str
            JSON-encoded log entry. Extra fields are included when they are
            plain JSON scalars, lists or dicts.
        """
        data: dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        for field in _STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                data[field] = value

        if "correlation_id" not in data:
            ctx_correlation_id = _correlation_id.get()
            if ctx_correlation_id is not None:
                data["correlation_id"] = ctx_correlation_id

        for key, value in record.__dict__.items():
            if (
                key not in _EXCLUDED_ATTRS
                and key not in data
                and not key.startswith("_")
                and value is not None
                and isinstance(value, (str, int, float, bool, list, dict))
            ):
                data[key] = value

        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


class LoggerAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Logger adapter that injects structured context fields.

    Every record gets ``operation`` and ``status`` (inferred from the level
    when missing) and the current correlation ID from contextvars.

    Parameters
    ----------
    logger : logging.Logger
        Base logger instance to wrap.
    extra : Mapping[str, object] | None, optional
        Fields bound to every record emitted through this adapter.
    """

    logger: logging.Logger

    def log(self, level: int, msg: object, *args: object, **kwargs: Any) -> None:
        """Log a message at the given level with structured fields."""
        if not self.isEnabledFor(level):
            return
        extra = kwargs.get("extra")
        extra = dict(extra) if isinstance(extra, dict) else {}
        if self.extra:
            for key, value in self.extra.items():
                extra.setdefault(key, value)
        if "correlation_id" not in extra:
            ctx_correlation_id = _correlation_id.get()
            if ctx_correlation_id is not None:
                extra["correlation_id"] = ctx_correlation_id
        self._ensure_operation_and_status(extra, level)
        kwargs["extra"] = extra
        self.logger.log(level, msg, *args, **kwargs)

    def process(
        self, msg: object, kwargs: MutableMapping[str, Any]
    ) -> tuple[object, MutableMapping[str, Any]]:
        """Return message and kwargs unchanged; fields are merged in :meth:`log`."""
        return msg, kwargs

    @staticmethod
    def _ensure_operation_and_status(extra: dict[str, Any], level: int) -> None:
        if "operation" not in extra:
            extra["operation"] = "unknown"
        if "status" not in extra:
            if level >= logging.ERROR:
                extra["status"] = "error"
            elif level >= logging.WARNING:
                extra["status"] = "warning"
            else:
                extra["status"] = "success"


def get_logger(name: str) -> LoggerAdapter:
    """Get a logger adapter with structured logging support.

    Module-level loggers use NullHandler to prevent duplicate handlers in
    libraries. Applications configure output via :func:`setup_logging`.

    Parameters
    ----------
    name : str
        Logger name (typically ``__name__`` of the calling module).

    Returns
    -------
    LoggerAdapter
        Logger adapter with structured context injection.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return LoggerAdapter(logger, {})


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure the root logger with JSON output on stdout.

    Parameters
    ----------
    level : int | str, optional
        Logging level threshold, as a number or a level name such as
        ``"DEBUG"``. Defaults to ``logging.INFO``.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID in context for async propagation.

    Parameters
    ----------
    correlation_id : str | None
        Correlation ID to set (or None to clear).
    """
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    """Return the current correlation ID, or None if unset."""
    return _correlation_id.get()


class CorrelationContext:
    """Context manager that scopes a correlation ID.

    The previous correlation ID is restored when the context exits.

    Parameters
    ----------
    correlation_id : str | None
        Correlation ID injected into all log entries within the context.

    Examples
    --------
    >>> from retryable_transport.logging import CorrelationContext, get_correlation_id
    >>> with CorrelationContext("req-123"):
    ...     get_correlation_id()
    'req-123'
    """

    def __init__(self, correlation_id: str | None) -> None:
        self.correlation_id = correlation_id
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> Self:
        self._token = _correlation_id.set(self.correlation_id)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _correlation_id.reset(self._token)
            self._token = None
        del exc_type, exc_val, exc_tb
