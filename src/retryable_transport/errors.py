"""Error codes and exception hierarchy for the retrying transports.

Every exception raised by this package inherits from
:class:`RetryableTransportError`, which carries a stable :class:`ErrorCode`,
an optional cause and a context mapping for structured logging.

Exceptions raised by the wrapped transport are never wrapped: they reach the
caller unchanged. The classes below only cover conditions this package
creates itself.

Examples
--------
>>> from retryable_transport.errors import ConfigurationError, ErrorCode
>>> error = ConfigurationError.with_details(field="max_retries", issue="Must be >= 0")
>>> error.code == ErrorCode.CONFIGURATION_ERROR
True
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

__all__ = [
    "ConfigurationError",
    "ErrorCode",
    "PolicyLoadError",
    "RetryCancelledError",
    "RetryableTransportError",
    "SettingsError",
    "ShouldRetryResponseError",
]


class ErrorCode(StrEnum):
    """Stable error codes for retryable transport exceptions.

    Attributes
    ----------
    RETRY_SIGNAL
        The last attempt produced a response the retry predicate rejected.
    RETRY_CANCELLED
        The backoff wait was cancelled.
    CONFIGURATION_ERROR
        Invalid construction arguments, policy values or settings.
    POLICY_LOAD_ERROR
        A policy document could not be found or failed validation.
    """

    RETRY_SIGNAL = "retry-signal"
    RETRY_CANCELLED = "retry-cancelled"
    CONFIGURATION_ERROR = "configuration-error"
    POLICY_LOAD_ERROR = "policy-load-error"


class RetryableTransportError(Exception):
    """Base exception for all errors raised by this package.

    Parameters
    ----------
    message : str
        Human-readable error message.
    code : ErrorCode
        Stable error code.
    log_level : int, optional
        Level used when the error is logged. Defaults to ``logging.ERROR``.
    cause : Exception | None, optional
        Underlying exception. Stored as ``__cause__``. Defaults to None.
    context : Mapping[str, object] | None, optional
        Additional structured details. Defaults to None.

    Attributes
    ----------
    message : str
        Human-readable error message.
    code : ErrorCode
        Stable error code.
    log_level : int
        Level used when the error is logged.
    context : dict[str, object]
        Additional structured details.
    """

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        log_level: int = logging.ERROR,
        cause: Exception | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.log_level = log_level
        self.context = dict(context) if context else {}
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        """Return formatted error string.

        Returns
        -------
        str
            Formatted error string, e.g.
            ``"RetryCancelledError[retry-cancelled]: backoff wait cancelled"``.
        """
        base = f"{self.__class__.__name__}[{self.code.value}]: {self.message}"
        if self.__cause__:
            base += f" (caused by: {type(self.__cause__).__name__})"
        return base


class ShouldRetryResponseError(RetryableTransportError):
    """Retry signal raised when a response, not an exception, warranted a retry.

    The retry loop uses this exception internally to tell the backoff
    machinery that the wrapped transport returned a response which the retry
    predicate rejected (a 429, for instance). When retries run out while this
    was the most recent outcome, it is what the caller receives.

    This means exhausting retries on a retryable *response* surfaces as an
    exception, while a retryable *transport exception* surfaces as itself.
    Catch this class to tell the two apart; :attr:`response` and
    :attr:`attempts` expose the terminal state.

    Parameters
    ----------
    response : httpx.Response
        Response returned by the attempt. It has been read and closed, so
        ``status_code``, ``headers`` and ``content`` remain available.
    attempts : int
        Number of attempts made when this signal was raised.

    Attributes
    ----------
    response : httpx.Response
        Response of the attempt that raised the signal.
    attempts : int
        Number of attempts made so far.
    """

    def __init__(self, response: httpx.Response, attempts: int) -> None:
        super().__init__(
            "should retry response error",
            code=ErrorCode.RETRY_SIGNAL,
            log_level=logging.WARNING,
            context={"status_code": response.status_code, "attempts": attempts},
        )
        self.response = response
        self.attempts = attempts


class RetryCancelledError(RetryableTransportError):
    """Raised when the backoff wait between attempts is cancelled.

    Parameters
    ----------
    message : str, optional
        Human-readable error message.
    """

    def __init__(self, message: str = "backoff wait cancelled") -> None:
        super().__init__(message, code=ErrorCode.RETRY_CANCELLED, log_level=logging.INFO)


class ConfigurationError(RetryableTransportError):
    """Error raised for invalid transport arguments or policy values.

    Parameters
    ----------
    message : str
        Human-readable error message describing the configuration failure.
    cause : Exception | None, optional
        Underlying exception. Defaults to None.
    context : Mapping[str, object] | None, optional
        Additional context dictionary for error details. Defaults to None.
    """

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.CONFIGURATION_ERROR,
            log_level=logging.CRITICAL,
            cause=cause,
            context=context,
        )

    @classmethod
    def with_details(
        cls,
        *,
        field: str,
        issue: str,
        hint: str | None = None,
    ) -> ConfigurationError:
        """Create a ConfigurationError with structured validation details.

        Parameters
        ----------
        field : str
            Name of the configuration field that failed validation.
        issue : str
            Description of the validation issue (e.g., "Must be >= 0").
        hint : str | None, optional
            Optional hint for resolving the issue. Defaults to ``None``.

        Returns
        -------
        ConfigurationError
            New instance with details captured in context.
        """
        details: dict[str, object] = {
            "field": field,
            "issue": issue,
        }
        if hint is not None:
            details["hint"] = hint

        message = f"Configuration validation failed for field '{field}': {issue}"
        return cls(message, context=details)


class SettingsError(ConfigurationError):
    """Error raised when environment settings validation fails.

    Parameters
    ----------
    message : str
        Human-readable error message.
    errors : list[dict[str, object]] | None, optional
        Validation error entries with field/issue details. Defaults to None.
    cause : Exception | None, optional
        Underlying exception. Defaults to None.
    """

    def __init__(
        self,
        message: str,
        *,
        errors: list[dict[str, object]] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause, context={"errors": errors or []})
        self.errors = errors or []


class PolicyLoadError(RetryableTransportError):
    """Raised when a retry policy document is missing or invalid."""

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.POLICY_LOAD_ERROR,
            cause=cause,
            context=context,
        )
