"""Retrying httpx transports.

:class:`RetryingTransport` and :class:`AsyncRetryingTransport` wrap another
httpx transport and re-send a request while a caller-supplied predicate asks
for it, waiting an exponentially growing, jittered delay between attempts.
Plug them into any client::

    client = httpx.Client(transport=RetryingTransport(should_retry=retry_on_status()))

The request body is buffered once and replayed on every attempt. Retry
decisions, backoff scheduling and cancellation are driven by tenacity.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
)
from tenacity.stop import stop_base

from retryable_transport.backoff import (
    ExponentialJitterWait,
    async_cancellable_sleep,
    cancellable_sleep,
)
from retryable_transport.errors import (
    ConfigurationError,
    RetryCancelledError,
    ShouldRetryResponseError,
)
from retryable_transport.logging import get_logger
from retryable_transport.policy import BackoffPolicy
from retryable_transport.types import NotifyFunc, ShouldRetryFunc

__all__ = [
    "CANCEL_EVENT_EXTENSION",
    "AsyncRetryingTransport",
    "RetryingTransport",
]

logger = get_logger(__name__)

# Request extension holding a threading.Event (sync) or asyncio.Event (async)
CANCEL_EVENT_EXTENSION = "retry_cancel_event"

_EventT = TypeVar("_EventT", threading.Event, asyncio.Event)


class _RetrySignal(Exception):
    """Carries an outcome the predicate licensed for retry through tenacity."""

    def __init__(self, error: BaseException) -> None:
        super().__init__(error)
        self.error = error


def _request_fields(request: httpx.Request) -> dict[str, Any]:
    return {"method": request.method, "url": str(request.url)}


def _cancel_event(request: httpx.Request, expected: type[_EventT]) -> _EventT | None:
    event = request.extensions.get(CANCEL_EVENT_EXTENSION)
    if event is None or isinstance(event, expected):
        return event
    raise ConfigurationError.with_details(
        field=f"extensions[{CANCEL_EVENT_EXTENSION!r}]",
        issue=f"Must be a {expected.__module__}.{expected.__qualname__}",
    )


class _RetryingBase:
    """Configuration and retry bookkeeping shared by both transports."""

    def __init__(
        self,
        should_retry: ShouldRetryFunc | None,
        notify: NotifyFunc | None,
        policy: BackoffPolicy | None,
    ) -> None:
        if should_retry is None or not callable(should_retry):
            raise ConfigurationError.with_details(
                field="should_retry",
                issue="A retry predicate is required",
                hint="Pass a callable (request, response, error) -> bool",
            )
        if notify is not None and not callable(notify):
            raise ConfigurationError.with_details(field="notify", issue="Must be callable")
        self._should_retry = should_retry
        self._notify = notify
        self._policy = policy if policy is not None else BackoffPolicy()
        self._wait = ExponentialJitterWait.from_policy(self._policy)

    @property
    def should_retry(self) -> ShouldRetryFunc:
        """Retry predicate consulted after every attempt."""
        return self._should_retry

    @property
    def notify(self) -> NotifyFunc | None:
        """Optional observer called before each backoff sleep."""
        return self._notify

    @property
    def policy(self) -> BackoffPolicy:
        """Retry cap and backoff schedule."""
        return self._policy

    def _stop(self) -> stop_base:
        stopper: stop_base = stop_after_attempt(self._policy.max_attempts)
        if self._policy.max_elapsed_s is not None:
            stopper |= stop_after_delay(self._policy.max_elapsed_s)
        return stopper

    def _retrying_kwargs(self, request: httpx.Request) -> dict[str, Any]:
        return {
            "retry": retry_if_exception_type(_RetrySignal),
            "stop": self._stop(),
            "wait": self._wait,
            "before_sleep": self._before_sleep_hook(request),
            "reraise": True,
        }

    def _before_sleep_hook(self, request: httpx.Request) -> Callable[[RetryCallState], None]:
        def _before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            signal = outcome.exception() if outcome is not None else None
            error = signal.error if isinstance(signal, _RetrySignal) else signal
            delay_s = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "Retrying HTTP request",
                extra={
                    "operation": "http.retry",
                    "status": "retrying",
                    "attempt": retry_state.attempt_number,
                    "delay_s": round(delay_s, 3),
                    "error_type": type(error).__name__,
                    **_request_fields(request),
                },
            )
            if self._notify is not None and error is not None:
                self._notify(request, error, delay_s)

        return _before_sleep

    def _is_final_response(
        self, request: httpx.Request, response: httpx.Response, attempt: int
    ) -> bool:
        """Return True when the response is final, False when it must be retried."""
        if not self._should_retry(request, response, None):
            logger.debug(
                "HTTP attempt finished",
                extra={
                    "operation": "http.attempt",
                    "attempt": attempt,
                    "status_code": response.status_code,
                    **_request_fields(request),
                },
            )
            return True
        return False

    def _check_error(self, request: httpx.Request, exc: Exception, attempt: int) -> None:
        """Raise a retry signal for ``exc`` if the predicate allows it."""
        if self._should_retry(request, None, exc):
            raise _RetrySignal(exc) from exc
        logger.debug(
            "HTTP attempt failed with a non-retryable error",
            extra={
                "operation": "http.attempt",
                "status": "error",
                "attempt": attempt,
                "error_type": type(exc).__name__,
                **_request_fields(request),
            },
        )

    @staticmethod
    def _log_exhausted(request: httpx.Request, error: BaseException, attempts: int) -> None:
        logger.warning(
            "HTTP retries exhausted",
            extra={
                "operation": "http.retry",
                "status": "exhausted",
                "attempts": attempts,
                "error_type": type(error).__name__,
                **_request_fields(request),
            },
        )

    @staticmethod
    def _log_cancelled(request: httpx.Request) -> None:
        logger.info(
            "HTTP retry loop cancelled",
            extra={"operation": "http.retry", "status": "cancelled", **_request_fields(request)},
        )


class RetryingTransport(_RetryingBase, httpx.BaseTransport):
    """Transport that retries requests through a wrapped transport.

    After every attempt the predicate is called with the request and either
    the response or the raised exception. While it returns True and attempts
    remain, the transport waits per the backoff policy, calls ``notify`` and
    sends the request again with a fresh copy of the original body.

    When retries run out, the last outcome is surfaced:

    - a transport exception the predicate accepted is re-raised as is;
    - a response the predicate rejected surfaces as
      :class:`~retryable_transport.errors.ShouldRetryResponseError`, whose
      ``response`` attribute holds that last response.

    The second rule means "retries exhausted on a retryable response" is an
    exception rather than a returned response; catch
    ``ShouldRetryResponseError`` to recover the response.

    Parameters
    ----------
    transport : httpx.BaseTransport | None, optional
        Transport performing the actual network round trip. Defaults to a new
        ``httpx.HTTPTransport()``.
    should_retry : ShouldRetryFunc
        Retry predicate. Required; None raises ConfigurationError.
    notify : NotifyFunc | None, optional
        Called with ``(request, error, delay_s)`` before each backoff sleep.
        Exceptions it raises propagate to the caller. Defaults to None.
    policy : BackoffPolicy | None, optional
        Retry cap and backoff schedule. Defaults to ``BackoffPolicy()``
        (three retries).

    Raises
    ------
    ConfigurationError
        If ``should_retry`` is missing or not callable, or ``notify`` is not
        callable.

    Notes
    -----
    Instances hold only immutable configuration and may be shared by
    concurrent requests. Set a ``threading.Event`` under
    ``request.extensions["retry_cancel_event"]`` to abort a pending backoff
    wait with :class:`~retryable_transport.errors.RetryCancelledError`.
    """

    def __init__(
        self,
        transport: httpx.BaseTransport | None = None,
        *,
        should_retry: ShouldRetryFunc | None,
        notify: NotifyFunc | None = None,
        policy: BackoffPolicy | None = None,
    ) -> None:
        super().__init__(should_retry, notify, policy)
        self._transport = transport if transport is not None else httpx.HTTPTransport()

    @property
    def transport(self) -> httpx.BaseTransport:
        """Wrapped transport."""
        return self._transport

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        """Send ``request``, retrying per the predicate and backoff policy.

        Parameters
        ----------
        request : httpx.Request
            Request to send. Its body is read and closed before the first
            attempt.

        Returns
        -------
        httpx.Response
            Response of the first attempt the predicate did not reject.

        Raises
        ------
        ShouldRetryResponseError
            If every attempt returned a response the predicate rejected.
        RetryCancelledError
            If the cancel event was set during a backoff wait.
        """
        cancel_event = _cancel_event(request, threading.Event)
        body = self._buffer_body(request)
        retrying = Retrying(sleep=cancellable_sleep(cancel_event), **self._retrying_kwargs(request))
        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    return self._attempt(request, body, attempts)
        except _RetrySignal as signal:
            final = signal.error
        except RetryCancelledError:
            self._log_cancelled(request)
            raise
        self._log_exhausted(request, final, attempts)
        raise final

    def close(self) -> None:
        """Close the wrapped transport."""
        self._transport.close()

    @staticmethod
    def _buffer_body(request: httpx.Request) -> bytes:
        stream = request.stream
        body = request.read()
        if isinstance(stream, httpx.SyncByteStream):
            stream.close()
        return body

    def _attempt(self, request: httpx.Request, body: bytes, attempt: int) -> httpx.Response:
        request.stream = httpx.ByteStream(body)
        try:
            response = self._transport.handle_request(request)
        except Exception as exc:
            self._check_error(request, exc, attempt)
            raise
        try:
            final = self._is_final_response(request, response, attempt)
        except BaseException:
            response.close()
            raise
        if final:
            return response
        # release the discarded response; content stays readable on the signal
        try:
            response.read()
        finally:
            response.close()
        raise _RetrySignal(ShouldRetryResponseError(response, attempts=attempt))


class AsyncRetryingTransport(_RetryingBase, httpx.AsyncBaseTransport):
    """Async counterpart of :class:`RetryingTransport`.

    Same construction contract and retry semantics, wrapping an
    ``httpx.AsyncBaseTransport`` (``httpx.AsyncHTTPTransport()`` by default).
    Backoff waits use ``asyncio.sleep``: cancelling the calling task aborts a
    wait immediately with ``asyncio.CancelledError``. An ``asyncio.Event``
    under ``request.extensions["retry_cancel_event"]`` aborts it with
    :class:`~retryable_transport.errors.RetryCancelledError` instead.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        should_retry: ShouldRetryFunc | None,
        notify: NotifyFunc | None = None,
        policy: BackoffPolicy | None = None,
    ) -> None:
        super().__init__(should_retry, notify, policy)
        self._transport = transport if transport is not None else httpx.AsyncHTTPTransport()

    @property
    def transport(self) -> httpx.AsyncBaseTransport:
        """Wrapped transport."""
        return self._transport

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        """Send ``request``, retrying per the predicate and backoff policy.

        See :meth:`RetryingTransport.handle_request` for the outcome rules.
        """
        cancel_event = _cancel_event(request, asyncio.Event)
        body = await self._buffer_body(request)
        retrying = AsyncRetrying(
            sleep=async_cancellable_sleep(cancel_event), **self._retrying_kwargs(request)
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    return await self._attempt(request, body, attempts)
        except _RetrySignal as signal:
            final = signal.error
        except (RetryCancelledError, asyncio.CancelledError):
            self._log_cancelled(request)
            raise
        self._log_exhausted(request, final, attempts)
        raise final

    async def aclose(self) -> None:
        """Close the wrapped transport."""
        await self._transport.aclose()

    @staticmethod
    async def _buffer_body(request: httpx.Request) -> bytes:
        stream = request.stream
        body = await request.aread()
        if isinstance(stream, httpx.AsyncByteStream):
            await stream.aclose()
        return body

    async def _attempt(self, request: httpx.Request, body: bytes, attempt: int) -> httpx.Response:
        request.stream = httpx.ByteStream(body)
        try:
            response = await self._transport.handle_async_request(request)
        except Exception as exc:
            self._check_error(request, exc, attempt)
            raise
        try:
            final = self._is_final_response(request, response, attempt)
        except BaseException:
            await response.aclose()
            raise
        if final:
            return response
        try:
            await response.aread()
        finally:
            await response.aclose()
        raise _RetrySignal(ShouldRetryResponseError(response, attempts=attempt))
