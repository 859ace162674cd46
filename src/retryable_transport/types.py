"""Callback protocols for the retrying transports.

The retry predicate and the retry notifier are plain callables injected at
construction time. These protocols describe their signatures.
"""

from __future__ import annotations

from typing import Protocol

import httpx

__all__ = ["NotifyFunc", "ShouldRetryFunc"]


class ShouldRetryFunc(Protocol):
    """Decide whether an attempt should be retried.

    Called after every attempt, including the first, with exactly one of
    ``response`` and ``error`` set.
    """

    def __call__(
        self,
        request: httpx.Request,
        response: httpx.Response | None,
        error: BaseException | None,
    ) -> bool:
        """Return True to retry the request.

        Parameters
        ----------
        request : httpx.Request
            Request being sent.
        response : httpx.Response | None
            Response returned by the attempt, or None if the attempt raised.
        error : BaseException | None
            Exception raised by the attempt, or None if it returned a response.

        Returns
        -------
        bool
            True when the attempt should be retried.
        """
        ...


class NotifyFunc(Protocol):
    """Observe a scheduled retry before the backoff sleep starts."""

    def __call__(self, request: httpx.Request, error: BaseException, delay_s: float) -> None:
        """Receive a retry notification.

        Parameters
        ----------
        request : httpx.Request
            Request being retried. Its ``extensions`` hold the per-request
            context (timeouts, cancel event).
        error : BaseException
            The attempt's exception, or :class:`~retryable_transport.errors.ShouldRetryResponseError`
            when the attempt returned a response that warranted a retry.
        delay_s : float
            Seconds the transport is about to wait.
        """
        ...
