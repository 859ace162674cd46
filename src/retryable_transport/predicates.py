"""Ready-made retry predicates.

HTTPX exception hierarchy, for reference when choosing what to retry::

    httpx.TransportError
    ├── httpx.TimeoutException       ← RETRY (Connect/Read/Write/PoolTimeout)
    ├── httpx.NetworkError           ← RETRY (Connect/Read/Write/CloseError)
    ├── httpx.ProtocolError
    │   ├── LocalProtocolError       ← PROPAGATE (client bug)
    │   └── RemoteProtocolError      ← RETRY (server sent invalid HTTP)
    ├── ProxyError                   ← PROPAGATE (config error)
    └── UnsupportedProtocol          ← PROPAGATE (code error)

Any callable with the :class:`~retryable_transport.types.ShouldRetryFunc`
signature works as a predicate; these helpers cover the common cases.
"""

from __future__ import annotations

import httpx

from retryable_transport.policy import RetryPolicyDoc
from retryable_transport.types import ShouldRetryFunc

__all__ = [
    "RETRYABLE_STATUS_CODES",
    "is_retryable_httpx_error",
    "predicate_from_policy",
    "retry_on_status",
]

# 429: rate limited; 502/503/504: upstream or gateway failures
RETRYABLE_STATUS_CODES: tuple[int, ...] = (429, 502, 503, 504)


def is_retryable_httpx_error(exc: BaseException) -> bool:
    """Check if exception is a transient httpx transport error.

    Parameters
    ----------
    exc : BaseException
        Exception raised by the wrapped transport.

    Returns
    -------
    bool
        True for timeouts, network errors and remote protocol errors.
    """
    return isinstance(
        exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)
    )


def _status_in_sets(status: int, sets: tuple[tuple[int, int] | int, ...]) -> bool:
    """Check if status code matches any in the sets.

    Parameters
    ----------
    status : int
        HTTP status code.
    sets : tuple[tuple[int, int] | int, ...]
        Status codes or inclusive ranges to check.

    Returns
    -------
    bool
        True if status matches any entry in sets.
    """
    for x in sets:
        if isinstance(x, int) and status == x:
            return True
        if isinstance(x, tuple) and x[0] <= status <= x[1]:
            return True
    return False


def _exception_named(exc: BaseException, names: frozenset[str]) -> bool:
    return any(cls.__name__ in names for cls in type(exc).__mro__)


def retry_on_status(
    *statuses: int | tuple[int, int],
    retry_transport_errors: bool = True,
) -> ShouldRetryFunc:
    """Build a predicate retrying on the given status codes.

    Parameters
    ----------
    *statuses : int | tuple[int, int]
        Status codes or inclusive ``(low, high)`` ranges. Defaults to
        :data:`RETRYABLE_STATUS_CODES` when none are given.
    retry_transport_errors : bool, optional
        Also retry transient transport errors (see
        :func:`is_retryable_httpx_error`). Defaults to True.

    Returns
    -------
    ShouldRetryFunc
        Retry predicate.

    Examples
    --------
    >>> should_retry = retry_on_status(429, (500, 504))
    """
    status_sets = statuses or RETRYABLE_STATUS_CODES

    def _pred(
        request: httpx.Request,
        response: httpx.Response | None,
        error: BaseException | None,
    ) -> bool:
        del request
        if error is not None:
            return retry_transport_errors and is_retryable_httpx_error(error)
        return response is not None and _status_in_sets(response.status_code, status_sets)

    return _pred


def predicate_from_policy(doc: RetryPolicyDoc) -> ShouldRetryFunc:
    """Create the retry predicate described by a policy document.

    Exceptions are retried when their class, or one of its bases, is named
    in ``retry_exceptions``. Responses are retried when their status is in
    ``retry_status`` and not in ``give_up_status``.

    Parameters
    ----------
    doc : RetryPolicyDoc
        Loaded retry policy.

    Returns
    -------
    ShouldRetryFunc
        Retry predicate.
    """
    retry_exc_names = frozenset(doc.retry_exceptions)
    give_up = frozenset(doc.give_up_status)
    status_sets = doc.retry_status

    def _pred(
        request: httpx.Request,
        response: httpx.Response | None,
        error: BaseException | None,
    ) -> bool:
        del request
        if error is not None:
            return _exception_named(error, retry_exc_names)
        if response is None or response.status_code in give_up:
            return False
        return _status_in_sets(response.status_code, status_sets)

    return _pred
