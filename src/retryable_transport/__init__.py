"""Retrying HTTP transports for httpx.

This package provides RetryingTransport and AsyncRetryingTransport, which wrap
another httpx transport and retry requests according to a caller-supplied
predicate with exponential backoff, plus policy documents and settings for
configuring them.
"""

from __future__ import annotations

from pathlib import Path

import httpx

from retryable_transport.errors import (
    ConfigurationError,
    ErrorCode,
    PolicyLoadError,
    RetryableTransportError,
    RetryCancelledError,
    SettingsError,
    ShouldRetryResponseError,
)
from retryable_transport.policy import BackoffPolicy, PolicyRegistry, RetryPolicyDoc, load_policy
from retryable_transport.predicates import (
    is_retryable_httpx_error,
    predicate_from_policy,
    retry_on_status,
)
from retryable_transport.settings import RetrySettings, load_settings
from retryable_transport.transport import (
    CANCEL_EVENT_EXTENSION,
    AsyncRetryingTransport,
    RetryingTransport,
)
from retryable_transport.types import NotifyFunc, ShouldRetryFunc

__all__ = [
    "CANCEL_EVENT_EXTENSION",
    "AsyncRetryingTransport",
    "BackoffPolicy",
    "ConfigurationError",
    "ErrorCode",
    "NotifyFunc",
    "PolicyLoadError",
    "PolicyRegistry",
    "RetryCancelledError",
    "RetryPolicyDoc",
    "RetrySettings",
    "RetryableTransportError",
    "RetryingTransport",
    "SettingsError",
    "ShouldRetryFunc",
    "ShouldRetryResponseError",
    "is_retryable_httpx_error",
    "load_policy",
    "load_settings",
    "make_async_transport_with_policy",
    "make_transport_with_policy",
    "predicate_from_policy",
    "retry_on_status",
]


def make_transport_with_policy(
    policy_name: str,
    policies_root: Path,
    transport: httpx.BaseTransport | None = None,
    notify: NotifyFunc | None = None,
) -> RetryingTransport:
    """Create a retrying transport configured from a policy file.

    Parameters
    ----------
    policy_name : str
        Name of retry policy to load (without .yaml extension).
    policies_root : Path
        Directory containing policy YAML files.
    transport : httpx.BaseTransport | None, optional
        Wrapped transport. Defaults to ``httpx.HTTPTransport()``.
    notify : NotifyFunc | None, optional
        Retry observer. Defaults to None.

    Returns
    -------
    RetryingTransport
        Transport whose predicate and backoff come from the policy.
    """
    reg = PolicyRegistry(policies_root)
    pol = reg.get(policy_name)
    return RetryingTransport(
        transport,
        should_retry=predicate_from_policy(pol),
        notify=notify,
        policy=pol.backoff,
    )


def make_async_transport_with_policy(
    policy_name: str,
    policies_root: Path,
    transport: httpx.AsyncBaseTransport | None = None,
    notify: NotifyFunc | None = None,
) -> AsyncRetryingTransport:
    """Create an async retrying transport configured from a policy file.

    Same policy lookup as :func:`make_transport_with_policy`; the wrapped
    transport defaults to ``httpx.AsyncHTTPTransport()``.
    """
    pol = PolicyRegistry(policies_root).get(policy_name)
    return AsyncRetryingTransport(
        transport,
        should_retry=predicate_from_policy(pol),
        notify=notify,
        policy=pol.backoff,
    )
