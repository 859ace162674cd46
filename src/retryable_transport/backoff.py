"""Exponential backoff schedule and cancellable sleeps for tenacity.

:class:`ExponentialJitterWait` plugs into ``tenacity.Retrying(wait=...)``.
The sleep factories return callables for ``tenacity.Retrying(sleep=...)``
and ``tenacity.AsyncRetrying(sleep=...)`` that abort the wait with
:class:`~retryable_transport.errors.RetryCancelledError` once the request's
cancel event is set.
"""

from __future__ import annotations

import asyncio
import importlib
import threading
import time
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, cast

from tenacity import RetryCallState
from tenacity.wait import wait_base

from retryable_transport.errors import RetryCancelledError
from retryable_transport.policy import BackoffPolicy

if TYPE_CHECKING:
    from numpy.random import Generator

__all__ = [
    "ExponentialJitterWait",
    "async_cancellable_sleep",
    "cancellable_sleep",
    "set_random_seed",
]

_RANDOM_SEED: ContextVar[int | None] = ContextVar("_random_seed", default=None)


@lru_cache(maxsize=1)
def _default_rng_factory() -> Callable[[int | None], Generator]:
    """Return numpy's generator factory, imported on first use.

    Returns
    -------
    Callable[[int | None], Generator]
        ``numpy.random.default_rng``. Called with an int seed it yields a
        deterministic generator; with None it draws from OS entropy.
    """
    module = importlib.import_module("numpy.random")
    return cast("Callable[[int | None], Generator]", module.default_rng)


def set_random_seed(seed: int | None) -> None:
    """Pin the jitter draw in the current context, or unpin it with None.

    Parameters
    ----------
    seed : int | None
        Seed for ``numpy.random.default_rng``.
    """
    _RANDOM_SEED.set(seed)


def _rand() -> float:
    """Return a uniform float in ``[0.0, 1.0)`` for jitter.

    Not cryptographic; jitter only spreads retries apart.
    """
    seed = _RANDOM_SEED.get()
    rng = _default_rng_factory()(seed)
    return float(rng.random())


@dataclass(frozen=True)
class ExponentialJitterWait(wait_base):
    """Exponential backoff with a randomized spread around each delay.

    The un-jittered delay before retry ``n`` (1-based) is
    ``min(max_s, initial * multiplier ** (n - 1))``; the actual delay is drawn
    uniformly from ``[delay * (1 - jitter), delay * (1 + jitter)]``.

    Attributes
    ----------
    initial : float
        Base delay in seconds.
    multiplier : float
        Growth factor per retry.
    jitter : float
        Randomization fraction (0.0 to 1.0).
    max_s : float
        Cap on the un-jittered delay.
    rand : Callable[[], float]
        Source of uniform floats in ``[0.0, 1.0)``. Defaults to
        a draw from ``numpy.random.default_rng``, seedable through
        :func:`set_random_seed`.
    """

    initial: float
    multiplier: float
    jitter: float
    max_s: float
    rand: Callable[[], float] = field(default=_rand, compare=False, repr=False)

    @classmethod
    def from_policy(cls, policy: BackoffPolicy) -> ExponentialJitterWait:
        """Build the wait strategy described by a backoff policy."""
        return cls(
            initial=policy.initial_interval_s,
            multiplier=policy.multiplier,
            jitter=policy.randomization_factor,
            max_s=policy.max_interval_s,
        )

    def delay_for(self, retry_number: int) -> float:
        """Return the jittered delay before retry ``retry_number``.

        Parameters
        ----------
        retry_number : int
            1 for the first retry, 2 for the second, and so on.

        Returns
        -------
        float
            Delay in seconds, never negative.
        """
        base = min(self.max_s, self.initial * (self.multiplier ** (retry_number - 1)))
        jitter_amount = base * self.jitter
        return max(0.0, base - jitter_amount + self.rand() * (2 * jitter_amount))

    def __call__(self, retry_state: RetryCallState) -> float:
        # attempt_number counts finished attempts, so it is the upcoming retry number
        return self.delay_for(retry_state.attempt_number)


def cancellable_sleep(cancel_event: threading.Event | None) -> Callable[[float], None]:
    """Return a blocking sleep that aborts when ``cancel_event`` is set.

    Parameters
    ----------
    cancel_event : threading.Event | None
        Event signalling cancellation, or None for a plain ``time.sleep``.

    Returns
    -------
    Callable[[float], None]
        Sleep function for ``tenacity.Retrying``. Raises
        :class:`RetryCancelledError` if the event is set before or during
        the wait.
    """
    if cancel_event is None:
        return time.sleep

    def _sleep(seconds: float) -> None:
        if cancel_event.wait(seconds):
            raise RetryCancelledError

    return _sleep


def async_cancellable_sleep(
    cancel_event: asyncio.Event | None,
) -> Callable[[float], Awaitable[None]]:
    """Return an asyncio sleep that aborts when ``cancel_event`` is set.

    Task cancellation always interrupts the sleep with
    :class:`asyncio.CancelledError`, with or without an event.

    Parameters
    ----------
    cancel_event : asyncio.Event | None
        Event signalling cancellation, or None for a plain ``asyncio.sleep``.

    Returns
    -------
    Callable[[float], Awaitable[None]]
        Sleep coroutine function for ``tenacity.AsyncRetrying``.
    """
    if cancel_event is None:
        return asyncio.sleep

    async def _sleep(seconds: float) -> None:
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise RetryCancelledError

    return _sleep
