"""Shared fixtures for retrying transport tests.

Provides scripted sync/async transports that replay a fixed sequence of
outcomes (status codes or exceptions) and record the body each attempt
actually received, plus a zero-delay backoff policy factory.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterator, Sequence

import httpx
import pytest

from retryable_transport import BackoffPolicy

URL = "https://api.example.test/echo"

Outcome = int | Exception


class TrackedStream(httpx.SyncByteStream, httpx.AsyncByteStream):
    """Response body that remembers whether it was closed, like a pooled connection."""

    def __init__(self, content: bytes) -> None:
        self.content = content
        self.closes = 0

    @property
    def closed(self) -> bool:
        return self.closes > 0

    def __iter__(self) -> Iterator[bytes]:
        yield self.content

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield self.content

    def close(self) -> None:
        self.closes += 1

    async def aclose(self) -> None:
        self.closes += 1


class ScriptedTransport(httpx.BaseTransport):
    """Transport returning scripted outcomes; the last outcome repeats.

    Each attempt drains ``request.stream`` itself, so a body that was not
    replayed would show up as an empty or failing read.
    """

    def __init__(self, outcomes: Sequence[Outcome]) -> None:
        self.outcomes = list(outcomes)
        self.bodies: list[bytes] = []
        self.responses: list[httpx.Response] = []
        self.streams: list[TrackedStream] = []
        self.closed = False

    @property
    def calls(self) -> int:
        return len(self.bodies)

    def _next(self, request: httpx.Request, body: bytes) -> httpx.Response:
        self.bodies.append(body)
        outcome = self.outcomes[min(len(self.bodies), len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        stream = TrackedStream(b"echo:" + body)
        response = httpx.Response(outcome, stream=stream, request=request)
        self.streams.append(stream)
        self.responses.append(response)
        return response

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        return self._next(request, b"".join(request.stream))

    def close(self) -> None:
        self.closed = True


class AsyncScriptedTransport(ScriptedTransport, httpx.AsyncBaseTransport):
    """Async variant of :class:`ScriptedTransport`."""

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        chunks = [chunk async for chunk in request.stream]
        return self._next(request, b"".join(chunks))

    async def aclose(self) -> None:
        self.closed = True


class Recorder:
    """Collects predicate and notifier calls."""

    def __init__(self) -> None:
        self.decisions: list[tuple[httpx.Response | None, BaseException | None]] = []
        self.notifications: list[tuple[httpx.Request, BaseException, float]] = []

    def predicate(self, answer: Callable[[httpx.Response | None, BaseException | None], bool]):
        def _should_retry(
            request: httpx.Request,
            response: httpx.Response | None,
            error: BaseException | None,
        ) -> bool:
            del request
            self.decisions.append((response, error))
            return answer(response, error)

        return _should_retry

    def notify(self, request: httpx.Request, error: BaseException, delay_s: float) -> None:
        self.notifications.append((request, error, delay_s))


@pytest.fixture
def scripted() -> type[ScriptedTransport]:
    return ScriptedTransport


@pytest.fixture
def async_scripted() -> type[AsyncScriptedTransport]:
    return AsyncScriptedTransport


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def fast_policy() -> Callable[[int], BackoffPolicy]:
    """Return a factory for policies that never actually sleep."""

    def _make(max_retries: int) -> BackoffPolicy:
        return BackoffPolicy(
            max_retries=max_retries,
            initial_interval_s=0.0,
            max_interval_s=0.0,
        )

    return _make


@pytest.fixture
def url() -> str:
    return URL
