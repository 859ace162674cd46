"""Tests for RetryingTransport.

Covers the retry loop outcome rules, body replay, predicate and notifier
wiring, pre-flight failures, cancellation and concurrent reuse.
"""

from __future__ import annotations

import errno
import threading
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from retryable_transport import (
    CANCEL_EVENT_EXTENSION,
    BackoffPolicy,
    ConfigurationError,
    RetryCancelledError,
    RetryingTransport,
    ShouldRetryResponseError,
)


def _always(response: httpx.Response | None, error: BaseException | None) -> bool:
    return True


def _never(response: httpx.Response | None, error: BaseException | None) -> bool:
    return False


def _connection_reset() -> httpx.ReadError:
    return httpx.ReadError(f"[Errno {errno.ECONNRESET}] Connection reset by peer")


class TestOutcomeRules:
    """Which response or exception the caller ends up with."""

    @pytest.mark.parametrize("max_retries", [0, 1, 3])
    def test_predicate_false_means_single_attempt_with_raw_response(
        self, scripted, recorder, fast_policy, url, max_retries: int
    ) -> None:
        inner = scripted([500])
        transport = RetryingTransport(
            inner, should_retry=recorder.predicate(_never), policy=fast_policy(max_retries)
        )

        response = transport.handle_request(httpx.Request("POST", url, content=b"body"))

        assert inner.calls == 1
        assert response is inner.responses[0]
        assert response.status_code == 500

    def test_predicate_false_reraises_transport_error_unchanged(
        self, scripted, recorder, fast_policy, url
    ) -> None:
        error = httpx.ConnectError("refused")
        inner = scripted([error])
        transport = RetryingTransport(
            inner, should_retry=recorder.predicate(_never), policy=fast_policy(3)
        )

        with pytest.raises(httpx.ConnectError) as exc_info:
            transport.handle_request(httpx.Request("GET", url))

        assert exc_info.value is error
        assert inner.calls == 1

    @pytest.mark.parametrize("max_retries", [0, 1, 2, 5])
    def test_predicate_true_makes_exactly_n_plus_one_attempts(
        self, scripted, recorder, fast_policy, url, max_retries: int
    ) -> None:
        inner = scripted([503])
        transport = RetryingTransport(
            inner, should_retry=recorder.predicate(_always), policy=fast_policy(max_retries)
        )

        with pytest.raises(ShouldRetryResponseError):
            transport.handle_request(httpx.Request("POST", url, content=b"payload"))

        assert inner.calls == max_retries + 1
        assert inner.bodies == [b"payload"] * (max_retries + 1)
        assert len(recorder.decisions) == max_retries + 1

    def test_exhausted_transport_errors_surface_the_transport_error(
        self, scripted, fast_policy, url
    ) -> None:
        error = _connection_reset()
        inner = scripted([error])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: isinstance(exc, httpx.ReadError),
            policy=fast_policy(2),
        )

        with pytest.raises(httpx.ReadError) as exc_info:
            transport.handle_request(httpx.Request("GET", url))

        assert exc_info.value is error
        assert not isinstance(exc_info.value, ShouldRetryResponseError)
        assert inner.calls == 3

    def test_exhausted_retryable_responses_surface_the_retry_signal(
        self, scripted, fast_policy, url
    ) -> None:
        inner = scripted([429])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: (
                response is not None and response.status_code == 429
            ),
            policy=fast_policy(1),
        )

        with pytest.raises(ShouldRetryResponseError) as exc_info:
            transport.handle_request(httpx.Request("POST", url, content=b"body4"))

        signal = exc_info.value
        assert inner.calls == 2
        assert signal.response is inner.responses[-1]
        assert signal.response.status_code == 429
        assert signal.response.content == b"echo:body4"
        assert signal.attempts == 2

    def test_connection_reset_then_success(self, scripted, url) -> None:
        inner = scripted([_connection_reset(), 200])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: isinstance(exc, httpx.ReadError),
            policy=BackoffPolicy(max_retries=1, initial_interval_s=0.0, max_interval_s=0.0),
        )

        response = transport.handle_request(
            httpx.Request("POST", url, headers={"Foo": "bar"}, content=b"body1")
        )

        assert inner.calls == 2
        assert response.status_code == 200
        assert response.read() == b"echo:body1"

    def test_zero_retries_non_retryable_500(self, scripted, recorder, url) -> None:
        inner = scripted([500])
        transport = RetryingTransport(
            inner,
            should_retry=recorder.predicate(
                lambda response, error: response is not None and response.status_code != 500
            ),
            policy=BackoffPolicy(max_retries=0),
        )

        response = transport.handle_request(httpx.Request("POST", url, content=b"body2"))

        assert inner.calls == 1
        assert response.status_code == 500
        assert len(recorder.decisions) == 1

    def test_zero_retries_still_consults_predicate_once(self, scripted, recorder, url) -> None:
        inner = scripted([503])
        transport = RetryingTransport(
            inner,
            should_retry=recorder.predicate(_always),
            notify=recorder.notify,
            policy=BackoffPolicy(max_retries=0),
        )

        with pytest.raises(ShouldRetryResponseError):
            transport.handle_request(httpx.Request("GET", url))

        assert inner.calls == 1
        assert len(recorder.decisions) == 1
        assert recorder.notifications == []


class TestBodyReplay:
    def test_streaming_body_is_buffered_and_replayed(self, scripted, fast_policy, url) -> None:
        def chunks() -> Iterator[bytes]:
            yield b"hello "
            yield b"world"

        inner = scripted([503, 503, 200])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: response is not None
            and response.status_code == 503,
            policy=fast_policy(3),
        )

        response = transport.handle_request(httpx.Request("PUT", url, content=chunks()))

        assert response.status_code == 200
        assert inner.bodies == [b"hello world"] * 3

    def test_request_without_body_replays_empty_body(self, scripted, fast_policy, url) -> None:
        inner = scripted([503, 200])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: response is not None
            and response.status_code == 503,
            policy=fast_policy(1),
        )

        transport.handle_request(httpx.Request("GET", url))

        assert inner.bodies == [b"", b""]

    def test_body_read_failure_fails_before_any_attempt(self, scripted, recorder, url) -> None:
        class BrokenStream(httpx.SyncByteStream):
            def __iter__(self) -> Iterator[bytes]:
                raise OSError("body source vanished")
                yield b""

        inner = scripted([200])
        transport = RetryingTransport(inner, should_retry=recorder.predicate(_always))

        with pytest.raises(OSError, match="body source vanished"):
            transport.handle_request(httpx.Request("POST", url, stream=BrokenStream()))

        assert inner.calls == 0
        assert recorder.decisions == []

    def test_body_close_failure_fails_before_any_attempt(self, scripted, recorder, url) -> None:
        class UnclosableStream(httpx.SyncByteStream):
            def __iter__(self) -> Iterator[bytes]:
                yield b"data"

            def close(self) -> None:
                raise OSError("close failed")

        inner = scripted([200])
        transport = RetryingTransport(inner, should_retry=recorder.predicate(_always))

        with pytest.raises(OSError, match="close failed"):
            transport.handle_request(httpx.Request("POST", url, stream=UnclosableStream()))

        assert inner.calls == 0

    def test_original_stream_is_closed_once(self, scripted, fast_policy, url) -> None:
        closes: list[int] = []

        class TrackingStream(httpx.SyncByteStream):
            def __iter__(self) -> Iterator[bytes]:
                yield b"tracked"

            def close(self) -> None:
                closes.append(1)

        inner = scripted([503, 503, 200])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: response is not None
            and response.status_code == 503,
            policy=fast_policy(2),
        )

        transport.handle_request(httpx.Request("POST", url, stream=TrackingStream()))

        assert closes == [1]
        assert inner.bodies == [b"tracked"] * 3


class TestCallbacks:
    def test_predicate_receives_response_or_error(self, scripted, recorder, fast_policy, url) -> None:
        error = httpx.ReadTimeout("slow")
        inner = scripted([error, 429, 200])
        transport = RetryingTransport(
            inner,
            should_retry=recorder.predicate(
                lambda response, exc: exc is not None
                or (response is not None and response.status_code == 429)
            ),
            policy=fast_policy(3),
        )

        transport.handle_request(httpx.Request("GET", url))

        (r1, e1), (r2, e2), (r3, e3) = recorder.decisions
        assert r1 is None and e1 is error
        assert r2 is not None and r2.status_code == 429 and e2 is None
        assert r3 is not None and r3.status_code == 200 and e3 is None

    def test_notify_receives_request_marker_and_delay(self, scripted, recorder, url) -> None:
        error = httpx.ConnectTimeout("connect timeout")
        inner = scripted([error, 503, 200])
        policy = BackoffPolicy(
            max_retries=3,
            initial_interval_s=0.01,
            multiplier=2.0,
            randomization_factor=0.0,
            max_interval_s=0.01,
        )
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: exc is not None
            or (response is not None and response.status_code == 503),
            notify=recorder.notify,
            policy=policy,
        )
        request = httpx.Request("GET", url)

        transport.handle_request(request)

        assert len(recorder.notifications) == 2
        (req1, err1, delay1), (req2, err2, delay2) = recorder.notifications
        assert req1 is request and req2 is request
        assert err1 is error
        assert isinstance(err2, ShouldRetryResponseError)
        assert err2.response.status_code == 503
        assert delay1 == pytest.approx(0.01)
        assert delay2 == pytest.approx(0.01)

    def test_notify_is_not_called_when_no_retry_follows(self, scripted, recorder, fast_policy, url) -> None:
        inner = scripted([503])
        transport = RetryingTransport(
            inner,
            should_retry=recorder.predicate(_always),
            notify=recorder.notify,
            policy=fast_policy(2),
        )

        with pytest.raises(ShouldRetryResponseError):
            transport.handle_request(httpx.Request("GET", url))

        assert inner.calls == 3
        assert len(recorder.notifications) == 2

    def test_notify_failure_propagates_and_stops_the_loop(self, scripted, fast_policy, url) -> None:
        def notify(request: httpx.Request, error: BaseException, delay_s: float) -> None:
            raise RuntimeError("observer broke")

        inner = scripted([503, 200])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: response is not None
            and response.status_code == 503,
            notify=notify,
            policy=fast_policy(3),
        )

        with pytest.raises(RuntimeError, match="observer broke"):
            transport.handle_request(httpx.Request("GET", url))

        assert inner.calls == 1

    def test_predicate_failure_propagates_without_retry(self, scripted, fast_policy, url) -> None:
        def should_retry(
            request: httpx.Request, response: httpx.Response | None, error: BaseException | None
        ) -> bool:
            raise ValueError("bad predicate")

        inner = scripted([_connection_reset()])
        transport = RetryingTransport(inner, should_retry=should_retry, policy=fast_policy(3))

        with pytest.raises(ValueError, match="bad predicate"):
            transport.handle_request(httpx.Request("GET", url))

        assert inner.calls == 1


class TestResources:
    def test_discarded_responses_are_read_and_closed(self, scripted, fast_policy, url) -> None:
        inner = scripted([503, 503, 200])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: response is not None
            and response.status_code == 503,
            policy=fast_policy(3),
        )

        final = transport.handle_request(httpx.Request("GET", url))

        discarded, kept = inner.streams[:2], inner.streams[2]
        assert [s.closes for s in discarded] == [1, 1]
        assert inner.responses[2] is final
        assert not kept.closed
        assert final.read() == b"echo:"

    def test_predicate_failure_on_response_releases_it(self, scripted, fast_policy, url) -> None:
        def should_retry(
            request: httpx.Request, response: httpx.Response | None, error: BaseException | None
        ) -> bool:
            raise ValueError("bad predicate")

        inner = scripted([503])
        transport = RetryingTransport(inner, should_retry=should_retry, policy=fast_policy(3))

        with pytest.raises(ValueError, match="bad predicate"):
            transport.handle_request(httpx.Request("GET", url))

        assert inner.calls == 1
        assert inner.streams[0].closes == 1

    def test_close_closes_wrapped_transport(self, scripted, recorder) -> None:
        inner = scripted([200])
        with RetryingTransport(inner, should_retry=recorder.predicate(_never)):
            pass
        assert inner.closed


class TestConstruction:
    def test_missing_predicate_is_rejected(self, scripted) -> None:
        with pytest.raises(ConfigurationError, match="should_retry"):
            RetryingTransport(scripted([200]), should_retry=None)

    def test_non_callable_predicate_is_rejected(self, scripted) -> None:
        with pytest.raises(ConfigurationError):
            RetryingTransport(scripted([200]), should_retry=True)  # type: ignore[arg-type]

    def test_non_callable_notify_is_rejected(self, scripted) -> None:
        with pytest.raises(ConfigurationError, match="notify"):
            RetryingTransport(
                scripted([200]),
                should_retry=lambda request, response, exc: False,
                notify="loud",  # type: ignore[arg-type]
            )

    def test_defaults(self) -> None:
        transport = RetryingTransport(should_retry=lambda request, response, exc: False)

        assert isinstance(transport.transport, httpx.HTTPTransport)
        assert transport.policy == BackoffPolicy(max_retries=3)
        assert transport.notify is None
        transport.close()


class TestCancellation:
    def test_cancel_event_aborts_backoff_wait(self, scripted, url) -> None:
        event = threading.Event()
        inner = scripted([503])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: True,
            policy=BackoffPolicy(
                max_retries=5,
                initial_interval_s=30.0,
                max_interval_s=30.0,
                randomization_factor=0.0,
            ),
        )
        request = httpx.Request("GET", url, extensions={CANCEL_EVENT_EXTENSION: event})
        timer = threading.Timer(0.1, event.set)

        start = time.monotonic()
        timer.start()
        try:
            with pytest.raises(RetryCancelledError):
                transport.handle_request(request)
        finally:
            timer.cancel()

        assert time.monotonic() - start < 5.0
        assert inner.calls == 1
        assert inner.streams[0].closes == 1

    def test_preset_cancel_event_stops_before_second_attempt(self, scripted, url) -> None:
        event = threading.Event()
        event.set()
        inner = scripted([_connection_reset()])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: True,
            policy=BackoffPolicy(max_retries=3),
        )

        with pytest.raises(RetryCancelledError):
            transport.handle_request(
                httpx.Request("GET", url, extensions={CANCEL_EVENT_EXTENSION: event})
            )

        assert inner.calls == 1

    def test_cancel_event_is_ignored_when_no_retry_is_needed(self, scripted, url) -> None:
        event = threading.Event()
        event.set()
        inner = scripted([200])
        transport = RetryingTransport(inner, should_retry=lambda request, response, exc: False)

        response = transport.handle_request(
            httpx.Request("GET", url, extensions={CANCEL_EVENT_EXTENSION: event})
        )

        assert response.status_code == 200

    def test_wrong_cancel_event_type_is_rejected(self, scripted, url) -> None:
        inner = scripted([200])
        transport = RetryingTransport(inner, should_retry=lambda request, response, exc: False)

        with pytest.raises(ConfigurationError, match="threading.Event"):
            transport.handle_request(
                httpx.Request("GET", url, extensions={CANCEL_EVENT_EXTENSION: object()})
            )

        assert inner.calls == 0


class TestScheduling:
    def test_max_elapsed_caps_total_retry_time(self, scripted, url) -> None:
        inner = scripted([503])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: True,
            policy=BackoffPolicy(
                max_retries=50,
                initial_interval_s=0.02,
                multiplier=1.0,
                randomization_factor=0.0,
                max_interval_s=0.02,
                max_elapsed_s=0.1,
            ),
        )

        with pytest.raises(ShouldRetryResponseError):
            transport.handle_request(httpx.Request("GET", url))

        assert 2 <= inner.calls < 51


class TestClientIntegration:
    def test_client_post_with_header_and_body(self, scripted, fast_policy, url) -> None:
        seen_headers: list[str | None] = []

        class HeaderEcho(httpx.BaseTransport):
            calls = 0

            def handle_request(self, request: httpx.Request) -> httpx.Response:
                HeaderEcho.calls += 1
                seen_headers.append(request.headers.get("Foo"))
                body = b"".join(request.stream)
                if HeaderEcho.calls == 1:
                    raise _connection_reset()
                return httpx.Response(200, content=body)

        transport = RetryingTransport(
            HeaderEcho(),
            should_retry=lambda request, response, exc: isinstance(exc, httpx.ReadError),
            policy=fast_policy(1),
        )
        with httpx.Client(transport=transport) as client:
            response = client.post(url, content=b"body1", headers={"Foo": "bar"})

        assert response.status_code == 200
        assert response.text == "body1"
        assert seen_headers == ["bar", "bar"]

    def test_client_sees_retry_signal_after_exhaustion(self, scripted, fast_policy, url) -> None:
        inner = scripted([429])
        transport = RetryingTransport(
            inner,
            should_retry=lambda request, response, exc: response is not None
            and response.status_code == 429,
            policy=fast_policy(1),
        )

        with httpx.Client(transport=transport) as client:
            with pytest.raises(ShouldRetryResponseError) as exc_info:
                client.post(url, content=b"body4")

        assert exc_info.value.response.status_code == 429
        assert inner.calls == 2


def test_transport_is_safe_for_concurrent_requests(fast_policy, url) -> None:
    lock = threading.Lock()
    seen: dict[bytes, int] = {}

    class FlakyOnce(httpx.BaseTransport):
        def handle_request(self, request: httpx.Request) -> httpx.Response:
            body = b"".join(request.stream)
            with lock:
                seen[body] = seen.get(body, 0) + 1
                first = seen[body] == 1
            return httpx.Response(503 if first else 200, content=body)

    transport = RetryingTransport(
        FlakyOnce(),
        should_retry=lambda request, response, exc: response is not None
        and response.status_code == 503,
        policy=fast_policy(2),
    )

    def send(i: int) -> bytes:
        response = transport.handle_request(httpx.Request("POST", url, content=f"req-{i}".encode()))
        return response.read()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(send, range(32)))

    assert results == [f"req-{i}".encode() for i in range(32)]
    assert all(count == 2 for count in seen.values())
