import asyncio

import httpx
import pytest

from recipe_feed_server.core.errors import (
    ExhaustedRetriesError,
    FatalRequestError,
    RemoteCallError,
    RemoteErrorKind,
    TransientIOError,
)
from recipe_feed_server.services.retry import RetryPolicy, classify_error, execute


class _Sleeps:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _Flaky:
    """Fails with ``error`` for the first ``failures`` calls, then returns ``value``."""

    def __init__(self, failures: int, error: Exception, value='ok'):
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


def _status_error(status: int, headers: dict | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request('POST', 'https://api.example.test/v1/embeddings')
    response = httpx.Response(status, headers=headers, text='boom', request=request)
    return httpx.HTTPStatusError(f'HTTP {status}', request=request, response=response)


POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0)


class TestRetryPolicy:
    def test_backoff_doubles_and_caps(self):
        policy = RetryPolicy(max_attempts=6, base_delay=1.0, max_delay=5.0)
        assert [policy.backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestClassifyError:
    @pytest.mark.parametrize('status,kind', [
        (429, RemoteErrorKind.RATE_LIMITED),
        (402, RemoteErrorKind.QUOTA_EXCEEDED),
        (413, RemoteErrorKind.PAYLOAD_TOO_LARGE),
        (401, RemoteErrorKind.AUTH),
        (403, RemoteErrorKind.AUTH),
        (422, RemoteErrorKind.BAD_REQUEST),
        (500, RemoteErrorKind.UNKNOWN),
        (503, RemoteErrorKind.UNKNOWN),
    ])
    def test_http_status(self, status, kind):
        error = classify_error(_status_error(status))
        assert error.kind is kind
        assert error.status_code == status
        assert isinstance(error, FatalRequestError if kind.fatal else TransientIOError)

    def test_retry_after_header(self):
        error = classify_error(_status_error(429, {'Retry-After': '7'}))
        assert error.retry_after == 7.0

    def test_transport_error_is_network(self):
        exc = httpx.ConnectError('refused', request=httpx.Request('GET', 'https://x.test'))
        error = classify_error(exc)
        assert error.kind is RemoteErrorKind.NETWORK
        assert error.__cause__ is exc

    def test_anything_else_is_unknown(self):
        assert classify_error(RuntimeError('?')).kind is RemoteErrorKind.UNKNOWN

    def test_classified_errors_pass_through(self):
        original = RemoteCallError.of('quota', RemoteErrorKind.QUOTA_EXCEEDED)
        assert classify_error(original) is original


class TestExecute:
    @pytest.mark.asyncio
    @pytest.mark.parametrize('failures', [0, 1, 2])
    async def test_succeeds_after_k_failures(self, failures):
        op = _Flaky(failures, _status_error(503))
        sleeps = _Sleeps()
        assert await execute(op, POLICY, sleep=sleeps) == 'ok'
        assert op.calls == failures + 1
        assert sleeps.delays == [1.0, 2.0][:failures]

    @pytest.mark.asyncio
    async def test_quota_exceeded_aborts_after_one_attempt(self):
        op = _Flaky(10, _status_error(402))
        sleeps = _Sleeps()
        with pytest.raises(FatalRequestError) as info:
            await execute(op, POLICY, sleep=sleeps)
        assert op.calls == 1
        assert info.value.kind is RemoteErrorKind.QUOTA_EXCEEDED
        assert isinstance(info.value.__cause__, httpx.HTTPStatusError)
        assert sleeps.delays == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize('status', [400, 401, 403])
    async def test_auth_and_bad_request_abort(self, status):
        op = _Flaky(10, _status_error(status))
        with pytest.raises(FatalRequestError):
            await execute(op, POLICY, sleep=_Sleeps())
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_rate_limit_waits_retry_after(self):
        op = _Flaky(1, _status_error(429, {'Retry-After': '3'}))
        sleeps = _Sleeps()
        assert await execute(op, POLICY, sleep=sleeps) == 'ok'
        assert sleeps.delays == [3.0]

    @pytest.mark.asyncio
    async def test_rate_limit_without_header_backs_off(self):
        op = _Flaky(2, _status_error(429))
        sleeps = _Sleeps()
        assert await execute(op, POLICY, sleep=sleeps) == 'ok'
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_surfaces_last_error(self):
        op = _Flaky(10, _status_error(500))
        with pytest.raises(ExhaustedRetriesError) as info:
            await execute(op, POLICY, sleep=_Sleeps())
        assert op.calls == 3
        err = info.value
        assert err.attempts == 3
        assert err.last_error.kind is RemoteErrorKind.UNKNOWN
        assert err.__cause__ is err.last_error
        assert 'HTTP 500' in str(err)

    @pytest.mark.asyncio
    async def test_payload_too_large_shrinks_then_retries(self):
        op = _Flaky(1, _status_error(413))
        shrinks = []

        def shrink():
            shrinks.append(1)
            return True

        sleeps = _Sleeps()
        assert await execute(op, POLICY, shrink=shrink, sleep=sleeps) == 'ok'
        assert op.calls == 2
        assert shrinks == [1]
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_payload_too_large_without_shrink_aborts(self):
        op = _Flaky(10, _status_error(413))
        with pytest.raises(FatalRequestError):
            await execute(op, POLICY, sleep=_Sleeps())
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_payload_too_large_when_already_minimal_aborts(self):
        op = _Flaky(10, _status_error(413))
        with pytest.raises(FatalRequestError):
            await execute(op, POLICY, shrink=lambda: False, sleep=_Sleeps())
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_should_continue_checked_between_attempts(self):
        op = _Flaky(10, httpx.ReadTimeout('slow'))
        checks = []

        def should_continue():
            checks.append(op.calls)
            return False

        with pytest.raises(ExhaustedRetriesError) as info:
            await execute(op, POLICY, should_continue=should_continue, sleep=_Sleeps())
        assert op.calls == 1
        assert checks == [1]
        assert info.value.last_error.kind is RemoteErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_cancellation_is_not_classified(self):
        async def op():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await execute(op, POLICY, sleep=_Sleeps())
