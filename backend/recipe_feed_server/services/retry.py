"""Retry/backoff executor for remote AI, image and embedding calls.

Failures are classified into :class:`RemoteErrorKind` values and each kind
gets a fixed policy: rate limits wait (``Retry-After`` when given), network
and unknown failures back off exponentially, payloads that are too large get
one chance to shrink, and auth / bad request / quota failures abort at once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

import httpx

from recipe_feed_server.core.config import settings
from recipe_feed_server.core.errors import (
    ExhaustedRetriesError,
    RemoteCallError,
    RemoteErrorKind,
)

T = TypeVar("T")

_log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    # seconds
    base_delay: float = 1.0
    max_delay: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def backoff(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.remote_max_attempts,
            base_delay=settings.remote_base_delay_seconds,
            max_delay=settings.remote_max_delay_seconds,
        )


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _kind_for_status(status: int) -> RemoteErrorKind:
    if status == 429:
        return RemoteErrorKind.RATE_LIMITED
    if status == 402:
        return RemoteErrorKind.QUOTA_EXCEEDED
    if status == 413:
        return RemoteErrorKind.PAYLOAD_TOO_LARGE
    if status in (401, 403):
        return RemoteErrorKind.AUTH
    if 400 <= status < 500:
        return RemoteErrorKind.BAD_REQUEST
    return RemoteErrorKind.UNKNOWN


def classify_error(exc: BaseException) -> RemoteCallError:
    """Map any exception raised by a remote operation onto the error taxonomy."""
    if isinstance(exc, RemoteCallError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        kind = _kind_for_status(response.status_code)
        retry_after = None
        if kind is RemoteErrorKind.RATE_LIMITED:
            retry_after = _parse_retry_after(response.headers.get('retry-after'))
        classified = RemoteCallError.of(
            f"HTTP {response.status_code} from {exc.request.url}: {_trim(response.text)}",
            kind,
            retry_after=retry_after,
            status_code=response.status_code,
        )
    elif isinstance(exc, httpx.TransportError):
        classified = RemoteCallError.of(f"network error: {exc!r}", RemoteErrorKind.NETWORK)
    else:
        classified = RemoteCallError.of(f"unexpected error: {exc!r}", RemoteErrorKind.UNKNOWN)
    classified.__cause__ = exc
    return classified


def _trim(text: str | None, *, limit: int = 200) -> str:
    if not text:
        return ''
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


async def execute(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    shrink: Callable[[], bool] | None = None,
    should_continue: Callable[[], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "remote call",
) -> T:
    """Run ``operation`` under ``policy`` and return its first successful result.

    ``shrink`` is invoked on PAYLOAD_TOO_LARGE and must return True when it
    reduced the input (the call is then retried) or False when the input is
    already minimal. ``should_continue`` is checked between attempts only; an
    in-flight call always finishes first.

    Fatal kinds re-raise the classified error. Running out of attempts raises
    :class:`ExhaustedRetriesError` carrying the last classified error.
    """
    policy = policy or RetryPolicy.from_settings()
    last_error: RemoteCallError | None = None
    attempts_made = 0

    for attempt in range(1, policy.max_attempts + 1):
        if attempt > 1 and should_continue is not None and not should_continue():
            _log.info("%s: aborted before attempt %d", label, attempt)
            break
        attempts_made = attempt
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - classified below
            error = classify_error(exc)
            last_error = error
            _log.warning(
                "%s: attempt %d/%d failed kind=%s: %s",
                label,
                attempt,
                policy.max_attempts,
                error.kind.value,
                error,
            )

        kind = last_error.kind
        if kind is RemoteErrorKind.PAYLOAD_TOO_LARGE:
            if shrink is None or not shrink():
                raise last_error
            continue
        if kind.fatal:
            raise last_error
        if attempt >= policy.max_attempts:
            break

        if kind is RemoteErrorKind.RATE_LIMITED and last_error.retry_after is not None:
            delay = last_error.retry_after
        else:
            delay = policy.backoff(attempt)
        if delay > 0:
            await sleep(delay)

    assert last_error is not None
    raise ExhaustedRetriesError(last_error, attempts_made) from last_error
