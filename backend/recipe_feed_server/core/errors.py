"""Error taxonomy shared by the remote-call wrapper, the engagement store and the feed."""

from __future__ import annotations

from enum import Enum


class FeedServerError(Exception):
    """Base class for errors raised by the feed backend."""


class RemoteErrorKind(str, Enum):
    RATE_LIMITED = 'rate_limited'
    QUOTA_EXCEEDED = 'quota_exceeded'
    PAYLOAD_TOO_LARGE = 'payload_too_large'
    NETWORK = 'network'
    AUTH = 'auth'
    BAD_REQUEST = 'bad_request'
    UNKNOWN = 'unknown'

    @property
    def fatal(self) -> bool:
        return self in _FATAL_KINDS


_FATAL_KINDS = frozenset({
    RemoteErrorKind.QUOTA_EXCEEDED,
    RemoteErrorKind.PAYLOAD_TOO_LARGE,
    RemoteErrorKind.AUTH,
    RemoteErrorKind.BAD_REQUEST,
})


class RemoteCallError(FeedServerError):
    """A classified failure of a remote AI/image/embedding call."""

    def __init__(
        self,
        message: str,
        *,
        kind: RemoteErrorKind,
        retry_after: float | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, status={self.status_code}, message={str(self)!r})"

    @classmethod
    def of(
        cls,
        message: str,
        kind: RemoteErrorKind,
        *,
        retry_after: float | None = None,
        status_code: int | None = None,
    ) -> RemoteCallError:
        """Build the subclass matching ``kind``."""
        target = FatalRequestError if kind.fatal else TransientIOError
        return target(message, kind=kind, retry_after=retry_after, status_code=status_code)


class TransientIOError(RemoteCallError):
    """Retryable: network failures, rate limits, unknown/server errors."""


class FatalRequestError(RemoteCallError):
    """Not retryable: auth, bad request, exhausted quota, oversized payload."""


class ExhaustedRetriesError(FeedServerError):
    """The retry budget was spent; ``last_error`` is the final classified failure."""

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class DataInconsistencyError(FeedServerError):
    """A read-modify-write saw a base row that changed before the write landed."""


class DimensionMismatchError(FeedServerError, ValueError):
    pass


class InvalidCursorError(FeedServerError, ValueError):
    pass


class MetricNotFoundError(FeedServerError, LookupError):
    pass
