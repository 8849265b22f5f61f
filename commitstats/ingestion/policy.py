"""Rate-limit and not-ready handling for provider responses.

Throttling ends the current filter run without local retries. Responses
reporting that data is still being computed are retried a bounded number of
times with a fixed delay; once the budget is spent the caller receives the
last :class:`RetryableFailure` and treats the data as unavailable.
"""

from __future__ import annotations

import asyncio
import collections.abc as cabc
import dataclasses
import datetime as dt
import logging
import typing as typ
from http import HTTPStatus

from .errors import ErrorKind, ProviderError, RateLimitDetails
from .outcome import RetryableFailure, outcome_from_error

if typ.TYPE_CHECKING:
    import httpx

    from .outcome import Empty, FatalFailure, FetchOutcome

logger = logging.getLogger(__name__)

_HTTP_ERROR_STATUS_THRESHOLD = 400
_HTTP_SERVER_ERROR_THRESHOLD = 500


def _header_int(response: httpx.Response, name: str) -> int | None:
    raw = response.headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


def rate_limit_details(response: httpx.Response) -> RateLimitDetails | None:
    """Extract quota headers from a response, if the provider sent any."""
    limit = _header_int(response, "X-RateLimit-Limit")
    remaining = _header_int(response, "X-RateLimit-Remaining")
    reset_epoch = _header_int(response, "X-RateLimit-Reset")
    retry_after = _header_int(response, "Retry-After")
    if all(value is None for value in (limit, remaining, reset_epoch, retry_after)):
        return None
    reset_at = (
        dt.datetime.fromtimestamp(reset_epoch, tz=dt.UTC)
        if reset_epoch is not None
        else None
    )
    return RateLimitDetails(
        limit=limit,
        remaining=remaining,
        reset_at=reset_at,
        retry_after_s=retry_after,
    )


def _is_throttled(response: httpx.Response) -> bool:
    if response.status_code == HTTPStatus.TOO_MANY_REQUESTS:
        return True
    if response.status_code != HTTPStatus.FORBIDDEN:
        return False
    # GitHub reports primary and secondary limits as 403 with quota headers.
    return (
        _header_int(response, "X-RateLimit-Remaining") == 0
        or "Retry-After" in response.headers
    )


def classify_response(response: httpx.Response) -> ErrorKind | None:
    """Classify a provider response, returning ``None`` for usable responses."""
    status = response.status_code
    if _is_throttled(response):
        return ErrorKind.RATE_LIMIT
    if status == HTTPStatus.ACCEPTED:
        return ErrorKind.TRANSIENT_NOT_READY
    if status < _HTTP_ERROR_STATUS_THRESHOLD:
        return None
    if status == HTTPStatus.NOT_FOUND:
        return ErrorKind.NOT_FOUND
    if status in {HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN}:
        return ErrorKind.AUTH_OR_CONFIG
    if status >= _HTTP_SERVER_ERROR_THRESHOLD:
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def provider_error_for(
    response: httpx.Response, *, source: str
) -> ProviderError | None:
    """Return a :class:`ProviderError` for unusable responses, else ``None``."""
    kind = classify_response(response)
    if kind is None:
        return None
    rate_limit = None
    if kind is ErrorKind.RATE_LIMIT:
        rate_limit = rate_limit_details(response)
    error = ProviderError.from_status(
        source,
        response.status_code,
        kind,
        path=response.request.url.path,
        rate_limit=rate_limit,
    )
    if kind is ErrorKind.RATE_LIMIT:
        logger.warning("Rate limit reached: %s", error)
    return error


def raise_for_provider_status(response: httpx.Response, *, source: str) -> None:
    """Raise :class:`ProviderError` when ``response`` is not usable."""
    error = provider_error_for(response, source=source)
    if error is not None:
        raise error


def outcome_for_response(
    response: httpx.Response, *, source: str
) -> Empty | RetryableFailure | FatalFailure | None:
    """Return the failure outcome for an unusable response, else ``None``."""
    error = provider_error_for(response, source=source)
    if error is None:
        return None
    return outcome_from_error(error)


type Sleep = cabc.Callable[[float], cabc.Awaitable[None]]


@dataclasses.dataclass(frozen=True, slots=True)
class NotReadyRetryPolicy:
    """Bounded retry for calls answered with "not ready yet".

    Attributes
    ----------
    max_attempts
        Total number of calls made before giving up, including the first.
    delay
        Fixed pause between attempts.
    sleep
        Awaitable used to pause; replaced in tests.

    """

    max_attempts: int = 4
    delay: dt.timedelta = dt.timedelta(seconds=2)
    sleep: Sleep = dataclasses.field(
        default=asyncio.sleep, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        """Reject budgets that would never call the provider."""
        if self.max_attempts < 1:
            msg = f"max_attempts must be positive, got: {self.max_attempts}"
            raise ValueError(msg)
        if self.delay < dt.timedelta(0):
            msg = f"delay must not be negative, got: {self.delay}"
            raise ValueError(msg)

    async def run[T](
        self, call: cabc.Callable[[], cabc.Awaitable[FetchOutcome[T]]]
    ) -> FetchOutcome[T]:
        """Invoke ``call`` until it stops asking for a retry or the budget runs out."""
        outcome = await call()
        attempt = 1
        while isinstance(outcome, RetryableFailure) and attempt < self.max_attempts:
            logger.debug(
                "Provider data not ready (attempt %d/%d); retrying in %.1fs",
                attempt,
                self.max_attempts,
                self.delay.total_seconds(),
            )
            await self.sleep(self.delay.total_seconds())
            outcome = await call()
            attempt += 1
        if isinstance(outcome, RetryableFailure):
            return dataclasses.replace(outcome, attempts=attempt)
        return outcome
