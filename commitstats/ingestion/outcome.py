"""Explicit result type for single provider calls.

Connector calls that can legitimately come back empty or "not ready yet"
return one of these values instead of raising, so the orchestrator decides
what to do with a ``match`` over the outcome.
"""

from __future__ import annotations

import dataclasses

from .errors import ErrorKind
from .observability import categorize_error


@dataclasses.dataclass(frozen=True, slots=True)
class Ok[T]:
    """The call produced data."""

    value: T


@dataclasses.dataclass(frozen=True, slots=True)
class Empty:
    """The provider has no data for the request.

    ``error`` is set when the emptiness was reported as a ``NOT_FOUND``
    response worth recording.
    """

    reason: str
    error: Exception | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class RetryableFailure:
    """The provider asked the caller to try again later."""

    error: Exception
    attempts: int = 1


@dataclasses.dataclass(frozen=True, slots=True)
class FatalFailure:
    """The call failed and retrying it will not help."""

    error: Exception
    kind: ErrorKind


type FetchOutcome[T] = Ok[T] | Empty | RetryableFailure | FatalFailure


def outcome_from_error(error: Exception) -> Empty | RetryableFailure | FatalFailure:
    """Map a classified failure onto the matching outcome variant."""
    kind = categorize_error(error)
    match kind:
        case ErrorKind.TRANSIENT_NOT_READY:
            return RetryableFailure(error)
        case ErrorKind.NOT_FOUND:
            return Empty(reason=str(error), error=error)
        case _:
            return FatalFailure(error, kind)


__all__ = [
    "Empty",
    "FatalFailure",
    "FetchOutcome",
    "Ok",
    "RetryableFailure",
    "outcome_from_error",
]
