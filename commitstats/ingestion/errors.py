"""Error taxonomy and exception types for commit ingestion."""

from __future__ import annotations

import dataclasses
import enum
import typing as typ

if typ.TYPE_CHECKING:
    import datetime as dt


class ErrorKind(enum.StrEnum):
    """Coarse failure classes persisted on error records."""

    RATE_LIMIT = "RATE_LIMIT"
    TRANSIENT_NOT_READY = "TRANSIENT_NOT_READY"
    NOT_FOUND = "NOT_FOUND"
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    AUTH_OR_CONFIG = "AUTH_OR_CONFIG"
    UNKNOWN = "UNKNOWN"


# Kinds that end a filter run even when raised for a single repository or
# commit. Repository listing failures abort the filter whatever their kind.
RUN_ABORTING_KINDS: frozenset[ErrorKind] = frozenset({ErrorKind.RATE_LIMIT})


@dataclasses.dataclass(frozen=True, slots=True)
class RateLimitDetails:
    """Quota information a provider attached to a throttled response."""

    limit: int | None = None
    remaining: int | None = None
    reset_at: dt.datetime | None = None
    retry_after_s: int | None = None

    def describe(self) -> str:
        """Render the populated fields as ``key=value`` pairs."""
        parts: list[str] = []
        if self.limit is not None:
            parts.append(f"limit={self.limit}")
        if self.remaining is not None:
            parts.append(f"remaining={self.remaining}")
        if self.reset_at is not None:
            parts.append(f"reset_at={self.reset_at.isoformat()}")
        if self.retry_after_s is not None:
            parts.append(f"retry_after_s={self.retry_after_s}")
        return " ".join(parts)


class ProviderError(RuntimeError):
    """Raised when a source-control provider returns an error response."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        status_code: int | None = None,
        rate_limit: RateLimitDetails | None = None,
    ) -> None:
        """Initialise with a message, its classification and HTTP details."""
        self.kind = kind
        self.status_code = status_code
        self.rate_limit = rate_limit
        super().__init__(message)

    @classmethod
    def from_status(
        cls,
        source: str,
        status_code: int,
        kind: ErrorKind,
        *,
        path: str | None = None,
        rate_limit: RateLimitDetails | None = None,
    ) -> ProviderError:
        """Return an error describing a classified HTTP status."""
        message = f"{source} HTTP {status_code}"
        if path:
            message = f"{message} for {path}"
        if rate_limit is not None and rate_limit.describe():
            message = f"{message} ({rate_limit.describe()})"
        return cls(
            message, kind=kind, status_code=status_code, rate_limit=rate_limit
        )


class ResponseShapeError(RuntimeError):
    """Raised when a provider payload does not match the expected structure."""

    @classmethod
    def invalid(cls, source: str, what: str, detail: str) -> ResponseShapeError:
        """Return an error for a payload that failed to decode."""
        return cls(f"{source} returned an unexpected {what} payload: {detail}")


class SourceConfigError(RuntimeError):
    """Raised when a source connector is misconfigured."""

    @classmethod
    def missing_setting(cls, env_var: str) -> SourceConfigError:
        """Return an error when a required environment variable is unset."""
        return cls(f"{env_var} is required")

    @classmethod
    def empty_credential(cls, name: str) -> SourceConfigError:
        """Return an error when a credential is blank."""
        return cls(f"{name} must be non-empty")

    @classmethod
    def unknown_owner(cls, what: str, name: str) -> SourceConfigError:
        """Return an error when the configured organisation or workspace is absent."""
        return cls(f"{what} {name!r} could not be resolved")


class UnknownSourceError(LookupError):
    """Raised when a trigger names a source commitstats does not support."""

    def __init__(self, source: str) -> None:
        """Record the requested source name."""
        self.source = source
        super().__init__(f"Unknown source: {source!r}")


class SourceDisabledError(RuntimeError):
    """Raised when a trigger names a source that is disabled or unconfigured."""

    def __init__(self, source: str) -> None:
        """Record the requested source name."""
        self.source = source
        super().__init__(f"Source {source!r} is disabled")


class SourceBusyError(RuntimeError):
    """Raised when a trigger names a source whose run is still in progress."""

    def __init__(self, source: str) -> None:
        """Record the requested source name."""
        self.source = source
        super().__init__(f"Ingestion for source {source!r} is already running")


class FilterRunAbortedError(RuntimeError):
    """Signals that a filter run must stop, leaving its watermark untouched.

    Attributes
    ----------
    error
        The classified failure that ended the run.
    context
        Where in the pipeline the failure occurred.

    """

    def __init__(self, error: BaseException, context: str) -> None:
        """Wrap the aborting failure with its pipeline location."""
        self.error = error
        self.context = context
        super().__init__(f"{context}: {error}")
