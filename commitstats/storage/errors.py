"""Storage-layer error types."""

from __future__ import annotations


class TimezoneAwareRequiredError(ValueError):
    """Raised when a datetime bound for persistence lacks timezone information."""

    def __init__(self, context: str) -> None:
        """Attach a consistent message for the failing context."""
        super().__init__(f"{context} must be timezone aware")

    @classmethod
    def for_field(cls, field: str) -> TimezoneAwareRequiredError:
        """Return an error naming the offending field."""
        return cls(field)
