"""Relational storage for ingested commits, watermarks and error records."""

from __future__ import annotations

from .errors import TimezoneAwareRequiredError
from .models import (
    Base,
    CommitRecord,
    ErrorRecord,
    FilterWatermark,
    UTCDateTime,
    init_storage,
)

__all__ = [
    "Base",
    "CommitRecord",
    "ErrorRecord",
    "FilterWatermark",
    "TimezoneAwareRequiredError",
    "UTCDateTime",
    "init_storage",
]
