"""Persist classified ingestion failures as append-only error records."""

from __future__ import annotations

import logging
import typing as typ

from commitstats.common.time import utcnow
from commitstats.storage import ErrorRecord
from commitstats.storage.models import ERROR_CONTEXT_LENGTH

from .errors import FilterRunAbortedError, ProviderError
from .observability import categorize_error

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from .errors import ErrorKind

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000
_TRUNCATION_SUFFIX = "..."


def error_message(error: BaseException) -> str:
    """Return the size-capped message stored for ``error``."""
    message = str(error).strip()
    if not message:
        message = f"{type(error).__name__} (no message)"
    if len(message) > MAX_MESSAGE_LENGTH:
        message = message[:MAX_MESSAGE_LENGTH] + _TRUNCATION_SUFFIX
    return message


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, FilterRunAbortedError):
        return _status_code(error.error)
    if isinstance(error, ProviderError):
        return error.status_code
    return None


class ErrorRecorder:
    """Write error records without ever interrupting the caller.

    A failure to persist the record is logged at CRITICAL on this module's
    logger and swallowed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Store the session factory and the clock used for timestamps."""
        self._session_factory = session_factory
        self._clock = clock

    async def record(
        self,
        source: str | None,
        filter_criteria: str | None,
        context: str | None,
        error: BaseException,
    ) -> ErrorKind:
        """Classify ``error`` and persist it; return the kind assigned."""
        kind = categorize_error(error)
        message = error_message(error)
        bounded_context = None if context is None else context[:ERROR_CONTEXT_LENGTH]
        try:
            async with self._session_factory() as session, session.begin():
                session.add(
                    ErrorRecord(
                        recorded_at=self._clock(),
                        source=source,
                        filter_criteria=filter_criteria,
                        kind=kind.value,
                        message=message,
                        status_code=_status_code(error),
                        context=bounded_context,
                    )
                )
        except Exception:  # noqa: BLE001 - recording must never fail the caller
            logger.critical(
                "Failed to save error record: source=%s filter=%s kind=%s "
                "context=%s message=%s",
                source,
                filter_criteria,
                kind,
                bounded_context,
                message,
                exc_info=True,
            )
        return kind
