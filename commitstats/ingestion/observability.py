"""Observability primitives for commit ingestion.

Provides error classification and structured log events for source runs,
filter runs, and the repositories and commits skipped along the way. Events
are emitted through standard logging as ``[event.type] key=value`` messages
suitable for parsing by log aggregators.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import typing as typ

import httpx

from .errors import (
    ErrorKind,
    FilterRunAbortedError,
    ProviderError,
    ResponseShapeError,
    SourceConfigError,
)

if typ.TYPE_CHECKING:
    import datetime as dt

    from .orchestrator import FilterRunResult

logger = logging.getLogger(__name__)


class IngestionEventType(enum.StrEnum):
    """Structured log event types for ingestion observability."""

    SOURCE_STARTED = "ingestion.source.started"
    SOURCE_COMPLETED = "ingestion.source.completed"
    SOURCE_WITHOUT_FILTERS = "ingestion.source.no_filters"
    SOURCE_BUSY = "ingestion.source.busy"
    FILTER_STARTED = "ingestion.filter.started"
    FILTER_COMPLETED = "ingestion.filter.completed"
    FILTER_FAILED = "ingestion.filter.failed"
    REPOSITORY_SKIPPED = "ingestion.repository.skipped"
    COMMIT_SKIPPED = "ingestion.commit.skipped"


@dataclasses.dataclass(frozen=True, slots=True)
class FilterRunContext:
    """Shared context for a single filter run."""

    source: str
    filter_criteria: str
    since: dt.datetime
    started_at: dt.datetime

    def describe(
        self,
        *,
        action: str,
        repository: str | None = None,
        commit_sha: str | None = None,
    ) -> str:
        """Return the location string stored on error records."""
        parts = [f"Source: {self.source}", f"Filter: {self.filter_criteria}"]
        if repository is not None:
            parts.append(f"Repo: {repository}")
        if commit_sha is not None:
            parts.append(f"Commit: {commit_sha[:7]}")
        parts.append(f"Action: {action}")
        return ", ".join(parts)


_EXCEPTION_KIND_MAP: tuple[tuple[type[BaseException], ErrorKind], ...] = (
    (httpx.TimeoutException, ErrorKind.TIMEOUT),
    (httpx.TransportError, ErrorKind.NETWORK),
    (SourceConfigError, ErrorKind.AUTH_OR_CONFIG),
    (ResponseShapeError, ErrorKind.UNKNOWN),
)


def categorize_error(exc: BaseException) -> ErrorKind:
    """Classify an exception into the ingestion error taxonomy.

    Returns:
        ErrorKind used for error records and failure-policy decisions.

    """
    if isinstance(exc, ProviderError):
        return exc.kind
    if isinstance(exc, FilterRunAbortedError):
        return categorize_error(exc.error)

    for exc_type, kind in _EXCEPTION_KIND_MAP:
        if isinstance(exc, exc_type):
            return kind

    return ErrorKind.UNKNOWN


class IngestionEventLogger:
    """Emit structured ingestion events via Python logging.

    Successful progress is logged at INFO, skips at WARNING (INFO for
    ``NOT_FOUND``), and aborted filter runs at ERROR.
    """

    def log_source_started(self, source: str, filter_count: int) -> None:
        """Log the start of a source run."""
        logger.info(
            "[%s] source=%s filter_count=%d",
            IngestionEventType.SOURCE_STARTED,
            source,
            filter_count,
        )

    def log_source_completed(
        self, source: str, results: typ.Sequence[FilterRunResult]
    ) -> None:
        """Log the end of a source run with per-filter totals."""
        logger.info(
            "[%s] source=%s filters_succeeded=%d filters_failed=%d "
            "commits_ingested=%d",
            IngestionEventType.SOURCE_COMPLETED,
            source,
            sum(1 for result in results if result.succeeded),
            sum(1 for result in results if not result.succeeded),
            sum(result.commits_ingested for result in results),
        )

    def log_source_without_filters(self, source: str) -> None:
        """Warn that a source has no configured filters."""
        logger.warning(
            "[%s] source=%s no filters configured; nothing to ingest",
            IngestionEventType.SOURCE_WITHOUT_FILTERS,
            source,
        )

    def log_source_busy(self, source: str) -> None:
        """Warn that a trigger was rejected because the source is running."""
        logger.warning(
            "[%s] source=%s run already in progress; trigger rejected",
            IngestionEventType.SOURCE_BUSY,
            source,
        )

    def log_filter_started(self, context: FilterRunContext) -> None:
        """Log the start of a filter run."""
        logger.info(
            "[%s] source=%s filter=%s since=%s started_at=%s",
            IngestionEventType.FILTER_STARTED,
            context.source,
            context.filter_criteria,
            context.since.isoformat(),
            context.started_at.isoformat(),
        )

    def log_filter_completed(
        self,
        context: FilterRunContext,
        result: FilterRunResult,
        duration: dt.timedelta,
    ) -> None:
        """Log a filter run that completed and advanced its watermark."""
        logger.info(
            "[%s] source=%s filter=%s duration_seconds=%.3f "
            "repositories_processed=%d repositories_skipped=%d "
            "commits_ingested=%d commits_already_present=%d commits_skipped=%d",
            IngestionEventType.FILTER_COMPLETED,
            context.source,
            context.filter_criteria,
            duration.total_seconds(),
            result.repositories_processed,
            result.repositories_skipped,
            result.commits_ingested,
            result.commits_already_present,
            result.commits_skipped,
        )

    def log_filter_failed(
        self,
        context: FilterRunContext,
        error: BaseException,
        duration: dt.timedelta,
    ) -> None:
        """Log an aborted filter run whose watermark was left unchanged."""
        logger.error(
            "[%s] source=%s filter=%s duration_seconds=%.3f "
            "error_type=%s error_kind=%s error_message=%s",
            IngestionEventType.FILTER_FAILED,
            context.source,
            context.filter_criteria,
            duration.total_seconds(),
            type(error).__name__,
            categorize_error(error),
            str(error),
            exc_info=error,
        )

    def log_repository_skipped(
        self,
        context: FilterRunContext,
        repository: str,
        error: BaseException,
    ) -> None:
        """Log a repository skipped after a non-fatal failure."""
        kind = categorize_error(error)
        logger.log(
            logging.INFO if kind is ErrorKind.NOT_FOUND else logging.WARNING,
            "[%s] source=%s filter=%s repository=%s error_kind=%s error_message=%s",
            IngestionEventType.REPOSITORY_SKIPPED,
            context.source,
            context.filter_criteria,
            repository,
            kind,
            str(error),
        )

    def log_commit_skipped(
        self,
        context: FilterRunContext,
        repository: str,
        commit_sha: str,
        error: BaseException,
    ) -> None:
        """Log a commit skipped after its detail could not be fetched."""
        kind = categorize_error(error)
        logger.log(
            logging.INFO if kind is ErrorKind.NOT_FOUND else logging.WARNING,
            "[%s] source=%s filter=%s repository=%s commit=%s "
            "error_kind=%s error_message=%s",
            IngestionEventType.COMMIT_SKIPPED,
            context.source,
            context.filter_criteria,
            repository,
            commit_sha[:7],
            kind,
            str(error),
        )
