"""Incremental multi-source commit ingestion.

The orchestrator walks every configured filter of a source: it lists the
repositories the filter matches, lists each repository's commits since the
filter's watermark, stores commits the dedup index has not seen, and advances
the watermark to the run's start time only when the walk was not aborted.

Failures are handled at the narrowest scope that can continue. A commit
whose detail cannot be fetched is skipped, and so is a repository whose
commits cannot be listed. Rate limits anywhere, and any failure while listing
the filter's repositories, abort the filter run with its watermark
untouched. Every failure is written through the error recorder.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import typing as typ

from commitstats.common.time import utcnow

from .config import IngestionConfig
from .errors import (
    RUN_ABORTING_KINDS,
    FilterRunAbortedError,
    SourceDisabledError,
    UnknownSourceError,
)
from .models import SourceName
from .observability import FilterRunContext, IngestionEventLogger
from .outcome import (
    Empty,
    FatalFailure,
    Ok,
    RetryableFailure,
    outcome_from_error,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from .connector import SourceConnector
    from .dedup import CommitIndex
    from .models import CommitData, RepositoryDescriptor
    from .outcome import FetchOutcome
    from .policy import NotReadyRetryPolicy
    from .recorder import ErrorRecorder
    from .watermarks import WatermarkEntry, WatermarkStore

logger = logging.getLogger(__name__)

_KNOWN_SOURCE_ORDER = tuple(source.value for source in SourceName)
_KNOWN_SOURCES = frozenset(_KNOWN_SOURCE_ORDER)


@dataclasses.dataclass(frozen=True, slots=True)
class FilterRunResult:
    """Summary of one filter run."""

    source: str
    filter_criteria: str
    started_at: dt.datetime
    succeeded: bool
    repositories_processed: int = 0
    repositories_skipped: int = 0
    commits_ingested: int = 0
    commits_already_present: int = 0
    commits_skipped: int = 0


@dataclasses.dataclass(frozen=True, slots=True)
class SourceRunResult:
    """Summary of one source run.

    ``skipped`` is True when the run was rejected because another run of the
    same source was still in progress.
    """

    source: str
    filters: tuple[FilterRunResult, ...] = ()
    skipped: bool = False

    @property
    def commits_ingested(self) -> int:
        """Return the number of new commits stored across all filters."""
        return sum(result.commits_ingested for result in self.filters)


@dataclasses.dataclass(slots=True)
class _FilterTally:
    """Mutable counters accumulated while a filter is walked."""

    repositories_processed: int = 0
    repositories_skipped: int = 0
    commits_ingested: int = 0
    commits_already_present: int = 0
    commits_skipped: int = 0

    def result(
        self, context: FilterRunContext, *, succeeded: bool
    ) -> FilterRunResult:
        return FilterRunResult(
            source=context.source,
            filter_criteria=context.filter_criteria,
            started_at=context.started_at,
            succeeded=succeeded,
            repositories_processed=self.repositories_processed,
            repositories_skipped=self.repositories_skipped,
            commits_ingested=self.commits_ingested,
            commits_already_present=self.commits_already_present,
            commits_skipped=self.commits_skipped,
        )


@dataclasses.dataclass(frozen=True, slots=True)
class _FilterScope:
    """Collaborators and counters shared while one filter is walked."""

    connector: SourceConnector
    context: FilterRunContext
    tally: _FilterTally


@dataclasses.dataclass(frozen=True, slots=True)
class OrchestratorDependencies:
    """Persistence collaborators used by :class:`IngestionOrchestrator`.

    Attributes
    ----------
    commit_index
        Dedup index consulted before any detail fetch.
    watermarks
        Store of per-filter last-fetch timestamps.
    recorder
        Error recorder for every skipped or aborted unit of work.

    """

    commit_index: CommitIndex
    watermarks: WatermarkStore
    recorder: ErrorRecorder


class IngestionOrchestrator:
    """Drive incremental ingestion for every enabled source."""

    def __init__(
        self,
        dependencies: OrchestratorDependencies,
        connectors: cabc.Mapping[str, SourceConnector],
        *,
        config: IngestionConfig | None = None,
        retry_policy: NotReadyRetryPolicy | None = None,
        event_logger: IngestionEventLogger | None = None,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Bind persistence collaborators to the configured source connectors."""
        self._commit_index = dependencies.commit_index
        self._watermarks = dependencies.watermarks
        self._recorder = dependencies.recorder
        self._connectors = dict(connectors)
        self._config = config or IngestionConfig()
        self._retry_policy = retry_policy or self._config.retry_policy()
        self._event_logger = event_logger or IngestionEventLogger()
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def enabled_sources(self) -> tuple[str, ...]:
        """Return enabled sources that have a connector, in declaration order."""
        candidates = dict.fromkeys([*_KNOWN_SOURCE_ORDER, *self._connectors])
        return tuple(
            source
            for source in candidates
            if source in self._connectors and source in self._config.enabled_sources
        )

    def ensure_known(self, source: str) -> None:
        """Raise :class:`UnknownSourceError` for unsupported source names."""
        if source not in self._connectors and source not in _KNOWN_SOURCES:
            raise UnknownSourceError(source)

    def ensure_enabled(self, source: str) -> None:
        """Raise unless ``source`` is known, enabled and has a connector."""
        self.ensure_known(source)
        if source not in self.enabled_sources:
            raise SourceDisabledError(source)

    def is_running(self, source: str) -> bool:
        """Return True while a run of ``source`` holds its lock."""
        lock = self._locks.get(source)
        return lock is not None and lock.locked()

    async def run_all(self) -> list[SourceRunResult]:
        """Run every enabled source concurrently and collect their summaries.

        A source whose run raises unexpectedly is logged and left out of the
        returned list; the other sources still complete.
        """
        sources = self.enabled_sources
        gathered = await asyncio.gather(
            *(self.run_source(source) for source in sources),
            return_exceptions=True,
        )
        results: list[SourceRunResult] = []
        for source, outcome in zip(sources, gathered, strict=True):
            if isinstance(outcome, SourceRunResult):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                logger.error(
                    "Ingestion run for source %s failed", source, exc_info=outcome
                )
            else:
                raise outcome
        return results

    async def run_source(self, source: str) -> SourceRunResult:
        """Run every filter of ``source`` sequentially.

        Raises
        ------
        UnknownSourceError
            If ``source`` is not a supported source name.
        SourceDisabledError
            If ``source`` is disabled or has no connector.

        """
        self.ensure_enabled(source)
        connector = self._connectors[source]
        lock = self._locks.setdefault(source, asyncio.Lock())
        if lock.locked():
            self._event_logger.log_source_busy(source)
            return SourceRunResult(source=source, skipped=True)

        async with lock:
            entries = await self._watermarks.list_for_source(source)
            if not entries:
                self._event_logger.log_source_without_filters(source)
                return SourceRunResult(source=source)

            self._event_logger.log_source_started(source, len(entries))
            results = [await self._run_filter(connector, entry) for entry in entries]
            self._event_logger.log_source_completed(source, results)
            return SourceRunResult(source=source, filters=tuple(results))

    async def _run_filter(
        self, connector: SourceConnector, entry: WatermarkEntry
    ) -> FilterRunResult:
        """Walk one filter and advance its watermark unless the walk aborted."""
        context = FilterRunContext(
            source=entry.source,
            filter_criteria=entry.filter_criteria,
            since=entry.last_fetch_at or self._config.default_since,
            started_at=self._clock(),
        )
        self._event_logger.log_filter_started(context)
        scope = _FilterScope(connector=connector, context=context, tally=_FilterTally())

        try:
            await self._walk_filter(scope)
        except FilterRunAbortedError as aborted:
            await self._recorder.record(
                context.source,
                context.filter_criteria,
                aborted.context,
                aborted.error,
            )
            self._event_logger.log_filter_failed(
                context, aborted.error, self._clock() - context.started_at
            )
            return scope.tally.result(context, succeeded=False)

        try:
            await self._watermarks.set(
                context.source, context.filter_criteria, context.started_at
            )
        except Exception as exc:  # noqa: BLE001 - recorded, next filter still runs
            await self._recorder.record(
                context.source,
                context.filter_criteria,
                context.describe(action="Update Watermark"),
                exc,
            )
            self._event_logger.log_filter_failed(
                context, exc, self._clock() - context.started_at
            )
            return scope.tally.result(context, succeeded=False)

        result = scope.tally.result(context, succeeded=True)
        self._event_logger.log_filter_completed(
            context, result, self._clock() - context.started_at
        )
        return result

    async def _walk_filter(self, scope: _FilterScope) -> None:
        """Process each matching repository, converting listing failures to aborts."""
        context = scope.context
        repositories = scope.connector.list_repositories(context.filter_criteria)
        try:
            async with contextlib.aclosing(repositories) as stream:
                async for repository in stream:
                    outcome = await self._ingest_repository(scope, repository)
                    await self._settle_repository(scope, repository, outcome)
        except FilterRunAbortedError:
            raise
        except Exception as exc:
            raise FilterRunAbortedError(
                exc, context.describe(action="List Repositories")
            ) from exc

    async def _settle_repository(
        self,
        scope: _FilterScope,
        repository: RepositoryDescriptor,
        outcome: FetchOutcome[int],
    ) -> None:
        """Apply the per-repository failure policy to a repository outcome."""
        context = scope.context
        location = context.describe(
            action="List/Process Commits", repository=repository.full_name
        )
        match outcome:
            case Ok():
                scope.tally.repositories_processed += 1
            case Empty(error=None, reason=reason):
                logger.debug(
                    "Repository %s has no data: %s", repository.full_name, reason
                )
                scope.tally.repositories_processed += 1
            case FatalFailure(error=error, kind=kind) if kind in RUN_ABORTING_KINDS:
                raise FilterRunAbortedError(error, location)
            case (
                Empty(error=Exception() as error)
                | RetryableFailure(error=error)
                | FatalFailure(error=error)
            ):
                scope.tally.repositories_skipped += 1
                self._event_logger.log_repository_skipped(
                    context, repository.full_name, error
                )
                await self._recorder.record(
                    context.source, context.filter_criteria, location, error
                )

    async def _ingest_repository(
        self, scope: _FilterScope, repository: RepositoryDescriptor
    ) -> FetchOutcome[int]:
        """Store new commits of one repository; return how many were written."""
        before = scope.tally.commits_ingested
        commits = scope.connector.list_commits_since(repository, scope.context.since)
        try:
            async with contextlib.aclosing(commits) as stream:
                async for commit in stream:
                    await self._ingest_commit(scope, repository, commit)
        except FilterRunAbortedError:
            raise
        except Exception as exc:  # noqa: BLE001 - classified by the repository policy
            return outcome_from_error(exc)
        return Ok(scope.tally.commits_ingested - before)

    async def _ingest_commit(
        self,
        scope: _FilterScope,
        repository: RepositoryDescriptor,
        commit: CommitData,
    ) -> None:
        """Store one commit unless already present; skip it if detail fails."""
        context = scope.context
        tally = scope.tally
        if await self._commit_index.exists(
            context.source, repository.full_name, commit.sha
        ):
            tally.commits_already_present += 1
            return

        outcome = await self._retry_policy.run(
            lambda: scope.connector.fetch_commit_detail(repository, commit)
        )
        action = "Get Commit Detail"
        match outcome:
            case Ok(value=detailed):
                if await self._commit_index.save(
                    context.source, repository.full_name, detailed
                ):
                    tally.commits_ingested += 1
                else:
                    tally.commits_already_present += 1
                return
            case FatalFailure(error=error, kind=kind) if kind in RUN_ABORTING_KINDS:
                raise FilterRunAbortedError(
                    error,
                    context.describe(
                        action=action,
                        repository=repository.full_name,
                        commit_sha=commit.sha,
                    ),
                )
            case RetryableFailure(error=error, attempts=attempts):
                action = f"{action} (not ready after {attempts} attempts)"
                failure: Exception = error
            case Empty(error=Exception() as error) | FatalFailure(error=error):
                failure = error
            case Empty(reason=reason):
                failure = LookupError(reason)

        tally.commits_skipped += 1
        self._event_logger.log_commit_skipped(
            context, repository.full_name, commit.sha, failure
        )
        await self._recorder.record(
            context.source,
            context.filter_criteria,
            context.describe(
                action=action, repository=repository.full_name, commit_sha=commit.sha
            ),
            failure,
        )

    async def aclose(self) -> None:
        """Close every connector's HTTP resources."""
        for connector in self._connectors.values():
            await connector.aclose()


def summarize_runs(results: cabc.Iterable[SourceRunResult]) -> dict[str, typ.Any]:
    """Reduce source run results to a JSON-compatible per-source summary."""
    return {
        result.source: {
            "skipped": result.skipped,
            "filters_succeeded": sum(1 for item in result.filters if item.succeeded),
            "filters_failed": sum(1 for item in result.filters if not item.succeeded),
            "commits_ingested": result.commits_ingested,
        }
        for result in results
    }
