"""Unit tests for IngestionOrchestrator filter and source runs."""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import logging
import typing as typ

import pytest
from sqlalchemy import func, select

from commitstats.ingestion.config import IngestionConfig
from commitstats.ingestion.dedup import CommitIndex
from commitstats.ingestion.errors import (
    ErrorKind,
    ProviderError,
    SourceDisabledError,
    UnknownSourceError,
)
from commitstats.ingestion.orchestrator import (
    IngestionOrchestrator,
    OrchestratorDependencies,
    summarize_runs,
)
from commitstats.ingestion.outcome import FatalFailure
from commitstats.ingestion.policy import NotReadyRetryPolicy
from commitstats.ingestion.recorder import ErrorRecorder
from commitstats.ingestion.watermarks import WatermarkStore
from commitstats.storage import CommitRecord, ErrorRecord
from tests.unit.ingestion_test_helpers import (
    BlockingConnector,
    FakeConnector,
    FakeRepository,
    StepClock,
    make_commits,
    make_repository,
    no_sleep,
    not_ready,
    rate_limited,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from commitstats.ingestion.models import CommitData

RUN_START = dt.datetime(2024, 6, 1, 9, 0, tzinfo=dt.UTC)
PREVIOUS_WATERMARK = dt.datetime(2024, 2, 1, tzinfo=dt.UTC)


@dataclasses.dataclass(slots=True)
class Harness:
    """Orchestrator wired to a fake connector and sqlite stores."""

    orchestrator: IngestionOrchestrator
    watermarks: WatermarkStore
    commit_index: CommitIndex
    clock: StepClock
    session_factory: async_sessionmaker[AsyncSession]

    async def commit_count(self) -> int:
        async with self.session_factory() as session:
            return await session.scalar(select(func.count(CommitRecord.id))) or 0

    async def error_records(self) -> list[ErrorRecord]:
        async with self.session_factory() as session:
            rows = await session.scalars(select(ErrorRecord).order_by(ErrorRecord.id))
            return list(rows)


BuildHarness = typ.Callable[..., Harness]


@pytest.fixture
def build_harness(
    session_factory: async_sessionmaker[AsyncSession],
) -> BuildHarness:
    """Return a builder for orchestrators over the given connectors."""

    def _build(
        *connectors: FakeConnector,
        max_attempts: int = 4,
        enabled_sources: cabc.Iterable[str] | None = None,
        watermarks: WatermarkStore | None = None,
    ) -> Harness:
        watermarks = watermarks or WatermarkStore(session_factory)
        commit_index = CommitIndex(session_factory)
        clock = StepClock(RUN_START, dt.timedelta(seconds=1))
        config = IngestionConfig()
        if enabled_sources is not None:
            config = IngestionConfig(enabled_sources=frozenset(enabled_sources))
        orchestrator = IngestionOrchestrator(
            OrchestratorDependencies(
                commit_index=commit_index,
                watermarks=watermarks,
                recorder=ErrorRecorder(session_factory),
            ),
            {connector.source: connector for connector in connectors},
            config=config,
            retry_policy=NotReadyRetryPolicy(
                max_attempts=max_attempts, delay=dt.timedelta(0), sleep=no_sleep
            ),
            clock=clock,
        )
        return Harness(
            orchestrator=orchestrator,
            watermarks=watermarks,
            commit_index=commit_index,
            clock=clock,
            session_factory=session_factory,
        )

    return _build


def _repository(full_name: str, prefix: str, count: int) -> FakeRepository:
    return FakeRepository(make_repository(full_name), make_commits(prefix, count))


class _LockedWatermarkStore(WatermarkStore):
    """Watermark store whose writes fail for one filter."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], locked: str
    ) -> None:
        super().__init__(session_factory)
        self._locked = locked

    async def set(
        self, source: str, filter_criteria: str, timestamp: dt.datetime
    ) -> None:
        if filter_criteria == self._locked:
            msg = "database is locked"
            raise RuntimeError(msg)
        await super().set(source, filter_criteria, timestamp)


def _two_repositories_with_three_commits() -> FakeConnector:
    return FakeConnector(
        repositories={
            "core": [
                _repository("acme/core-api", "a", 3),
                _repository("acme/core-web", "b", 3),
            ]
        }
    )


class TestSuccessfulRuns:
    """Filters that complete advance their watermark."""

    @pytest.mark.asyncio
    async def test_new_commits_are_stored_and_watermark_advances(
        self, build_harness: BuildHarness
    ) -> None:
        """Two repositories with three new commits each yield six records."""
        harness = build_harness(_two_repositories_with_three_commits())
        await harness.watermarks.register("github", "core")

        result = await harness.orchestrator.run_source("github")

        (filter_result,) = result.filters
        assert filter_result.succeeded, "filter run should succeed"
        assert filter_result.commits_ingested == 6, "expected six new commits"
        assert filter_result.repositories_processed == 2
        assert await harness.commit_count() == 6, "expected six stored rows"
        watermark = await harness.watermarks.get("github", "core")
        assert watermark == RUN_START, "watermark should equal the run start"
        assert await harness.error_records() == [], "no errors expected"

    @pytest.mark.asyncio
    async def test_default_since_is_used_for_never_run_filters(
        self, build_harness: BuildHarness
    ) -> None:
        """A filter without a watermark lists commits from the default epoch."""
        connector = _two_repositories_with_three_commits()
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")

        await harness.orchestrator.run_source("github")

        since_values = {since for _, since in connector.commit_listings}
        assert since_values == {IngestionConfig().default_since}

    @pytest.mark.asyncio
    async def test_second_run_without_new_commits_writes_nothing(
        self, build_harness: BuildHarness
    ) -> None:
        """Running a filter twice stores nothing new but advances both times."""
        harness = build_harness(_two_repositories_with_three_commits())
        await harness.watermarks.register("github", "core")

        first = await harness.orchestrator.run_source("github")
        second = await harness.orchestrator.run_source("github")

        assert second.commits_ingested == 0, "second run should store nothing"
        assert await harness.commit_count() == 6
        first_start = first.filters[0].started_at
        second_start = second.filters[0].started_at
        assert second_start > first_start, "each run records its own start"
        assert await harness.watermarks.get("github", "core") == second_start

    @pytest.mark.asyncio
    async def test_stored_commits_skip_detail_fetch(
        self, build_harness: BuildHarness
    ) -> None:
        """Commits already indexed are neither fetched again nor duplicated."""
        connector = _two_repositories_with_three_commits()
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")
        known = connector.repositories["core"][0].commits[1]
        await harness.commit_index.save("github", "acme/core-api", known)

        result = await harness.orchestrator.run_source("github")

        assert known.sha not in connector.detail_calls, "no redundant detail call"
        assert result.filters[0].commits_already_present == 1
        assert result.commits_ingested == 5
        assert await harness.commit_count() == 6

    @pytest.mark.asyncio
    async def test_detail_statistics_are_persisted(
        self, build_harness: BuildHarness
    ) -> None:
        """Line and file counts from the detail call land on the record."""
        harness = build_harness(_two_repositories_with_three_commits())
        await harness.watermarks.register("github", "core")

        await harness.orchestrator.run_source("github")

        async with harness.session_factory() as session:
            record = await session.scalar(select(CommitRecord).limit(1))
        assert record is not None
        assert (record.lines_added, record.lines_removed, record.files_changed) == (
            10,
            2,
            3,
        )


class TestFailurePolicy:
    """Failures are contained at the narrowest safe scope."""

    @pytest.mark.asyncio
    async def test_throttled_listing_aborts_and_keeps_watermark(
        self, build_harness: BuildHarness
    ) -> None:
        """A rate limit on the second listing page leaves the watermark alone."""
        connector = _two_repositories_with_three_commits()
        connector.listing_error = rate_limited()
        connector.listing_error_after = 1
        harness = build_harness(connector)
        await harness.watermarks.set("github", "core", PREVIOUS_WATERMARK)

        result = await harness.orchestrator.run_source("github")

        assert not result.filters[0].succeeded, "filter run should abort"
        assert await harness.watermarks.get("github", "core") == PREVIOUS_WATERMARK
        assert await harness.commit_count() == 3, "earlier writes are kept"
        records = await harness.error_records()
        assert [record.kind for record in records] == [ErrorKind.RATE_LIMIT.value]
        assert records[0].status_code == 429
        assert records[0].context is not None
        assert "Action: List Repositories" in records[0].context

    @pytest.mark.asyncio
    async def test_failing_repository_is_skipped(
        self, build_harness: BuildHarness
    ) -> None:
        """A network failure in one repository does not stop its siblings."""
        broken = ProviderError.from_status("github", 502, ErrorKind.NETWORK)
        connector = FakeConnector(
            repositories={
                "core": [
                    _repository("acme/core-one", "a", 2),
                    FakeRepository(
                        make_repository("acme/core-two"), commit_error=broken
                    ),
                    _repository("acme/core-six", "c", 2),
                ]
            }
        )
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")

        result = await harness.orchestrator.run_source("github")

        filter_result = result.filters[0]
        assert filter_result.succeeded, "skips do not fail the filter"
        assert filter_result.repositories_skipped == 1
        assert filter_result.repositories_processed == 2
        assert await harness.commit_count() == 4
        records = await harness.error_records()
        assert [record.kind for record in records] == [ErrorKind.NETWORK.value]
        assert records[0].context is not None
        assert "Repo: acme/core-two" in records[0].context
        assert await harness.watermarks.get("github", "core") == RUN_START

    @pytest.mark.asyncio
    async def test_missing_repository_is_recorded_as_not_found(
        self, build_harness: BuildHarness, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A 404 while listing commits is logged at INFO and recorded."""
        gone = ProviderError.from_status("github", 404, ErrorKind.NOT_FOUND)
        connector = FakeConnector(
            repositories={
                "core": [
                    FakeRepository(make_repository("acme/core"), commit_error=gone)
                ]
            }
        )
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")

        with caplog.at_level(logging.INFO, logger="commitstats.ingestion"):
            result = await harness.orchestrator.run_source("github")

        assert result.filters[0].succeeded
        records = await harness.error_records()
        assert [record.kind for record in records] == [ErrorKind.NOT_FOUND.value]
        skipped = [
            record
            for record in caplog.records
            if "ingestion.repository.skipped" in record.getMessage()
        ]
        assert skipped, "expected a repository.skipped event"
        assert skipped[0].levelno == logging.INFO

    @pytest.mark.asyncio
    async def test_rate_limit_while_listing_commits_aborts_filter(
        self, build_harness: BuildHarness
    ) -> None:
        """Throttling inside one repository stops the remaining repositories."""
        connector = FakeConnector(
            repositories={
                "core": [
                    FakeRepository(
                        make_repository("acme/core-one"), commit_error=rate_limited()
                    ),
                    _repository("acme/core-two", "b", 2),
                ]
            }
        )
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")

        result = await harness.orchestrator.run_source("github")

        assert not result.filters[0].succeeded
        listed = [name for name, _ in connector.commit_listings]
        assert listed == ["acme/core-one"], "later repositories are not walked"
        assert await harness.watermarks.get("github", "core") is None
        records = await harness.error_records()
        assert len(records) == 1, "the abort is recorded exactly once"
        assert records[0].context is not None
        assert "Repo: acme/core-one" in records[0].context

    @pytest.mark.asyncio
    async def test_auth_failure_in_one_repository_skips_only_that_repository(
        self, build_harness: BuildHarness
    ) -> None:
        """A forbidden commit listing skips its repository; siblings still run."""
        denied = ProviderError.from_status(
            "github", 403, ErrorKind.AUTH_OR_CONFIG, path="/repos/acme/core-secret"
        )
        connector = FakeConnector(
            repositories={
                "core": [
                    FakeRepository(
                        make_repository("acme/core-secret"), commit_error=denied
                    ),
                    _repository("acme/core-open", "b", 1),
                ]
            }
        )
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")

        result = await harness.orchestrator.run_source("github")

        filter_result = result.filters[0]
        assert filter_result.succeeded
        assert filter_result.repositories_skipped == 1
        assert filter_result.commits_ingested == 1
        assert await harness.commit_count() == 1
        assert await harness.watermarks.get("github", "core") == RUN_START
        records = await harness.error_records()
        assert [record.kind for record in records] == [
            ErrorKind.AUTH_OR_CONFIG.value
        ]
        assert records[0].status_code == 403
        assert records[0].context is not None
        assert "Repo: acme/core-secret" in records[0].context

    @pytest.mark.asyncio
    async def test_auth_failure_on_detail_skips_only_that_commit(
        self, build_harness: BuildHarness
    ) -> None:
        """A forbidden commit detail skips one commit and the filter completes."""
        commits = make_commits("a", 2)
        denied = ProviderError.from_status("github", 401, ErrorKind.AUTH_OR_CONFIG)
        connector = FakeConnector(
            repositories={
                "core": [FakeRepository(make_repository("acme/core"), commits)]
            },
            detail_outcomes={
                commits[0].sha: [FatalFailure(denied, ErrorKind.AUTH_OR_CONFIG)]
            },
        )
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")

        result = await harness.orchestrator.run_source("github")

        filter_result = result.filters[0]
        assert filter_result.succeeded
        assert filter_result.commits_skipped == 1
        assert filter_result.commits_ingested == 1
        assert connector.detail_calls == [commit.sha for commit in commits]
        assert await harness.watermarks.get("github", "core") == RUN_START
        records = await harness.error_records()
        assert [record.kind for record in records] == [
            ErrorKind.AUTH_OR_CONFIG.value
        ]

    @pytest.mark.asyncio
    async def test_auth_failure_while_listing_repositories_aborts_filter(
        self, build_harness: BuildHarness
    ) -> None:
        """Source-level authentication failures still end the filter run."""
        denied = ProviderError.from_status(
            "github", 401, ErrorKind.AUTH_OR_CONFIG, path="/orgs/acme/repos"
        )
        connector = FakeConnector(listing_error=denied)
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")

        result = await harness.orchestrator.run_source("github")

        assert not result.filters[0].succeeded
        assert await harness.watermarks.get("github", "core") is None
        records = await harness.error_records()
        assert [record.kind for record in records] == [
            ErrorKind.AUTH_OR_CONFIG.value
        ]
        assert records[0].context is not None
        assert "Action: List Repositories" in records[0].context

    @pytest.mark.asyncio
    async def test_commit_detail_failure_skips_only_that_commit(
        self, build_harness: BuildHarness
    ) -> None:
        """A timed-out detail call skips one commit and records it."""
        commits = make_commits("a", 3)
        timeout = ProviderError("detail timed out", kind=ErrorKind.TIMEOUT)
        connector = FakeConnector(
            repositories={
                "core": [FakeRepository(make_repository("acme/core"), commits)]
            },
            detail_outcomes={
                commits[1].sha: [FatalFailure(timeout, ErrorKind.TIMEOUT)]
            },
        )
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")

        result = await harness.orchestrator.run_source("github")

        filter_result = result.filters[0]
        assert filter_result.succeeded
        assert filter_result.commits_ingested == 2
        assert filter_result.commits_skipped == 1
        records = await harness.error_records()
        assert [record.kind for record in records] == [ErrorKind.TIMEOUT.value]
        assert records[0].context is not None
        assert f"Commit: {commits[1].sha[:7]}" in records[0].context

    @pytest.mark.asyncio
    async def test_filters_keep_independent_watermarks(
        self, build_harness: BuildHarness
    ) -> None:
        """One aborted filter does not stop or roll back another."""
        connector = FakeConnector(
            repositories={
                "core": [
                    FakeRepository(
                        make_repository("acme/core"), commit_error=rate_limited()
                    )
                ],
                "web": [_repository("acme/web", "w", 2)],
            }
        )
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")
        await harness.watermarks.register("github", "web")

        result = await harness.orchestrator.run_source("github")

        outcomes = {item.filter_criteria: item.succeeded for item in result.filters}
        assert outcomes == {"core": False, "web": True}
        assert await harness.watermarks.get("github", "core") is None
        web_start = next(
            item.started_at for item in result.filters if item.filter_criteria == "web"
        )
        assert await harness.watermarks.get("github", "web") == web_start

    @pytest.mark.asyncio
    async def test_watermark_write_failure_is_recorded_and_next_filter_runs(
        self,
        build_harness: BuildHarness,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """A failed watermark update fails one filter without stopping the rest."""
        connector = FakeConnector(
            repositories={
                "first": [_repository("acme/first", "f", 1)],
                "second": [_repository("acme/second", "s", 1)],
            }
        )
        watermarks = _LockedWatermarkStore(session_factory, locked="first")
        harness = build_harness(connector, watermarks=watermarks)
        await watermarks.register("github", "first")
        await watermarks.register("github", "second")

        result = await harness.orchestrator.run_source("github")

        outcomes = {item.filter_criteria: item.succeeded for item in result.filters}
        assert outcomes == {"first": False, "second": True}
        assert await harness.commit_count() == 2, "stored commits are kept"
        assert await watermarks.get("github", "first") is None
        assert await watermarks.get("github", "second") is not None
        records = await harness.error_records()
        assert len(records) == 1
        assert records[0].kind == ErrorKind.UNKNOWN.value
        assert records[0].message == "database is locked"
        assert records[0].filter_criteria == "first"
        assert records[0].context == (
            "Source: github, Filter: first, Action: Update Watermark"
        )


class TestNotReadyRetries:
    """Detail calls answered with "not ready" are retried within a budget."""

    @staticmethod
    def _connector(commits: list[CommitData]) -> FakeConnector:
        return FakeConnector(
            repositories={
                "core": [FakeRepository(make_repository("acme/core"), commits)]
            },
            detail_outcomes={commits[0].sha: [not_ready(), not_ready(), not_ready()]},
        )

    @pytest.mark.asyncio
    async def test_commit_saved_when_budget_allows(
        self, build_harness: BuildHarness
    ) -> None:
        """Three not-ready answers then success saves the commit silently."""
        commits = make_commits("a", 2)
        connector = self._connector(commits)
        harness = build_harness(connector, max_attempts=4)
        await harness.watermarks.register("github", "core")

        result = await harness.orchestrator.run_source("github")

        assert result.commits_ingested == 2
        assert connector.detail_calls.count(commits[0].sha) == 4
        assert await harness.error_records() == []

    @pytest.mark.asyncio
    async def test_commit_skipped_when_budget_exhausted(
        self, build_harness: BuildHarness
    ) -> None:
        """With a budget of two the commit is skipped and its sibling saved."""
        commits = make_commits("a", 2)
        connector = self._connector(commits)
        harness = build_harness(connector, max_attempts=2)
        await harness.watermarks.register("github", "core")

        result = await harness.orchestrator.run_source("github")

        filter_result = result.filters[0]
        assert filter_result.succeeded
        assert filter_result.commits_ingested == 1
        assert filter_result.commits_skipped == 1
        assert connector.detail_calls.count(commits[0].sha) == 2
        records = await harness.error_records()
        assert [record.kind for record in records] == [
            ErrorKind.TRANSIENT_NOT_READY.value
        ]
        assert records[0].context is not None
        assert "not ready after 2 attempts" in records[0].context


class TestSourceRuns:
    """Source-level behaviour of run_source and run_all."""

    @pytest.mark.asyncio
    async def test_source_without_filters_warns(
        self, build_harness: BuildHarness, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A source with no filters returns an empty result and warns."""
        harness = build_harness(FakeConnector())

        with caplog.at_level(logging.WARNING, logger="commitstats.ingestion"):
            result = await harness.orchestrator.run_source("github")

        assert result.filters == ()
        assert not result.skipped
        assert any(
            "ingestion.source.no_filters" in record.getMessage()
            for record in caplog.records
        ), "expected a no-filters warning"

    @pytest.mark.asyncio
    async def test_overlapping_run_is_rejected(
        self, build_harness: BuildHarness
    ) -> None:
        """A second run of a busy source is skipped rather than interleaved."""
        connector = BlockingConnector({"core": [_repository("acme/core", "a", 1)]})
        harness = build_harness(connector)
        await harness.watermarks.register("github", "core")

        first = asyncio.create_task(harness.orchestrator.run_source("github"))
        await connector.started.wait()
        assert harness.orchestrator.is_running("github")

        second = await harness.orchestrator.run_source("github")
        connector.release.set()
        completed = await first

        assert second.skipped, "overlapping run should be rejected"
        assert second.filters == ()
        assert completed.commits_ingested == 1
        assert not harness.orchestrator.is_running("github")

    @pytest.mark.asyncio
    async def test_unknown_source_is_rejected(
        self, build_harness: BuildHarness
    ) -> None:
        """Source names outside the supported set raise UnknownSourceError."""
        harness = build_harness(FakeConnector())

        with pytest.raises(UnknownSourceError):
            await harness.orchestrator.run_source("gitlab")

    @pytest.mark.asyncio
    async def test_disabled_source_is_rejected(
        self, build_harness: BuildHarness
    ) -> None:
        """Known but disabled sources raise SourceDisabledError."""
        harness = build_harness(
            FakeConnector("github"),
            FakeConnector("bitbucket"),
            enabled_sources=["github"],
        )

        with pytest.raises(SourceDisabledError):
            await harness.orchestrator.run_source("bitbucket")
        assert harness.orchestrator.enabled_sources == ("github",)

    @pytest.mark.asyncio
    async def test_run_all_covers_every_enabled_source(
        self, build_harness: BuildHarness
    ) -> None:
        """run_all returns one result per enabled source."""
        github = _two_repositories_with_three_commits()
        bitbucket = FakeConnector(
            "bitbucket",
            repositories={
                "core": [_repository("acme/core", "c", 2)]
            },
        )
        harness = build_harness(github, bitbucket)
        await harness.watermarks.register("github", "core")
        await harness.watermarks.register("bitbucket", "core")

        results = await harness.orchestrator.run_all()

        summary = summarize_runs(results)
        assert summary["github"]["commits_ingested"] == 6
        assert summary["bitbucket"]["commits_ingested"] == 2
        assert summary["bitbucket"]["filters_failed"] == 0
        assert await harness.commit_count() == 8

    @pytest.mark.asyncio
    async def test_aclose_closes_connectors(self, build_harness: BuildHarness) -> None:
        """Closing the orchestrator closes every connector."""
        github = FakeConnector("github")
        bitbucket = FakeConnector("bitbucket")
        harness = build_harness(github, bitbucket)

        await harness.orchestrator.aclose()

        assert github.closed
        assert bitbucket.closed
