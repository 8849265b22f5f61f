"""GitHub REST connector used by the ingestion orchestrator."""

from __future__ import annotations

import collections.abc as cabc
import contextlib
import dataclasses
import logging
import os
import typing as typ
from http import HTTPStatus

import httpx

from commitstats.common.time import format_iso_utc
from commitstats.ingestion.errors import (
    ErrorKind,
    ResponseShapeError,
    SourceConfigError,
)
from commitstats.ingestion.models import CommitData, RepositoryDescriptor, SourceName
from commitstats.ingestion.outcome import Ok, outcome_from_error
from commitstats.ingestion.paging import (
    PageCursor,
    commits_in_window,
    decode_payload,
    next_link_from_header,
)
from commitstats.ingestion.policy import (
    classify_response,
    outcome_for_response,
    raise_for_provider_status,
)

from .models import (
    GitHubCommitDetail,
    GitHubCommitSummary,
    GitHubOrganization,
    GitHubRepository,
)

if typ.TYPE_CHECKING:
    import datetime as dt

    from commitstats.ingestion.outcome import FetchOutcome

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_S = 20.0
DEFAULT_USER_AGENT = "commitstats/0.1"
DEFAULT_PAGE_SIZE = 100
_API_VERSION = "2022-11-28"


@dataclasses.dataclass(frozen=True, slots=True)
class GitHubConfig:
    """Configuration for the GitHub REST connector."""

    token: str
    organization: str
    api_url: str = DEFAULT_API_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    user_agent: str = DEFAULT_USER_AGENT
    page_size: int = DEFAULT_PAGE_SIZE

    @classmethod
    def from_env(cls) -> GitHubConfig:
        """Build configuration from ``COMMITSTATS_GITHUB_*`` env vars."""
        token = os.environ.get("COMMITSTATS_GITHUB_TOKEN", "").strip()
        if not token:
            raise SourceConfigError.missing_setting("COMMITSTATS_GITHUB_TOKEN")
        organization = os.environ.get("COMMITSTATS_GITHUB_ORG", "").strip()
        if not organization:
            raise SourceConfigError.missing_setting("COMMITSTATS_GITHUB_ORG")
        api_url = os.environ.get("COMMITSTATS_GITHUB_API_URL", "").strip()
        return cls(
            token=token,
            organization=organization,
            api_url=(api_url or DEFAULT_API_URL).rstrip("/"),
        )


def _commit_from_summary(summary: GitHubCommitSummary) -> CommitData | None:
    git_commit = summary.commit
    author = git_commit.author
    committer = git_commit.committer
    committed_at = (committer.date if committer else None) or (
        author.date if author else None
    )
    if committed_at is None:
        return None
    author_name = author.name if author else None
    if not author_name and summary.author is not None:
        author_name = summary.author.login
    return CommitData(
        sha=summary.sha,
        committed_at=committed_at,
        author_name=author_name or None,
        author_email=(author.email if author else None) or None,
    )


class GitHubConnector:
    """Source connector for a single GitHub organisation.

    Repositories are matched by substring on their name. Commit listings
    rely on GitHub's ``since`` query parameter; because GitHub orders
    commits topologically, older commits are dropped client-side without
    ending pagination early.
    """

    source: str = SourceName.GITHUB.value

    def __init__(
        self,
        config: GitHubConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialise the connector with the provided API configuration."""
        if not config.token.strip():
            raise SourceConfigError.empty_credential("GitHub token")

        self._config = config
        self._organization: GitHubOrganization | None = None
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=config.timeout_s,
            headers={
                "Authorization": f"Bearer {config.token}",
                "User-Agent": config.user_agent,
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": _API_VERSION,
            },
        )

    async def aclose(self) -> None:
        """Close any owned HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    async def list_repositories(
        self, filter_criteria: str
    ) -> cabc.AsyncGenerator[RepositoryDescriptor, None]:
        """Yield organisation repositories whose name contains the filter."""
        organization = await self._resolve_organization()
        first_page = str(
            httpx.URL(
                f"{self._config.api_url}/orgs/{organization.login}/repos",
                params={"per_page": self._config.page_size, "type": "all"},
            )
        )
        pages = self._iter_pages(first_page, list[GitHubRepository])
        async with contextlib.aclosing(pages) as stream:
            async for page in stream:
                for repository in page:
                    if filter_criteria not in repository.name:
                        continue
                    yield RepositoryDescriptor(
                        full_name=repository.full_name,
                        slug=repository.name,
                        name=repository.name,
                    )

    def list_commits_since(
        self, repository: RepositoryDescriptor, since: dt.datetime
    ) -> cabc.AsyncGenerator[CommitData, None]:
        """Yield commits of ``repository`` committed at or after ``since``."""
        return commits_in_window(
            self._iter_commits(repository, since), since, newest_first=False
        )

    async def fetch_commit_detail(
        self, repository: RepositoryDescriptor, commit: CommitData
    ) -> FetchOutcome[CommitData]:
        """Return ``commit`` enriched with line and file statistics.

        GitHub lists at most 300 changed files per detail response and links
        further pages through the ``Link`` header; every page is read so the
        file count covers the whole commit. Line totals come from the first
        page's ``stats``.
        """
        first_page = (
            f"{self._config.api_url}/repos/{repository.full_name}/commits/{commit.sha}"
        )
        cursor = PageCursor(self._config.api_url, first_page)
        pages: list[GitHubCommitDetail] = []
        url: str | None = first_page
        try:
            while url is not None:
                response = await self._client.get(url)
                failure = outcome_for_response(response, source=self.source)
                if failure is not None:
                    return failure
                pages.append(
                    decode_payload(
                        response,
                        GitHubCommitDetail,
                        source=self.source,
                        what="commit detail",
                    )
                )
                url = cursor.advance(
                    next_link_from_header(response.headers.get("Link"))
                )
        except (httpx.HTTPError, ResponseShapeError) as exc:
            return outcome_from_error(exc)

        stats = pages[0].stats
        return Ok(
            commit.with_stats(
                lines_added=stats.additions if stats is not None else None,
                lines_removed=stats.deletions if stats is not None else None,
                files_changed=sum(len(page.files) for page in pages),
            )
        )

    async def _resolve_organization(self) -> GitHubOrganization:
        if self._organization is not None:
            return self._organization
        name = self._config.organization
        response = await self._client.get(f"{self._config.api_url}/orgs/{name}")
        if classify_response(response) is ErrorKind.NOT_FOUND:
            raise SourceConfigError.unknown_owner("GitHub organisation", name)
        raise_for_provider_status(response, source=self.source)
        self._organization = decode_payload(
            response, GitHubOrganization, source=self.source, what="organisation"
        )
        return self._organization

    async def _iter_commits(
        self, repository: RepositoryDescriptor, since: dt.datetime
    ) -> cabc.AsyncGenerator[CommitData, None]:
        first_page = str(
            httpx.URL(
                f"{self._config.api_url}/repos/{repository.full_name}/commits",
                params={
                    "since": format_iso_utc(since),
                    "per_page": self._config.page_size,
                },
            )
        )
        pages = self._iter_pages(
            first_page, list[GitHubCommitSummary], empty_on_conflict=True
        )
        async with contextlib.aclosing(pages) as stream:
            async for page in stream:
                for summary in page:
                    commit = _commit_from_summary(summary)
                    if commit is None:
                        logger.warning(
                            "Skipping commit %s in %s: no commit date",
                            summary.sha[:7],
                            repository.full_name,
                        )
                        continue
                    yield commit

    async def _iter_pages[T](
        self,
        first_page: str,
        payload_type: type[T],
        *,
        empty_on_conflict: bool = False,
    ) -> cabc.AsyncGenerator[T, None]:
        cursor = PageCursor(self._config.api_url, first_page)
        url: str | None = first_page
        while url is not None:
            response = await self._client.get(url)
            if empty_on_conflict and response.status_code == HTTPStatus.CONFLICT:
                logger.debug("GitHub reports an empty repository for %s", url)
                return
            raise_for_provider_status(response, source=self.source)
            yield decode_payload(
                response, payload_type, source=self.source, what="listing page"
            )
            url = cursor.advance(next_link_from_header(response.headers.get("Link")))
