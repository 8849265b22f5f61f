"""Bitbucket Cloud connector used by the ingestion orchestrator."""

from __future__ import annotations

import collections.abc as cabc
import contextlib
import dataclasses
import logging
import os
import re
import typing as typ

import httpx

from commitstats.ingestion.config import env_flag
from commitstats.ingestion.errors import (
    ErrorKind,
    ResponseShapeError,
    SourceConfigError,
)
from commitstats.ingestion.models import CommitData, RepositoryDescriptor, SourceName
from commitstats.ingestion.outcome import Ok, outcome_from_error
from commitstats.ingestion.paging import PageCursor, commits_in_window, decode_payload
from commitstats.ingestion.policy import (
    classify_response,
    provider_error_for,
    raise_for_provider_status,
)

from .models import (
    BitbucketAuthor,
    BitbucketCommit,
    BitbucketDiffStat,
    BitbucketPage,
    BitbucketRepository,
)

if typ.TYPE_CHECKING:
    import datetime as dt

    from commitstats.ingestion.outcome import FetchOutcome

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.bitbucket.org/2.0"
DEFAULT_TIMEOUT_S = 20.0
DEFAULT_USER_AGENT = "commitstats/0.1"
DEFAULT_PAGE_LEN = 50

_RAW_AUTHOR_RE = re.compile(r"^\s*(?P<name>[^<]*?)\s*<(?P<email>[^>]*)>")


@dataclasses.dataclass(frozen=True, slots=True)
class BitbucketConfig:
    """Configuration for the Bitbucket Cloud connector.

    ``fetch_diffstat`` controls detail enrichment; when it is off, commits
    are stored without line or file statistics.
    """

    workspace: str
    username: str
    app_password: str
    api_url: str = DEFAULT_API_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    user_agent: str = DEFAULT_USER_AGENT
    page_len: int = DEFAULT_PAGE_LEN
    fetch_diffstat: bool = True

    @classmethod
    def from_env(cls) -> BitbucketConfig:
        """Build configuration from ``COMMITSTATS_BITBUCKET_*`` env vars."""
        required: dict[str, str] = {}
        for env_var in (
            "COMMITSTATS_BITBUCKET_WORKSPACE",
            "COMMITSTATS_BITBUCKET_USERNAME",
            "COMMITSTATS_BITBUCKET_APP_PASSWORD",
        ):
            value = os.environ.get(env_var, "").strip()
            if not value:
                raise SourceConfigError.missing_setting(env_var)
            required[env_var] = value
        api_url = os.environ.get("COMMITSTATS_BITBUCKET_API_URL", "").strip()
        return cls(
            workspace=required["COMMITSTATS_BITBUCKET_WORKSPACE"],
            username=required["COMMITSTATS_BITBUCKET_USERNAME"],
            app_password=required["COMMITSTATS_BITBUCKET_APP_PASSWORD"],
            api_url=(api_url or DEFAULT_API_URL).rstrip("/"),
            fetch_diffstat=env_flag("COMMITSTATS_BITBUCKET_DIFFSTAT", default=True),
        )


def parse_author(author: BitbucketAuthor | None) -> tuple[str | None, str | None]:
    """Split a Bitbucket author into ``(name, email)``.

    The name is the text before ``<`` in the raw string, else the linked
    user's display name, else the raw string. The email is the text inside
    the angle brackets, if present.
    """
    if author is None:
        return None, None
    raw = (author.raw or "").strip()
    match = _RAW_AUTHOR_RE.match(raw)
    email = (match.group("email").strip() or None) if match else None
    name = match.group("name") if match else ""
    if not name and author.user is not None:
        name = author.user.display_name or ""
    return (name or raw or None), email


def _search_query(filter_criteria: str) -> str:
    escaped = filter_criteria.replace("\\", "\\\\").replace('"', '\\"')
    return f'name~"{escaped}"'


class BitbucketConnector:
    """Source connector for a single Bitbucket Cloud workspace.

    Repositories are matched with Bitbucket's name search. Commit listings
    are newest-first, so pagination stops at the first commit older than the
    requested lower bound.
    """

    source: str = SourceName.BITBUCKET.value

    def __init__(
        self,
        config: BitbucketConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialise the connector with the provided API configuration."""
        if not config.username.strip():
            raise SourceConfigError.empty_credential("Bitbucket username")
        if not config.app_password.strip():
            raise SourceConfigError.empty_credential("Bitbucket app password")

        self._config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=config.timeout_s,
            auth=httpx.BasicAuth(config.username, config.app_password),
            headers={
                "User-Agent": config.user_agent,
                "Accept": "application/json",
            },
        )

    async def aclose(self) -> None:
        """Close any owned HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    async def list_repositories(
        self, filter_criteria: str
    ) -> cabc.AsyncGenerator[RepositoryDescriptor, None]:
        """Yield workspace repositories matching Bitbucket's name search."""
        workspace = self._config.workspace
        first_page = str(
            httpx.URL(
                f"{self._config.api_url}/repositories/{workspace}",
                params={
                    "q": _search_query(filter_criteria),
                    "pagelen": self._config.page_len,
                },
            )
        )
        values = self._iter_values(
            first_page, BitbucketPage[BitbucketRepository], owner_lookup=True
        )
        async with contextlib.aclosing(values) as stream:
            async for repository in stream:
                yield RepositoryDescriptor(
                    full_name=repository.full_name,
                    slug=repository.slug,
                    name=repository.name,
                    project_key=(
                        repository.project.key if repository.project else None
                    ),
                )

    def list_commits_since(
        self, repository: RepositoryDescriptor, since: dt.datetime
    ) -> cabc.AsyncGenerator[CommitData, None]:
        """Yield commits of ``repository`` at or after ``since``, newest first."""
        return commits_in_window(
            self._iter_commits(repository), since, newest_first=True
        )

    async def fetch_commit_detail(
        self, repository: RepositoryDescriptor, commit: CommitData
    ) -> FetchOutcome[CommitData]:
        """Return ``commit`` enriched from the diffstat endpoint.

        With diffstat disabled the commit is returned unchanged, statistics
        left unset.
        """
        if not self._config.fetch_diffstat:
            return Ok(commit)

        first_page = str(
            httpx.URL(
                f"{self._repository_url(repository)}/diffstat/{commit.sha}",
                params={"pagelen": self._config.page_len},
            )
        )
        lines_added = 0
        lines_removed = 0
        files_changed = 0
        cursor = PageCursor(self._config.api_url, first_page)
        url: str | None = first_page
        try:
            while url is not None:
                response = await self._client.get(url)
                error = provider_error_for(response, source=self.source)
                if error is not None:
                    return outcome_from_error(error)
                page = decode_payload(
                    response,
                    BitbucketPage[BitbucketDiffStat],
                    source=self.source,
                    what="diffstat",
                )
                for entry in page.values:
                    files_changed += 1
                    lines_added += entry.lines_added or 0
                    lines_removed += entry.lines_removed or 0
                url = cursor.advance(page.next)
        except (httpx.HTTPError, ResponseShapeError) as exc:
            return outcome_from_error(exc)

        return Ok(
            commit.with_stats(
                lines_added=lines_added,
                lines_removed=lines_removed,
                files_changed=files_changed,
            )
        )

    def _repository_url(self, repository: RepositoryDescriptor) -> str:
        return (
            f"{self._config.api_url}/repositories/"
            f"{self._config.workspace}/{repository.slug}"
        )

    async def _iter_commits(
        self, repository: RepositoryDescriptor
    ) -> cabc.AsyncGenerator[CommitData, None]:
        first_page = str(
            httpx.URL(
                f"{self._repository_url(repository)}/commits",
                params={"pagelen": self._config.page_len},
            )
        )
        values = self._iter_values(first_page, BitbucketPage[BitbucketCommit])
        async with contextlib.aclosing(values) as stream:
            async for commit in stream:
                if commit.date is None:
                    logger.warning(
                        "Skipping commit %s in %s: no commit date",
                        commit.hash[:7],
                        repository.full_name,
                    )
                    continue
                author_name, author_email = parse_author(commit.author)
                yield CommitData(
                    sha=commit.hash,
                    committed_at=commit.date,
                    author_name=author_name,
                    author_email=author_email,
                )

    async def _iter_values[T](
        self,
        first_page: str,
        page_type: type[BitbucketPage[T]],
        *,
        owner_lookup: bool = False,
    ) -> cabc.AsyncGenerator[T, None]:
        cursor = PageCursor(self._config.api_url, first_page)
        url: str | None = first_page
        while url is not None:
            response = await self._client.get(url)
            if owner_lookup and classify_response(response) is ErrorKind.NOT_FOUND:
                raise SourceConfigError.unknown_owner(
                    "Bitbucket workspace", self._config.workspace
                )
            raise_for_provider_status(response, source=self.source)
            page = decode_payload(
                response, page_type, source=self.source, what="listing page"
            )
            for value in page.values:
                yield value
            url = cursor.advance(page.next)
