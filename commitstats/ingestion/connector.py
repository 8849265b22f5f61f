"""Capability interface every source-control connector implements."""

from __future__ import annotations

import typing as typ

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from .models import CommitData, RepositoryDescriptor
    from .outcome import FetchOutcome


class SourceConnector(typ.Protocol):
    """Interface for walking one provider's repositories and commits.

    Listing methods return async generators. Consumers may stop iterating at
    any point; closing the generator stops further page requests.
    """

    source: str

    def list_repositories(
        self, filter_criteria: str
    ) -> cabc.AsyncGenerator[RepositoryDescriptor, None]:
        """Yield repositories whose name matches ``filter_criteria``."""
        ...

    def list_commits_since(
        self, repository: RepositoryDescriptor, since: dt.datetime
    ) -> cabc.AsyncGenerator[CommitData, None]:
        """Yield commits of ``repository`` made at or after ``since``."""
        ...

    async def fetch_commit_detail(
        self, repository: RepositoryDescriptor, commit: CommitData
    ) -> FetchOutcome[CommitData]:
        """Return ``commit`` enriched with per-commit statistics."""
        ...

    async def aclose(self) -> None:
        """Release HTTP resources owned by the connector."""
        ...
