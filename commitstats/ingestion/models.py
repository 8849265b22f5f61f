"""Transient data shapes exchanged between connectors and the orchestrator."""

from __future__ import annotations

import dataclasses
import enum
import typing as typ

if typ.TYPE_CHECKING:
    import datetime as dt


class SourceName(enum.StrEnum):
    """Source-control providers commitstats knows how to ingest from."""

    GITHUB = "github"
    BITBUCKET = "bitbucket"


@dataclasses.dataclass(frozen=True, slots=True)
class RepositoryDescriptor:
    """A repository matched by a filter during one orchestration pass.

    Attributes
    ----------
    full_name
        Provider-qualified name (``owner/name`` or ``workspace/slug``) used
        as the repository identity in commit records.
    slug
        Provider-specific path segment used to address the repository.
    name
        Human-readable repository name the filter was matched against.
    project_key
        Optional grouping key reported by the provider.

    """

    full_name: str
    slug: str
    name: str
    project_key: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class CommitData:
    """Commit fields as produced by a connector, before persistence.

    Statistics stay ``None`` until detail enrichment supplies them.
    """

    sha: str
    committed_at: dt.datetime
    author_name: str | None = None
    author_email: str | None = None
    lines_added: int | None = None
    lines_removed: int | None = None
    files_changed: int | None = None

    @property
    def short_sha(self) -> str:
        """Return the abbreviated SHA used in log and error contexts."""
        return self.sha[:7]

    def with_stats(
        self,
        *,
        lines_added: int | None,
        lines_removed: int | None,
        files_changed: int | None,
    ) -> CommitData:
        """Return a copy carrying per-commit statistics."""
        return dataclasses.replace(
            self,
            lines_added=lines_added,
            lines_removed=lines_removed,
            files_changed=files_changed,
        )
