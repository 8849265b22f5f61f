"""Typed GitHub REST payloads decoded with msgspec.

Only the fields commitstats reads are declared; unknown fields are ignored.
"""

from __future__ import annotations

import datetime as dt  # noqa: TC003 - msgspec resolves annotations at runtime

import msgspec


class GitHubOrganization(msgspec.Struct, kw_only=True):
    """Organisation resolved before its repositories are listed."""

    login: str
    id: int | None = None


class GitHubRepository(msgspec.Struct, kw_only=True):
    """Entry of ``GET /orgs/{org}/repos``."""

    name: str
    full_name: str
    default_branch: str | None = None


class GitHubGitActor(msgspec.Struct, kw_only=True):
    """Author or committer recorded in the git object."""

    name: str | None = None
    email: str | None = None
    date: dt.datetime | None = None


class GitHubGitCommit(msgspec.Struct, kw_only=True):
    author: GitHubGitActor | None = None
    committer: GitHubGitActor | None = None
    message: str | None = None


class GitHubAccount(msgspec.Struct, kw_only=True):
    """GitHub account linked to a commit author, when one exists."""

    login: str | None = None


class GitHubCommitSummary(msgspec.Struct, kw_only=True):
    """Entry of ``GET /repos/{full_name}/commits``."""

    sha: str
    commit: GitHubGitCommit
    author: GitHubAccount | None = None


class GitHubCommitStats(msgspec.Struct, kw_only=True):
    additions: int = 0
    deletions: int = 0
    total: int = 0


class GitHubCommitFile(msgspec.Struct, kw_only=True):
    filename: str
    additions: int = 0
    deletions: int = 0


class GitHubCommitDetail(msgspec.Struct, kw_only=True):
    """Response of ``GET /repos/{full_name}/commits/{sha}``."""

    sha: str
    commit: GitHubGitCommit
    author: GitHubAccount | None = None
    stats: GitHubCommitStats | None = None
    files: list[GitHubCommitFile] = msgspec.field(default_factory=list)
