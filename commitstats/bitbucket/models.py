"""Typed Bitbucket Cloud payloads decoded with msgspec."""

from __future__ import annotations

import datetime as dt  # noqa: TC003 - msgspec resolves annotations at runtime
import typing as typ

import msgspec

T = typ.TypeVar("T")


class BitbucketPage(msgspec.Struct, typ.Generic[T], kw_only=True):
    """One page of a Bitbucket paginated listing.

    ``next`` holds the absolute URL of the following page, if any.
    """

    values: list[T] = msgspec.field(default_factory=list)
    next: str | None = None
    page: int | None = None
    pagelen: int | None = None
    size: int | None = None


class BitbucketProject(msgspec.Struct, kw_only=True):
    key: str | None = None
    name: str | None = None


class BitbucketRepository(msgspec.Struct, kw_only=True):
    """Entry of ``GET /repositories/{workspace}``."""

    slug: str
    name: str
    full_name: str
    project: BitbucketProject | None = None


class BitbucketUser(msgspec.Struct, kw_only=True):
    display_name: str | None = None
    uuid: str | None = None
    nickname: str | None = None


class BitbucketAuthor(msgspec.Struct, kw_only=True):
    """Commit author as the raw ``Name <email>`` string plus a linked user."""

    raw: str | None = None
    user: BitbucketUser | None = None


class BitbucketCommit(msgspec.Struct, kw_only=True):
    """Entry of ``GET /repositories/{workspace}/{slug}/commits``."""

    hash: str
    date: dt.datetime | None = None
    author: BitbucketAuthor | None = None
    message: str | None = None


class BitbucketDiffStat(msgspec.Struct, kw_only=True):
    """Per-file entry of ``GET /repositories/{workspace}/{slug}/diffstat/{sha}``."""

    status: str | None = None
    lines_added: int | None = None
    lines_removed: int | None = None
