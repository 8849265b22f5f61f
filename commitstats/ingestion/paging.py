"""Pagination and payload decoding helpers shared by source connectors."""

from __future__ import annotations

import contextlib
import logging
import re
import typing as typ

import httpx
import msgspec

from commitstats.common.time import ensure_utc

from .errors import ResponseShapeError

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from .models import CommitData

logger = logging.getLogger(__name__)

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')


def next_link_from_header(header: str | None) -> str | None:
    """Return the ``rel="next"`` target of an RFC 5988 ``Link`` header."""
    if not header:
        return None
    match = _NEXT_LINK_RE.search(header)
    return match.group(1) if match else None


class PageCursor:
    """Validate "next page" references for one paginated walk.

    A reference that is not an absolute http(s) URL on the API host, or that
    points at a page already requested, ends the walk instead of looping.
    """

    def __init__(self, api_url: str, first_page: str) -> None:
        """Bind the cursor to the API host and mark the first page visited."""
        self._host = httpx.URL(api_url).host
        self._visited = {first_page}

    def advance(self, raw_next: str | None) -> str | None:
        """Return the next page URL to request, or ``None`` to stop."""
        if not raw_next:
            return None
        try:
            url = httpx.URL(raw_next)
        except httpx.InvalidURL:
            logger.warning("Stopping pagination at malformed next link %r", raw_next)
            return None
        if url.scheme not in {"http", "https"} or url.host != self._host:
            logger.warning("Stopping pagination at unexpected next link %r", raw_next)
            return None
        target = str(url)
        if target in self._visited:
            logger.warning("Stopping pagination at repeated next link %r", raw_next)
            return None
        self._visited.add(target)
        return target


def decode_payload[T](
    response: httpx.Response,
    payload_type: type[T],
    *,
    source: str,
    what: str,
) -> T:
    """Decode a JSON response body into ``payload_type``.

    Raises
    ------
    ResponseShapeError
        If the body is not JSON or does not match ``payload_type``.

    """
    try:
        return msgspec.json.decode(response.content, type=payload_type)
    except msgspec.DecodeError as exc:
        raise ResponseShapeError.invalid(source, what, str(exc)) from exc


async def commits_in_window(
    commits: cabc.AsyncGenerator[CommitData, None],
    since: dt.datetime,
    *,
    newest_first: bool,
) -> cabc.AsyncGenerator[CommitData, None]:
    """Yield commits at or after ``since`` from a provider commit stream.

    When the provider lists commits newest-first the first commit strictly
    older than ``since`` ends the stream, so no further pages are fetched.
    Otherwise older commits are dropped and the stream is read to the end.
    """
    since = ensure_utc(since, field="since")
    async with contextlib.aclosing(commits) as stream:
        async for commit in stream:
            if commit.committed_at >= since:
                yield commit
            elif newest_first:
                return
