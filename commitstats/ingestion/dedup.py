"""Commit dedup index backed by the ``commit_records`` table."""

from __future__ import annotations

import logging
import typing as typ

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from commitstats.storage import CommitRecord, TimezoneAwareRequiredError

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from .models import CommitData

logger = logging.getLogger(__name__)


class CommitIndex:
    """Answer whether a commit is already stored and insert new ones once."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Store the session factory used for lookups and inserts."""
        self._session_factory = session_factory

    async def exists(self, source: str, repository: str, sha: str) -> bool:
        """Return True when ``(source, repository, sha)`` is already stored."""
        async with self._session_factory() as session:
            return await self._exists_in(session, source, repository, sha)

    async def save(self, source: str, repository: str, commit: CommitData) -> bool:
        """Persist ``commit`` unless its identity triple is already present.

        Returns True when a row was written. A concurrent insert of the same
        triple surfaces as a unique-constraint violation, which is rolled back
        and reported as False rather than raised.
        """
        if commit.committed_at.tzinfo is None:
            raise TimezoneAwareRequiredError.for_field("committed_at")

        async with self._session_factory() as session:
            session.add(
                CommitRecord(
                    source=source,
                    repository=repository,
                    sha=commit.sha,
                    author_name=commit.author_name,
                    author_email=commit.author_email,
                    committed_at=commit.committed_at,
                    lines_added=commit.lines_added,
                    lines_removed=commit.lines_removed,
                    files_changed=commit.files_changed,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if not await self._exists_in(session, source, repository, commit.sha):
                    raise
                logger.debug(
                    "Commit %s in %s already stored for %s; insert ignored",
                    commit.short_sha,
                    repository,
                    source,
                )
                return False
        return True

    @staticmethod
    async def _exists_in(
        session: AsyncSession, source: str, repository: str, sha: str
    ) -> bool:
        found = await session.scalar(
            select(CommitRecord.id)
            .where(
                CommitRecord.source == source,
                CommitRecord.repository == repository,
                CommitRecord.sha == sha,
            )
            .limit(1)
        )
        return found is not None
