"""Per-filter watermark store backed by the ``filter_watermarks`` table."""

from __future__ import annotations

import dataclasses
import typing as typ

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from commitstats.storage import FilterWatermark, TimezoneAwareRequiredError

if typ.TYPE_CHECKING:
    import datetime as dt

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


@dataclasses.dataclass(frozen=True, slots=True)
class WatermarkEntry:
    """Read-only snapshot of a configured filter and its watermark."""

    source: str
    filter_criteria: str
    last_fetch_at: dt.datetime | None


def _entry(row: FilterWatermark) -> WatermarkEntry:
    return WatermarkEntry(
        source=row.source,
        filter_criteria=row.filter_criteria,
        last_fetch_at=row.last_fetch_at,
    )


class WatermarkStore:
    """Read and advance the last-fetch timestamp of each (source, filter)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Store the session factory used for watermark reads and writes."""
        self._session_factory = session_factory

    async def get(self, source: str, filter_criteria: str) -> dt.datetime | None:
        """Return the last successful fetch time, or None if never run."""
        async with self._session_factory() as session:
            row = await self._load(session, source, filter_criteria)
            return None if row is None else row.last_fetch_at

    async def set(
        self, source: str, filter_criteria: str, timestamp: dt.datetime
    ) -> None:
        """Record ``timestamp`` as the filter's last successful fetch.

        Last write wins. A missing row is created, so setting a watermark for
        an unregistered filter also registers it.
        """
        if timestamp.tzinfo is None:
            raise TimezoneAwareRequiredError.for_field("last_fetch_at")

        async with self._session_factory() as session:
            row = await self._load(session, source, filter_criteria)
            if row is None:
                session.add(
                    FilterWatermark(
                        source=source,
                        filter_criteria=filter_criteria,
                        last_fetch_at=timestamp,
                    )
                )
            else:
                row.last_fetch_at = timestamp
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                row = await self._load(session, source, filter_criteria)
                if row is None:
                    raise
                row.last_fetch_at = timestamp
                await session.commit()

    async def register(self, source: str, filter_criteria: str) -> bool:
        """Add a filter that has never run; return False if it already exists."""
        async with self._session_factory() as session:
            if await self._load(session, source, filter_criteria) is not None:
                return False
            session.add(FilterWatermark(source=source, filter_criteria=filter_criteria))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def list_for_source(self, source: str) -> list[WatermarkEntry]:
        """Return the source's filters in insertion order."""
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(FilterWatermark)
                .where(FilterWatermark.source == source)
                .order_by(FilterWatermark.id)
            )
            return [_entry(row) for row in rows]

    @staticmethod
    async def _load(
        session: AsyncSession, source: str, filter_criteria: str
    ) -> FilterWatermark | None:
        return await session.scalar(
            select(FilterWatermark).where(
                FilterWatermark.source == source,
                FilterWatermark.filter_criteria == filter_criteria,
            )
        )
