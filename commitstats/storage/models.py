"""Persistence models for commits, filter watermarks and error records."""

from __future__ import annotations

import datetime as dt
import typing as typ

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

if typ.TYPE_CHECKING:
    from sqlalchemy.engine import Dialect
    from sqlalchemy.ext.asyncio import AsyncEngine

from commitstats.common.time import utcnow
from commitstats.storage.errors import TimezoneAwareRequiredError

SOURCE_LENGTH = 20
FILTER_CRITERIA_LENGTH = 255
ERROR_KIND_LENGTH = 32
ERROR_CONTEXT_LENGTH = 500


class Base(DeclarativeBase):
    """Base declarative class for commitstats models."""


class UTCDateTime(TypeDecorator[dt.datetime]):
    """DateTime wrapper that round-trips UTC tzinfo even on SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: dt.datetime | None, dialect: Dialect
    ) -> dt.datetime | None:
        """Force bound datetime values to UTC with tzinfo."""
        if value is None:
            return None
        if value.tzinfo is None:
            raise TimezoneAwareRequiredError.for_field("datetime column value")
        return value.astimezone(dt.UTC)

    def process_result_value(
        self, value: dt.datetime | None, dialect: Dialect
    ) -> dt.datetime | None:
        """Ensure result datetimes are UTC and timezone aware."""
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.UTC)
        return value.astimezone(dt.UTC)


class CommitRecord(Base):
    """A commit ingested from a source, written once and never mutated."""

    __tablename__ = "commit_records"
    __table_args__ = (
        UniqueConstraint("source", "repository", "sha", name="uq_commit_identity"),
        Index("ix_commit_records_repo_time", "repository", "committed_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(SOURCE_LENGTH))
    repository: Mapped[str] = mapped_column(String(255))
    sha: Mapped[str] = mapped_column(String(64))
    author_name: Mapped[str | None] = mapped_column(String(255), default=None)
    author_email: Mapped[str | None] = mapped_column(String(255), default=None)
    committed_at: Mapped[dt.datetime] = mapped_column(UTCDateTime())
    lines_added: Mapped[int | None] = mapped_column(Integer, default=None)
    lines_removed: Mapped[int | None] = mapped_column(Integer, default=None)
    files_changed: Mapped[int | None] = mapped_column(Integer, default=None)
    ingested_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)


class FilterWatermark(Base):
    """Last successful fetch time for a (source, filter criteria) pair.

    ``last_fetch_at`` is null until the first successful run. Rows are listed
    in insertion order via the surrogate ``id``.
    """

    __tablename__ = "filter_watermarks"
    __table_args__ = (
        UniqueConstraint("source", "filter_criteria", name="uq_filter_watermark"),
        Index("ix_filter_watermarks_source", "source"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(SOURCE_LENGTH))
    filter_criteria: Mapped[str] = mapped_column(String(FILTER_CRITERIA_LENGTH))
    last_fetch_at: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )


class ErrorRecord(Base):
    """Append-only record of a classified ingestion failure."""

    __tablename__ = "error_records"
    __table_args__ = (Index("ix_error_records_source_time", "source", "recorded_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    recorded_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    source: Mapped[str | None] = mapped_column(String(SOURCE_LENGTH), default=None)
    filter_criteria: Mapped[str | None] = mapped_column(
        String(FILTER_CRITERIA_LENGTH), default=None
    )
    kind: Mapped[str] = mapped_column(String(ERROR_KIND_LENGTH))
    message: Mapped[str] = mapped_column(Text())
    status_code: Mapped[int | None] = mapped_column(Integer, default=None)
    context: Mapped[str | None] = mapped_column(
        String(ERROR_CONTEXT_LENGTH), default=None
    )


async def init_storage(engine: AsyncEngine) -> None:
    """Create all tables registered with Base if they are absent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
