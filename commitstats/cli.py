"""Command-line entry point for database setup, filters and manual runs."""

from __future__ import annotations

import argparse
import asyncio
import os
import typing as typ

import msgspec
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from commitstats.common.time import format_iso_utc
from commitstats.ingestion.errors import SourceDisabledError
from commitstats.ingestion.models import SourceName
from commitstats.ingestion.orchestrator import summarize_runs
from commitstats.ingestion.watermarks import WatermarkStore
from commitstats.logging import configure_logging
from commitstats.storage import init_storage
from commitstats.storage.models import FILTER_CRITERIA_LENGTH

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

_SOURCES = [source.value for source in SourceName]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="commitstats", description="Incremental commit statistics ingestion."
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("COMMITSTATS_DATABASE_URL"),
        help="SQLAlchemy async URL (defaults to COMMITSTATS_DATABASE_URL)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("COMMITSTATS_LOG_LEVEL", "INFO"),
        help="Log level for commitstats loggers",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create any missing tables")

    filters = commands.add_parser("filters", help="Manage per-source filters")
    filter_commands = filters.add_subparsers(dest="filters_command", required=True)
    add = filter_commands.add_parser("add", help="Register a filter for a source")
    add.add_argument("source", choices=_SOURCES)
    add.add_argument("criteria", help="Repository name filter")
    listing = filter_commands.add_parser("list", help="Show a source's filters")
    listing.add_argument("source", choices=_SOURCES)

    run = commands.add_parser("run", help="Run ingestion and wait for it to finish")
    run.add_argument(
        "--source",
        choices=_SOURCES,
        default=None,
        help="Run only this source (default: every enabled source)",
    )
    return parser


async def _with_engine[T](
    database_url: str, action: cabc.Callable[[AsyncEngine], cabc.Awaitable[T]]
) -> T:
    engine = create_async_engine(database_url)
    try:
        await init_storage(engine)
        return await action(engine)
    finally:
        await engine.dispose()


def _session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def _add_filter(engine: AsyncEngine, source: str, criteria: str) -> int:
    store = WatermarkStore(_session_factory(engine))
    if await store.register(source, criteria):
        print(f"added filter {criteria!r} for {source}")
    else:
        print(f"filter {criteria!r} for {source} already exists")
    return 0


async def _list_filters(engine: AsyncEngine, source: str) -> int:
    store = WatermarkStore(_session_factory(engine))
    entries = await store.list_for_source(source)
    if not entries:
        print(f"no filters configured for {source}")
    for entry in entries:
        last = format_iso_utc(entry.last_fetch_at) if entry.last_fetch_at else "never"
        print(f"{entry.filter_criteria}\t{last}")
    return 0


async def _run(engine: AsyncEngine, source: str | None) -> int:
    from commitstats.api.factory import build_ingestion_service

    service = build_ingestion_service(_session_factory(engine))
    try:
        if source is None:
            results = await service.orchestrator.run_all()
        else:
            results = [await service.orchestrator.run_source(source)]
    except SourceDisabledError as exc:
        print(f"cannot run: {exc}")
        return 1
    finally:
        await service.aclose()

    summary = summarize_runs(results)
    print(msgspec.json.format(msgspec.json.encode(summary)).decode())
    failed = any(counts["filters_failed"] for counts in summary.values())
    return 1 if failed else 0


def main(argv: list[str] | None = None) -> int:
    """Run a commitstats command.

    Parameters
    ----------
    argv : list[str] | None, optional
        Command-line arguments. ``None`` defaults to ``sys.argv``.

    Returns
    -------
    int
        Exit code: 0 on success, 1 when the command failed or a filter run
        was aborted, 2 for usage errors.

    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.database_url:
        parser.error("--database-url or COMMITSTATS_DATABASE_URL is required")
    configure_logging(args.log_level)

    if args.command == "init-db":
        asyncio.run(_with_engine(args.database_url, _noop))
        print("database tables are ready")
        return 0

    if args.command == "filters":
        if args.filters_command == "add":
            criteria = args.criteria.strip()
            if not criteria or len(criteria) > FILTER_CRITERIA_LENGTH:
                print(
                    f"filter criteria must be 1-{FILTER_CRITERIA_LENGTH} characters"
                )
                return 1
            return asyncio.run(
                _with_engine(
                    args.database_url,
                    lambda engine: _add_filter(engine, args.source, criteria),
                )
            )
        return asyncio.run(
            _with_engine(
                args.database_url, lambda engine: _list_filters(engine, args.source)
            )
        )

    return asyncio.run(
        _with_engine(args.database_url, lambda engine: _run(engine, args.source))
    )


async def _noop(_engine: AsyncEngine) -> None:
    return None


if __name__ == "__main__":
    raise SystemExit(main())
