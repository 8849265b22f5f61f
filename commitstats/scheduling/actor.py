"""Dramatiq actor for scheduled ingestion passes.

A scheduler (cron, Kubernetes CronJob or similar) enqueues
:func:`ingest_all_sources_job` once per cycle; the worker runs every enabled
source to completion and returns a per-source summary.

The actor is bound to a broker when this module is imported, so a worker
must configure its broker first. Under pytest, or with
``COMMITSTATS_ALLOW_STUB_BROKER`` set, an in-memory ``StubBroker`` is used
when none was configured.

Usage
-----
Queue a full ingestion pass:

>>> ingest_all_sources_job.send(database_url="postgresql+asyncpg://...")

"""

from __future__ import annotations

import asyncio
import sys
import threading
import typing as typ

import dramatiq
from dramatiq.brokers.stub import StubBroker
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from commitstats.api.factory import build_ingestion_service
from commitstats.ingestion.config import env_flag
from commitstats.ingestion.orchestrator import summarize_runs
from commitstats.logging import get_logger, log_info
from commitstats.storage import init_storage

if typ.TYPE_CHECKING:
    from commitstats.ingestion.service import IngestionService

type SessionFactory = async_sessionmaker[AsyncSession]

logger = get_logger(__name__)

_ENGINE_CACHE: dict[str, AsyncEngine] = {}
_CACHE_LOCK = threading.Lock()


def _bind_broker() -> dramatiq.Broker:
    """Return the broker ``ingest_all_sources_job`` is declared on.

    A broker configured before import is kept. Without one, tests and runs
    that allow it get a ``StubBroker``; otherwise Dramatiq's default
    RabbitMQ broker is used.

    Raises
    ------
    RuntimeError
        If no broker was configured and neither a stub nor RabbitMQ support
        is available.

    """
    configured = dramatiq.broker.global_broker
    if configured is not None:
        return configured

    if "pytest" in sys.modules or env_flag(
        "COMMITSTATS_ALLOW_STUB_BROKER", default=False
    ):
        stub = StubBroker()
        dramatiq.set_broker(stub)
        return stub

    try:
        return dramatiq.get_broker()
    except ImportError as exc:
        msg = (
            "No Dramatiq broker configured for commitstats.scheduling.actor; "
            "configure one before import or set COMMITSTATS_ALLOW_STUB_BROKER=1"
        )
        raise RuntimeError(msg) from exc


broker = _bind_broker()


def _get_or_create_engine(database_url: str) -> AsyncEngine:
    """Return the cached engine for ``database_url``, creating it once.

    Worker threads share the cache, so lookups hold a lock.
    """
    with _CACHE_LOCK:
        if database_url not in _ENGINE_CACHE:
            _ENGINE_CACHE[database_url] = create_async_engine(database_url)
        return _ENGINE_CACHE[database_url]


async def _run_all_sources(
    engine: AsyncEngine,
    build_service: typ.Callable[[SessionFactory], IngestionService],
) -> dict[str, typ.Any]:
    """Run one full pass over every enabled source.

    Pooled connections are released afterwards because each actor call runs
    in a fresh event loop.
    """
    await init_storage(engine)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    service = build_service(session_factory)
    try:
        results = await service.orchestrator.run_all()
    finally:
        await service.aclose()
        await engine.dispose()
    return summarize_runs(results)


@dramatiq.actor(broker=broker)
def ingest_all_sources_job(database_url: str) -> dict[str, typ.Any]:
    """Dramatiq actor running a full ingestion pass.

    Parameters
    ----------
    database_url
        SQLAlchemy URL for the database.

    Returns
    -------
    dict[str, Any]
        Per-source counts of succeeded and failed filters and new commits.

    """
    engine = _get_or_create_engine(database_url)
    summary = asyncio.run(_run_all_sources(engine, build_ingestion_service))
    log_info(logger, "Scheduled ingestion pass finished: %s", summary)
    return summary
