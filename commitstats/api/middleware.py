"""Lifespan middleware tying the ingestion service to the ASGI app.

Falcon calls ``process_startup`` and ``process_shutdown`` around the
application's lifetime. Startup creates missing tables when an engine is
supplied; shutdown waits for in-flight ingestion runs, closes connector
HTTP clients and disposes the engine.

Usage
-----
Register the middleware when creating the Falcon app::

    lifespan = IngestionLifespan(service, engine=engine)
    app = falcon.asgi.App(middleware=[lifespan])

"""

from __future__ import annotations

import typing as typ

from commitstats.logging import get_logger, log_info
from commitstats.storage import init_storage

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from commitstats.ingestion.service import IngestionService

__all__ = ["IngestionLifespan"]

logger = get_logger(__name__)


class IngestionLifespan:
    """Falcon middleware managing the ingestion service's lifetime.

    Parameters
    ----------
    service
        Ingestion service whose background runs and connectors are closed
        on shutdown.
    engine
        Optional engine on which tables are created at startup and whose
        pooled connections are released at shutdown.

    """

    def __init__(
        self,
        service: IngestionService,
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        """Store the service and the optional engine."""
        self._service = service
        self._engine = engine

    async def process_startup(
        self, _scope: dict[str, typ.Any], _event: dict[str, typ.Any]
    ) -> None:
        """Create storage tables before the first request is served."""
        if self._engine is not None:
            await init_storage(self._engine)
        log_info(
            logger,
            "Ingestion API ready (enabled sources: %s)",
            ", ".join(self._service.enabled_sources) or "none",
        )

    async def process_shutdown(
        self, _scope: dict[str, typ.Any], _event: dict[str, typ.Any]
    ) -> None:
        """Wait for pending ingestion runs, then release connections and clients."""
        await self._service.aclose()
        if self._engine is not None:
            await self._engine.dispose()
        log_info(logger, "Ingestion service closed")
