"""Application factory for the commitstats Falcon ASGI application.

Usage
-----
Create a health-only app (no database)::

    app = create_app()

Create a full app with ingestion endpoints::

    from commitstats.api.app import AppDependencies, create_app

    deps = AppDependencies(ingestion_service=service, engine=engine)
    app = create_app(deps)

"""

from __future__ import annotations

import dataclasses as dc
import typing as typ

import falcon.asgi

from commitstats.api.errors import (
    InvalidInputError,
    handle_invalid_input,
    handle_source_busy,
    handle_source_disabled,
    handle_unknown_source,
)
from commitstats.api.health.resources import HealthResource, ReadyResource
from commitstats.ingestion.errors import (
    SourceBusyError,
    SourceDisabledError,
    UnknownSourceError,
)

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from commitstats.ingestion.service import IngestionService

__all__ = ["AppDependencies", "create_app"]


@dc.dataclass(frozen=True, slots=True)
class AppDependencies:
    """Dependencies for the Falcon ASGI application.

    Attributes
    ----------
    ingestion_service
        Service behind the ingestion endpoints; without it only health
        endpoints are registered.
    engine
        Optional engine on which tables are created at startup and which is
        disposed at shutdown.

    """

    ingestion_service: IngestionService | None = None
    engine: AsyncEngine | None = None


def create_app(
    dependencies: AppDependencies | None = None,
) -> falcon.asgi.App:
    """Create and configure the Falcon ASGI application.

    Parameters
    ----------
    dependencies
        Optional application dependencies. When ``None`` or lacking an
        ingestion service, only ``/health`` and ``/ready`` are available.

    Returns
    -------
    falcon.asgi.App
        Configured Falcon ASGI application.

    """
    service = dependencies.ingestion_service if dependencies is not None else None
    middleware: list[object] = []

    if service is not None and dependencies is not None:
        from commitstats.api.middleware import IngestionLifespan

        middleware.append(IngestionLifespan(service, engine=dependencies.engine))

    app = falcon.asgi.App(middleware=middleware)  # type: ignore[no-matching-overload]  # Falcon stubs

    app.add_route("/health", HealthResource())
    app.add_route("/ready", ReadyResource(ingestion_enabled=service is not None))

    if service is not None:
        from commitstats.api.ingestion.resources import (
            SourceFiltersResource,
            TriggerAllResource,
            TriggerSourceResource,
        )

        app.add_route("/ingestion/trigger", TriggerAllResource(service))
        app.add_route(
            "/ingestion/sources/{source}/trigger", TriggerSourceResource(service)
        )
        app.add_route(
            "/ingestion/sources/{source}/filters", SourceFiltersResource(service)
        )

    app.add_error_handler(UnknownSourceError, handle_unknown_source)
    app.add_error_handler(SourceDisabledError, handle_source_disabled)
    app.add_error_handler(SourceBusyError, handle_source_busy)
    app.add_error_handler(InvalidInputError, handle_invalid_input)

    return app
