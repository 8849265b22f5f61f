"""Health probe resources for liveness and readiness checks.

Both resources are always registered, with or without a database.

Usage
-----
Register health endpoints on the Falcon app::

    app.add_route("/health", HealthResource())
    app.add_route("/ready", ReadyResource(ingestion_enabled=True))

"""

from __future__ import annotations

import typing as typ
from http import HTTPStatus

if typ.TYPE_CHECKING:
    from falcon.asgi import Request, Response

__all__ = ["HealthResource", "ReadyResource"]


class HealthResource:
    """Liveness probe resource returning ``{"status": "ok"}``."""

    async def on_get(self, _req: Request, resp: Response) -> None:
        """Handle GET /health requests."""
        resp.media = {"status": "ok"}
        resp.status = HTTPStatus.OK


class ReadyResource:
    """Readiness probe resource.

    Reports whether ingestion endpoints are mounted so operators can tell a
    health-only deployment from a fully configured one.
    """

    def __init__(self, *, ingestion_enabled: bool = False) -> None:
        """Record whether the app was built with an ingestion service."""
        self._ingestion_enabled = ingestion_enabled

    async def on_get(self, _req: Request, resp: Response) -> None:
        """Handle GET /ready requests."""
        resp.media = {"status": "ready", "ingestion": self._ingestion_enabled}
        resp.status = HTTPStatus.OK
