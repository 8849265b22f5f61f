"""commitstats runtime entrypoint.

This module provides the ASGI application factory used by Granian. It
delegates to :func:`commitstats.api.app.create_app` for application
construction while keeping the ``commitstats.runtime:create_app`` entrypoint
stable.

When ``COMMITSTATS_DATABASE_URL`` is set, the runtime builds the ingestion
service so the app includes the trigger and filter endpoints. Otherwise it
starts in health-only mode.

Configuration is driven by environment variables:

- ``COMMITSTATS_HOST``: Bind address (default ``0.0.0.0``)
- ``COMMITSTATS_PORT``: Listen port (default ``8080``)
- ``COMMITSTATS_LOG_LEVEL``: Log level (default ``INFO``)
- ``COMMITSTATS_DATABASE_URL``: Database connection URL (optional; enables
  ingestion endpoints when set)

Run the service directly with ``python -m commitstats.runtime``.
"""

from __future__ import annotations

import os
import typing as typ

from commitstats.logging import (
    configure_logging,
    get_logger,
    log_error,
    log_info,
    log_warning,
)

if typ.TYPE_CHECKING:
    import falcon.asgi

__all__ = ["create_app", "main"]

logger = get_logger(__name__)

_MIN_PORT = 1
_MAX_PORT = 65535


def _parse_port(port_str: str) -> int:
    """Parse and validate a port number string.

    Raises
    ------
    SystemExit
        If port_str is not a valid integer in range 1-65535.

    """
    try:
        port = int(port_str)
        if not (_MIN_PORT <= port <= _MAX_PORT):
            msg = f"port {port} outside valid range {_MIN_PORT}-{_MAX_PORT}"
            raise ValueError(msg)  # noqa: TRY301 - unify conversion and range errors
    except ValueError as exc:
        log_error(
            logger,
            "Invalid COMMITSTATS_PORT value: %r (must be %d-%d): %s",
            port_str,
            _MIN_PORT,
            _MAX_PORT,
            exc,
        )
        raise SystemExit(1) from exc
    return port


def create_app() -> falcon.asgi.App:
    """Create and configure the Falcon ASGI application.

    Returns
    -------
    falcon.asgi.App
        Configured Falcon ASGI application.

    """
    from commitstats.api.app import create_app as _create_api_app

    database_url = os.environ.get("COMMITSTATS_DATABASE_URL")

    if database_url is None:
        return _create_api_app()

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from commitstats.api.app import AppDependencies
    from commitstats.api.factory import build_ingestion_service

    engine = create_async_engine(database_url)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    service = build_ingestion_service(session_factory)

    return _create_api_app(AppDependencies(ingestion_service=service, engine=engine))


def main() -> None:
    """Start the commitstats runtime server using Granian.

    Reads ``COMMITSTATS_HOST``, ``COMMITSTATS_PORT`` and
    ``COMMITSTATS_LOG_LEVEL`` from the environment and starts the ASGI
    server.
    """
    from granian import Granian
    from granian.constants import Interfaces

    host = os.environ.get("COMMITSTATS_HOST", "0.0.0.0")  # noqa: S104 - bind all interfaces for container
    port = _parse_port(os.environ.get("COMMITSTATS_PORT", "8080"))
    log_level_str = os.environ.get("COMMITSTATS_LOG_LEVEL", "INFO")

    normalized_level, invalid_level = configure_logging(log_level_str)
    if invalid_level:
        log_warning(
            logger,
            "Invalid COMMITSTATS_LOG_LEVEL %r, falling back to %s",
            log_level_str,
            normalized_level,
        )

    log_info(
        logger,
        "Starting commitstats runtime on %s:%d (log_level=%s)",
        host,
        port,
        normalized_level,
    )

    server = Granian(
        "commitstats.runtime:create_app",
        address=host,
        port=port,
        interface=Interfaces.ASGI,
        factory=True,
    )
    server.serve()


if __name__ == "__main__":
    main()
