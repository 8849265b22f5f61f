"""Domain exceptions and Falcon error handlers for the API layer.

Usage
-----
Register error handlers on the Falcon app::

    app.add_error_handler(UnknownSourceError, handle_unknown_source)
    app.add_error_handler(SourceDisabledError, handle_source_disabled)
    app.add_error_handler(SourceBusyError, handle_source_busy)
    app.add_error_handler(InvalidInputError, handle_invalid_input)

"""

from __future__ import annotations

import typing as typ

import falcon

if typ.TYPE_CHECKING:
    from falcon.asgi import Request, Response

    from commitstats.ingestion.errors import (
        SourceBusyError,
        SourceDisabledError,
        UnknownSourceError,
    )

__all__ = [
    "InvalidInputError",
    "handle_invalid_input",
    "handle_source_busy",
    "handle_source_disabled",
    "handle_unknown_source",
]


class InvalidInputError(Exception):
    """Raised for client validation errors that should map to HTTP 400.

    Attributes
    ----------
    reason
        Human-readable description of the validation failure.
    field
        Optional name of the input field that failed validation.

    """

    def __init__(self, reason: str, *, field: str | None = None) -> None:
        """Initialize with a validation reason and optional field name."""
        self.reason = reason
        self.field = field
        message = f"{field}: {reason}" if field is not None else reason
        super().__init__(message)


async def handle_unknown_source(
    _req: Request,
    resp: Response,
    ex: UnknownSourceError,
    _params: dict[str, typ.Any],
) -> None:
    """Map ``UnknownSourceError`` to an HTTP 404 JSON response."""
    resp.status = falcon.HTTP_404
    resp.media = {
        "title": "Unknown source",
        "description": str(ex),
        "source": ex.source,
    }


async def handle_source_disabled(
    _req: Request,
    resp: Response,
    ex: SourceDisabledError,
    _params: dict[str, typ.Any],
) -> None:
    """Map ``SourceDisabledError`` to an HTTP 400 JSON response."""
    resp.status = falcon.HTTP_400
    resp.media = {
        "title": "Source disabled",
        "description": str(ex),
        "source": ex.source,
    }


async def handle_source_busy(
    _req: Request,
    resp: Response,
    ex: SourceBusyError,
    _params: dict[str, typ.Any],
) -> None:
    """Map ``SourceBusyError`` to an HTTP 409 JSON response.

    Parameters
    ----------
    _req
        Falcon request (unused).
    resp
        Falcon response whose status and media are set.
    ex
        The rejected trigger, carrying the source name.
    _params
        URI template parameters (unused).

    """
    resp.status = falcon.HTTP_409
    resp.media = {
        "title": "Ingestion already running",
        "description": str(ex),
        "source": ex.source,
    }


async def handle_invalid_input(
    _req: Request,
    resp: Response,
    ex: InvalidInputError,
    _params: dict[str, typ.Any],
) -> None:
    """Map ``InvalidInputError`` to an HTTP 400 JSON response."""
    resp.status = falcon.HTTP_400
    media: dict[str, str] = {
        "title": "Invalid input",
        "description": ex.reason,
    }
    if ex.field is not None:
        media["field"] = ex.field
    resp.media = media
