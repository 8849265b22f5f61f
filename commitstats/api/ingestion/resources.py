"""Ingestion API resources.

Triggers return ``202 Accepted`` as soon as the run is scheduled; progress
is visible through logs, error records and the filter watermarks reported
by ``GET /ingestion/sources/{source}/filters``.

Usage
-----
Register the resources on the Falcon app::

    app.add_route("/ingestion/trigger", TriggerAllResource(service))
    app.add_route(
        "/ingestion/sources/{source}/trigger", TriggerSourceResource(service)
    )
    app.add_route(
        "/ingestion/sources/{source}/filters", SourceFiltersResource(service)
    )

"""

from __future__ import annotations

import typing as typ

import falcon

from commitstats.api.errors import InvalidInputError
from commitstats.common.time import format_iso_utc
from commitstats.storage.models import FILTER_CRITERIA_LENGTH

if typ.TYPE_CHECKING:
    from falcon.asgi import Request, Response

    from commitstats.ingestion.service import IngestionService
    from commitstats.ingestion.watermarks import WatermarkEntry

__all__ = ["SourceFiltersResource", "TriggerAllResource", "TriggerSourceResource"]


def _serialize_filter(entry: WatermarkEntry) -> dict[str, typ.Any]:
    last_fetch_at = entry.last_fetch_at
    return {
        "filter_criteria": entry.filter_criteria,
        "last_fetch_at": format_iso_utc(last_fetch_at) if last_fetch_at else None,
    }


class TriggerAllResource:
    """``POST /ingestion/trigger`` starts a run of every enabled source."""

    def __init__(self, service: IngestionService) -> None:
        """Bind the resource to the ingestion service."""
        self._service = service

    async def on_post(self, _req: Request, resp: Response) -> None:
        """Schedule a run of all enabled sources."""
        self._service.trigger_all()
        resp.status = falcon.HTTP_202
        resp.media = {
            "status": "accepted",
            "sources": list(self._service.enabled_sources),
        }


class TriggerSourceResource:
    """``POST /ingestion/sources/{source}/trigger`` starts one source's run."""

    def __init__(self, service: IngestionService) -> None:
        """Bind the resource to the ingestion service."""
        self._service = service

    async def on_post(self, _req: Request, resp: Response, *, source: str) -> None:
        """Schedule a run of ``source``.

        Unknown, disabled and busy sources are rejected by the service; the
        registered error handlers turn those into 404, 400 and 409.
        """
        self._service.trigger_source(source)
        resp.status = falcon.HTTP_202
        resp.media = {"status": "accepted", "source": source}


class SourceFiltersResource:
    """List and register the filters configured for a source."""

    def __init__(self, service: IngestionService) -> None:
        """Bind the resource to the ingestion service."""
        self._service = service

    async def on_get(self, _req: Request, resp: Response, *, source: str) -> None:
        """Return the source's filters with their last successful fetch time."""
        entries = await self._service.list_filters(source)
        resp.media = [_serialize_filter(entry) for entry in entries]
        resp.status = falcon.HTTP_200

    async def on_post(self, req: Request, resp: Response, *, source: str) -> None:
        """Register a filter from a ``{"filter_criteria": ...}`` body.

        Responds 201 when the filter is new and 200 when it already existed.
        """
        body = await req.get_media(default_when_empty=None)
        criteria = body.get("filter_criteria") if isinstance(body, dict) else None
        if not isinstance(criteria, str) or not criteria.strip():
            msg = "must be a non-empty string"
            raise InvalidInputError(msg, field="filter_criteria")
        criteria = criteria.strip()
        if len(criteria) > FILTER_CRITERIA_LENGTH:
            msg = f"must be at most {FILTER_CRITERIA_LENGTH} characters"
            raise InvalidInputError(msg, field="filter_criteria")

        created = await self._service.add_filter(source, criteria)
        resp.status = falcon.HTTP_201 if created else falcon.HTTP_200
        resp.media = {"source": source, "filter_criteria": criteria, "created": created}
