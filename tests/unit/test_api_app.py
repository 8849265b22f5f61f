"""Unit tests for the commitstats.api application factory and resources.

Usage
-----
Run with pytest::

    pytest tests/unit/test_api_app.py

"""

from __future__ import annotations

import datetime as dt
from unittest import mock

import falcon.asgi
import falcon.testing
import pytest

from commitstats.api.app import AppDependencies, create_app
from commitstats.ingestion.errors import (
    SourceBusyError,
    SourceDisabledError,
    UnknownSourceError,
)
from commitstats.ingestion.service import IngestionService
from commitstats.ingestion.watermarks import WatermarkEntry


@pytest.fixture
def service() -> mock.MagicMock:
    """Build an IngestionService double with both sources enabled."""
    double = mock.MagicMock(spec=IngestionService)
    double.enabled_sources = ("github", "bitbucket")
    return double


@pytest.fixture
def health_client() -> falcon.testing.TestClient:
    """Build a test client for health-only mode."""
    return falcon.testing.TestClient(create_app())


@pytest.fixture
def client(service: mock.MagicMock) -> falcon.testing.TestClient:
    """Build a test client with the ingestion endpoints mounted."""
    return falcon.testing.TestClient(
        create_app(AppDependencies(ingestion_service=service))
    )


class TestHealthOnly:
    """create_app() without an ingestion service."""

    def test_returns_falcon_app(self) -> None:
        """create_app() returns a Falcon ASGI App."""
        assert isinstance(create_app(), falcon.asgi.App), "expected Falcon ASGI App"

    def test_health(self, health_client: falcon.testing.TestClient) -> None:
        """/health reports ok."""
        result = health_client.simulate_get("/health")
        assert result.status == falcon.HTTP_200, "expected HTTP 200 from /health"
        assert result.json == {"status": "ok"}, "wrong /health body"

    def test_ready_reports_ingestion_disabled(
        self, health_client: falcon.testing.TestClient
    ) -> None:
        """/ready says ingestion endpoints are not mounted."""
        result = health_client.simulate_get("/ready")
        assert result.json == {"status": "ready", "ingestion": False}

    def test_ingestion_routes_not_registered(
        self, health_client: falcon.testing.TestClient
    ) -> None:
        """Trigger endpoints return 404 without a service."""
        result = health_client.simulate_post("/ingestion/trigger")
        assert result.status == falcon.HTTP_404, "expected HTTP 404"


class TestTriggers:
    """POST trigger endpoints."""

    def test_ready_reports_ingestion_enabled(
        self, client: falcon.testing.TestClient
    ) -> None:
        """/ready says ingestion endpoints are mounted."""
        result = client.simulate_get("/ready")
        assert result.json == {"status": "ready", "ingestion": True}

    def test_trigger_all_is_accepted(
        self, client: falcon.testing.TestClient, service: mock.MagicMock
    ) -> None:
        """A full run is scheduled and the enabled sources are listed."""
        result = client.simulate_post("/ingestion/trigger")

        assert result.status == falcon.HTTP_202, "expected HTTP 202"
        assert result.json == {
            "status": "accepted",
            "sources": ["github", "bitbucket"],
        }
        service.trigger_all.assert_called_once_with()

    def test_trigger_source_is_accepted(
        self, client: falcon.testing.TestClient, service: mock.MagicMock
    ) -> None:
        """A single-source run is scheduled."""
        result = client.simulate_post("/ingestion/sources/github/trigger")

        assert result.status == falcon.HTTP_202, "expected HTTP 202"
        assert result.json == {"status": "accepted", "source": "github"}
        service.trigger_source.assert_called_once_with("github")

    @pytest.mark.parametrize(
        ("error", "status", "title"),
        [
            (UnknownSourceError("gitlab"), falcon.HTTP_404, "Unknown source"),
            (SourceDisabledError("gitlab"), falcon.HTTP_400, "Source disabled"),
            (SourceBusyError("gitlab"), falcon.HTTP_409, "Ingestion already running"),
        ],
    )
    def test_rejected_triggers(
        self,
        client: falcon.testing.TestClient,
        service: mock.MagicMock,
        error: Exception,
        status: str,
        title: str,
    ) -> None:
        """Service rejections map onto HTTP errors naming the source."""
        service.trigger_source.side_effect = error

        result = client.simulate_post("/ingestion/sources/gitlab/trigger")

        assert result.status == status
        assert result.json["title"] == title
        assert result.json["source"] == "gitlab"

    def test_service_is_closed_on_shutdown(
        self, client: falcon.testing.TestClient, service: mock.MagicMock
    ) -> None:
        """The lifespan shutdown closes the ingestion service."""
        client.simulate_get("/health")

        service.aclose.assert_awaited()


class TestFilters:
    """GET and POST /ingestion/sources/{source}/filters."""

    def test_list_filters(
        self, client: falcon.testing.TestClient, service: mock.MagicMock
    ) -> None:
        """Filters are listed with ISO-8601 watermarks or null."""
        service.list_filters.return_value = [
            WatermarkEntry(
                source="github",
                filter_criteria="core",
                last_fetch_at=dt.datetime(2024, 6, 1, 9, 0, tzinfo=dt.UTC),
            ),
            WatermarkEntry(source="github", filter_criteria="web", last_fetch_at=None),
        ]

        result = client.simulate_get("/ingestion/sources/github/filters")

        assert result.status == falcon.HTTP_200
        assert result.json == [
            {"filter_criteria": "core", "last_fetch_at": "2024-06-01T09:00:00Z"},
            {"filter_criteria": "web", "last_fetch_at": None},
        ]
        service.list_filters.assert_awaited_once_with("github")

    def test_list_filters_unknown_source(
        self, client: falcon.testing.TestClient, service: mock.MagicMock
    ) -> None:
        """Unknown sources return 404."""
        service.list_filters.side_effect = UnknownSourceError("gitlab")

        result = client.simulate_get("/ingestion/sources/gitlab/filters")

        assert result.status == falcon.HTTP_404

    @pytest.mark.parametrize(
        ("created", "status"), [(True, falcon.HTTP_201), (False, falcon.HTTP_200)]
    )
    def test_add_filter(
        self,
        client: falcon.testing.TestClient,
        service: mock.MagicMock,
        *,
        created: bool,
        status: str,
    ) -> None:
        """New filters return 201, existing ones 200."""
        service.add_filter.return_value = created

        result = client.simulate_post(
            "/ingestion/sources/bitbucket/filters",
            json={"filter_criteria": "  payments "},
        )

        assert result.status == status
        assert result.json == {
            "source": "bitbucket",
            "filter_criteria": "payments",
            "created": created,
        }
        service.add_filter.assert_awaited_once_with("bitbucket", "payments")

    @pytest.mark.parametrize(
        "body",
        [
            None,
            {},
            {"filter_criteria": "   "},
            {"filter_criteria": 42},
            {"filter_criteria": "x" * 256},
            ["core"],
        ],
    )
    def test_add_filter_rejects_invalid_bodies(
        self,
        client: falcon.testing.TestClient,
        service: mock.MagicMock,
        body: object,
    ) -> None:
        """Bodies without a usable filter return 400 naming the field."""
        result = client.simulate_post(
            "/ingestion/sources/github/filters", json=body
        )

        assert result.status == falcon.HTTP_400
        assert result.json["title"] == "Invalid input"
        assert result.json["field"] == "filter_criteria"
        service.add_filter.assert_not_awaited()
