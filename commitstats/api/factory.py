"""Factory for building an ``IngestionService`` from environment configuration.

The API runtime, the Dramatiq actor and the CLI all assemble the ingestion
engine through :func:`build_ingestion_service`, so every entry point wires
the same stores, recorder and connectors.

Usage
-----
Build a service for the API layer::

    from commitstats.api.factory import build_ingestion_service

    service = build_ingestion_service(session_factory)

"""

from __future__ import annotations

import typing as typ

from commitstats.bitbucket import BitbucketConfig, BitbucketConnector
from commitstats.github import GitHubConfig, GitHubConnector
from commitstats.ingestion.config import IngestionConfig
from commitstats.ingestion.dedup import CommitIndex
from commitstats.ingestion.errors import SourceConfigError
from commitstats.ingestion.models import SourceName
from commitstats.ingestion.observability import IngestionEventLogger
from commitstats.ingestion.orchestrator import (
    IngestionOrchestrator,
    OrchestratorDependencies,
)
from commitstats.ingestion.recorder import ErrorRecorder
from commitstats.ingestion.service import IngestionService
from commitstats.ingestion.watermarks import WatermarkStore
from commitstats.logging import get_logger, log_warning

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from commitstats.ingestion.connector import SourceConnector

__all__ = ["build_connectors", "build_ingestion_service"]

logger = get_logger(__name__)

_CONNECTOR_BUILDERS: dict[str, cabc.Callable[[], SourceConnector]] = {
    SourceName.GITHUB.value: lambda: GitHubConnector(GitHubConfig.from_env()),
    SourceName.BITBUCKET.value: lambda: BitbucketConnector(BitbucketConfig.from_env()),
}


def build_connectors(config: IngestionConfig) -> dict[str, SourceConnector]:
    """Create a connector for every enabled source that is fully configured.

    A source whose credentials are missing is left without a connector and
    is therefore treated as disabled; a warning names the missing setting.
    """
    connectors: dict[str, SourceConnector] = {}
    for source, build in _CONNECTOR_BUILDERS.items():
        if source not in config.enabled_sources:
            continue
        try:
            connectors[source] = build()
        except SourceConfigError as exc:
            log_warning(
                logger,
                "Source %s is enabled but not configured (%s); skipping it",
                source,
                exc,
            )
    return connectors


def build_ingestion_service(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    config: IngestionConfig | None = None,
    connectors: cabc.Mapping[str, SourceConnector] | None = None,
) -> IngestionService:
    """Build an ``IngestionService`` from environment configuration.

    Parameters
    ----------
    session_factory
        Async session factory for database access.
    config
        Ingestion settings; read from the environment when omitted.
    connectors
        Source connectors keyed by source name; built from the environment
        when omitted.

    Returns
    -------
    IngestionService
        Configured service ready to trigger runs.

    """
    resolved_config = config or IngestionConfig.from_env()
    if connectors is None:
        connectors = build_connectors(resolved_config)

    watermarks = WatermarkStore(session_factory)
    dependencies = OrchestratorDependencies(
        commit_index=CommitIndex(session_factory),
        watermarks=watermarks,
        recorder=ErrorRecorder(session_factory),
    )
    orchestrator = IngestionOrchestrator(
        dependencies,
        connectors,
        config=resolved_config,
        event_logger=IngestionEventLogger(),
    )
    return IngestionService(orchestrator, watermarks)
