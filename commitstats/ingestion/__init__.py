"""Incremental commit ingestion engine."""

from __future__ import annotations

from .config import DEFAULT_SINCE, IngestionConfig
from .connector import SourceConnector
from .dedup import CommitIndex
from .errors import (
    ErrorKind,
    FilterRunAbortedError,
    ProviderError,
    RateLimitDetails,
    ResponseShapeError,
    SourceBusyError,
    SourceConfigError,
    SourceDisabledError,
    UnknownSourceError,
)
from .models import CommitData, RepositoryDescriptor, SourceName
from .observability import IngestionEventLogger, categorize_error
from .orchestrator import (
    FilterRunResult,
    IngestionOrchestrator,
    OrchestratorDependencies,
    SourceRunResult,
)
from .outcome import Empty, FatalFailure, FetchOutcome, Ok, RetryableFailure
from .policy import NotReadyRetryPolicy, classify_response
from .recorder import ErrorRecorder
from .service import IngestionService
from .watermarks import WatermarkEntry, WatermarkStore

__all__ = [
    "DEFAULT_SINCE",
    "CommitData",
    "CommitIndex",
    "Empty",
    "ErrorKind",
    "ErrorRecorder",
    "FatalFailure",
    "FetchOutcome",
    "FilterRunAbortedError",
    "FilterRunResult",
    "IngestionConfig",
    "IngestionEventLogger",
    "IngestionOrchestrator",
    "IngestionService",
    "NotReadyRetryPolicy",
    "Ok",
    "OrchestratorDependencies",
    "ProviderError",
    "RateLimitDetails",
    "RepositoryDescriptor",
    "ResponseShapeError",
    "RetryableFailure",
    "SourceBusyError",
    "SourceConfigError",
    "SourceConnector",
    "SourceDisabledError",
    "SourceName",
    "SourceRunResult",
    "UnknownSourceError",
    "WatermarkEntry",
    "WatermarkStore",
    "categorize_error",
    "classify_response",
]
