"""Configuration for ingestion runs.

Usage
-----
Create a configuration with defaults:

>>> config = IngestionConfig()
>>> config.default_since.isoformat()
'2024-01-01T00:00:00+00:00'

Or load from environment variables, for example with
``COMMITSTATS_BITBUCKET_ENABLED=false`` set::

    config = IngestionConfig.from_env()
    sorted(config.enabled_sources)  # ['github']

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import os

from .models import SourceName
from .policy import NotReadyRetryPolicy

DEFAULT_SINCE = dt.datetime(2024, 1, 1, tzinfo=dt.UTC)

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


def env_flag(env_var: str, *, default: bool) -> bool:
    """Read a boolean env var such as ``true`` or ``0``.

    Raises
    ------
    ValueError
        If the variable is set to something other than a recognised flag.

    """
    raw = os.environ.get(env_var, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    msg = f"{env_var} must be a boolean flag, got: {raw!r}"
    raise ValueError(msg)


@dc.dataclass(frozen=True, slots=True)
class IngestionConfig:
    """Runtime knobs for the ingestion orchestrator.

    Attributes
    ----------
    default_since
        Lower bound used for filters that have never completed a run.
    enabled_sources
        Source names that ``run_all`` processes and triggers accept.
    not_ready_max_attempts
        Total calls made to an endpoint answering "not ready yet" before the
        data is treated as unavailable.
    not_ready_delay
        Fixed pause between those calls.

    """

    default_since: dt.datetime = DEFAULT_SINCE
    enabled_sources: frozenset[str] = frozenset(source.value for source in SourceName)
    not_ready_max_attempts: int = 4
    not_ready_delay: dt.timedelta = dt.timedelta(seconds=2)

    def retry_policy(self) -> NotReadyRetryPolicy:
        """Build the not-ready retry policy described by this configuration."""
        return NotReadyRetryPolicy(
            max_attempts=self.not_ready_max_attempts,
            delay=self.not_ready_delay,
        )

    @staticmethod
    def _parse_positive_int(env_var: str, default: int) -> int:
        """Read a positive integer env var, falling back to a default."""
        raw = os.environ.get(env_var, "")
        if not raw.strip():
            return default
        try:
            value = int(raw)
        except ValueError as exc:
            msg = f"{env_var} must be an integer, got: {raw!r}"
            raise ValueError(msg) from exc
        if value < 1:
            msg = f"{env_var} must be positive, got: {value}"
            raise ValueError(msg)
        return value

    @staticmethod
    def _parse_seconds(env_var: str, default: float) -> dt.timedelta:
        """Read a non-negative number of seconds, falling back to a default."""
        raw = os.environ.get(env_var, "")
        if not raw.strip():
            return dt.timedelta(seconds=default)
        try:
            value = float(raw)
        except ValueError as exc:
            msg = f"{env_var} must be a number of seconds, got: {raw!r}"
            raise ValueError(msg) from exc
        if value < 0:
            msg = f"{env_var} must not be negative, got: {value}"
            raise ValueError(msg)
        return dt.timedelta(seconds=value)

    @staticmethod
    def _parse_since(env_var: str) -> dt.datetime:
        """Read the default epoch; naive values are taken as UTC."""
        raw = os.environ.get(env_var, "").strip()
        if not raw:
            return DEFAULT_SINCE
        try:
            parsed = dt.datetime.fromisoformat(raw)
        except ValueError as exc:
            msg = f"{env_var} must be an ISO-8601 timestamp, got: {raw!r}"
            raise ValueError(msg) from exc
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=dt.UTC)
        return parsed.astimezone(dt.UTC)

    @classmethod
    def from_env(cls) -> IngestionConfig:
        """Create configuration from environment variables.

        Reads the following environment variables:

        - ``COMMITSTATS_DEFAULT_SINCE``: ISO-8601 default epoch.
        - ``COMMITSTATS_GITHUB_ENABLED`` / ``COMMITSTATS_BITBUCKET_ENABLED``:
          boolean flags, both enabled by default.
        - ``COMMITSTATS_NOT_READY_MAX_ATTEMPTS``: positive integer.
        - ``COMMITSTATS_NOT_READY_DELAY_SECONDS``: non-negative number.

        Raises
        ------
        ValueError
            If any variable is present but malformed.

        """
        flags = {
            SourceName.GITHUB: "COMMITSTATS_GITHUB_ENABLED",
            SourceName.BITBUCKET: "COMMITSTATS_BITBUCKET_ENABLED",
        }
        enabled = frozenset(
            source.value
            for source, env_var in flags.items()
            if env_flag(env_var, default=True)
        )
        return cls(
            default_since=cls._parse_since("COMMITSTATS_DEFAULT_SINCE"),
            enabled_sources=enabled,
            not_ready_max_attempts=cls._parse_positive_int(
                "COMMITSTATS_NOT_READY_MAX_ATTEMPTS", 4
            ),
            not_ready_delay=cls._parse_seconds(
                "COMMITSTATS_NOT_READY_DELAY_SECONDS", 2.0
            ),
        )
