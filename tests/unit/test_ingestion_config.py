"""Unit tests for IngestionConfig and boolean environment flags."""

from __future__ import annotations

import datetime as dt

import pytest

from commitstats.ingestion.config import DEFAULT_SINCE, IngestionConfig, env_flag

_ENV_VARS = (
    "COMMITSTATS_DEFAULT_SINCE",
    "COMMITSTATS_GITHUB_ENABLED",
    "COMMITSTATS_BITBUCKET_ENABLED",
    "COMMITSTATS_NOT_READY_MAX_ATTEMPTS",
    "COMMITSTATS_NOT_READY_DELAY_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for env_var in _ENV_VARS:
        monkeypatch.delenv(env_var, raising=False)


class TestEnvFlag:
    """Parsing of boolean flags."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("1", True), ("Yes", True), ("ON", True), ("0", False), ("false", False)],
    )
    def test_recognised_values(
        self, monkeypatch: pytest.MonkeyPatch, raw: str, *, expected: bool
    ) -> None:
        """Common spellings map onto booleans, ignoring case."""
        monkeypatch.setenv("COMMITSTATS_GITHUB_ENABLED", raw)

        assert env_flag("COMMITSTATS_GITHUB_ENABLED", default=not expected) is expected

    def test_unset_uses_default(self) -> None:
        """Unset or blank variables fall back to the default."""
        assert env_flag("COMMITSTATS_GITHUB_ENABLED", default=True) is True

    def test_rejects_other_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Anything else is a configuration error."""
        monkeypatch.setenv("COMMITSTATS_GITHUB_ENABLED", "maybe")

        with pytest.raises(ValueError, match="must be a boolean flag"):
            env_flag("COMMITSTATS_GITHUB_ENABLED", default=True)


class TestIngestionConfigFromEnv:
    """IngestionConfig.from_env reads COMMITSTATS_* variables."""

    def test_defaults(self) -> None:
        """Without variables both sources are enabled with default budgets."""
        config = IngestionConfig.from_env()

        assert config == IngestionConfig()
        assert config.default_since == DEFAULT_SINCE
        assert config.enabled_sources == frozenset({"github", "bitbucket"})
        assert config.retry_policy().max_attempts == 4

    def test_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Every knob can be set from the environment."""
        monkeypatch.setenv("COMMITSTATS_DEFAULT_SINCE", "2023-06-01T00:00:00+02:00")
        monkeypatch.setenv("COMMITSTATS_GITHUB_ENABLED", "false")
        monkeypatch.setenv("COMMITSTATS_NOT_READY_MAX_ATTEMPTS", "6")
        monkeypatch.setenv("COMMITSTATS_NOT_READY_DELAY_SECONDS", "0.5")

        config = IngestionConfig.from_env()

        assert config.default_since == dt.datetime(2023, 5, 31, 22, 0, tzinfo=dt.UTC)
        assert config.enabled_sources == frozenset({"bitbucket"})
        policy = config.retry_policy()
        assert policy.max_attempts == 6
        assert policy.delay == dt.timedelta(seconds=0.5)

    def test_naive_since_is_taken_as_utc(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A timestamp without an offset is interpreted as UTC."""
        monkeypatch.setenv("COMMITSTATS_DEFAULT_SINCE", "2023-06-01T00:00:00")

        config = IngestionConfig.from_env()

        assert config.default_since == dt.datetime(2023, 6, 1, tzinfo=dt.UTC)

    @pytest.mark.parametrize(
        ("env_var", "value", "match"),
        [
            ("COMMITSTATS_DEFAULT_SINCE", "last tuesday", "ISO-8601"),
            ("COMMITSTATS_NOT_READY_MAX_ATTEMPTS", "zero", "must be an integer"),
            ("COMMITSTATS_NOT_READY_MAX_ATTEMPTS", "0", "must be positive"),
            ("COMMITSTATS_NOT_READY_DELAY_SECONDS", "-1", "must not be negative"),
            ("COMMITSTATS_BITBUCKET_ENABLED", "sometimes", "boolean flag"),
        ],
    )
    def test_malformed_values(
        self, monkeypatch: pytest.MonkeyPatch, env_var: str, value: str, match: str
    ) -> None:
        """Malformed values raise ValueError naming the problem."""
        monkeypatch.setenv(env_var, value)

        with pytest.raises(ValueError, match=match):
            IngestionConfig.from_env()
