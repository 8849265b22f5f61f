"""GitHub source connector."""

from __future__ import annotations

from .client import GitHubConfig, GitHubConnector

__all__ = ["GitHubConfig", "GitHubConnector"]
