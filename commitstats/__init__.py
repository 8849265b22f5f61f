"""Incremental commit ingestion from GitHub organisations and Bitbucket workspaces."""

from __future__ import annotations

__version__ = "0.1.0"
