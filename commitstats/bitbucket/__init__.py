"""Bitbucket Cloud source connector."""

from __future__ import annotations

from .client import BitbucketConfig, BitbucketConnector, parse_author

__all__ = ["BitbucketConfig", "BitbucketConnector", "parse_author"]
