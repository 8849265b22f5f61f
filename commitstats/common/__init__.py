"""Shared helpers used across commitstats packages."""
