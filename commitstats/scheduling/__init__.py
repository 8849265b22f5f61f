"""Dramatiq actors for scheduled ingestion passes."""
