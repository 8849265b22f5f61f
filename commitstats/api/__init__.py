"""Falcon ASGI surface for triggering commit ingestion."""
