"""Resources that trigger ingestion runs and manage filters."""
