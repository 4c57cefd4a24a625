"""Adapters connecting the import pipeline to archives and PostgreSQL."""
