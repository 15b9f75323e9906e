"""Bibliographic record ingestion, reference extraction and deduplication."""

__version__ = "0.1.0"
