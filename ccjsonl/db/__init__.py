"""Persistence, watching and batch processing for the ingestion pipeline."""
