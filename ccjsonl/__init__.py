"""cc-jsonl: incremental Claude Code transcript ingestion."""

__version__ = "0.1.0"
