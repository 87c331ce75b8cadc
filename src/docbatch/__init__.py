"""Batch document processing engine with background workers and crash recovery."""

__version__ = "0.1.0"
