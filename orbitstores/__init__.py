"""Replicated key-value, document and event-log stores built on an operation log."""

__version__ = "0.1.0"