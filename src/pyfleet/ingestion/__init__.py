"""Ingestion layer.

This package turns inbound broker and HTTP messages into readings, runs them
through admission, and hands them to the store (or the retry queue when the
store is unavailable).
"""

__all__: list[str] = []
