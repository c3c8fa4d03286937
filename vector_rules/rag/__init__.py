"""
Vector retrieval subsystem.

Provides embedding providers, query aggregation, and the similarity index
abstraction with in-memory, SQLite and Chroma backends.
"""

from __future__ import annotations
