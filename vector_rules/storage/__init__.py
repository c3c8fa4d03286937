"""
Persistent storage layer for vector-rules.

Provides:
- Database: SQLite connection, schema and transactions
- RuleStore: CRUD for rule types and rules (content + embedding)
"""

from vector_rules.storage.database import Database
from vector_rules.storage.rule_store import RuleStore

__all__ = [
    "Database",
    "RuleStore",
]
