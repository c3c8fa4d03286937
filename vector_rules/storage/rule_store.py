"""
Relational CRUD for rule types and rules.

Content is stored verbatim as JSON text and never interpreted here. The
embedding column is written together with the content it was computed from.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Iterator, Optional

from vector_rules.errors import InvalidInput, RuleNotFound, RuleTypeNotFound
from vector_rules.models import Rule, RuleType
from vector_rules.storage.database import Database, utc_now

LOG = logging.getLogger("storage.rule_store")

_RULE_COLUMNS = (
    "r.id, r.rule_type_id, r.content_json, r.embedding_json, "
    "r.created_at, r.updated_at, rt.name AS rule_type_name"
)


def _dump_content(content: Any) -> str:
    try:
        return json.dumps(content, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"content is not JSON serializable: {exc}") from exc


def _dump_embedding(embedding: Optional[list[float]]) -> Optional[str]:
    if embedding is None:
        return None
    return json.dumps([float(v) for v in embedding])


def _row_to_rule_type(row: sqlite3.Row) -> RuleType:
    return RuleType(
        id=row["id"],
        name=row["name"],
        createdAt=datetime.fromisoformat(row["created_at"]),
        updatedAt=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_rule(row: sqlite3.Row, with_embedding: bool = True) -> Rule:
    embedding = None
    if with_embedding and row["embedding_json"] is not None:
        embedding = json.loads(row["embedding_json"])
    return Rule(
        id=row["id"],
        ruleTypeId=row["rule_type_id"],
        content=json.loads(row["content_json"]),
        embedding=embedding,
        createdAt=datetime.fromisoformat(row["created_at"]),
        updatedAt=datetime.fromisoformat(row["updated_at"]),
        ruleTypeName=row["rule_type_name"],
    )


class RuleStore:
    """SQLite-backed storage for rule types and rules."""

    def __init__(self, database: Database) -> None:
        self._db = database

    @property
    def database(self) -> Database:
        return self._db

    # ── Rule types ────────────────────────────────────────────────────

    def create_rule_type(self, name: str) -> RuleType:
        now = utc_now()
        with self._db.transaction():
            cur = self._db.execute(
                "INSERT INTO rule_types (name, created_at, updated_at) VALUES (?, ?, ?)",
                (name, now, now),
                action="create rule type",
            )
            rule_type_id = cur.lastrowid
        LOG.info("Created rule type %d (%s)", rule_type_id, name)
        return self.get_rule_type(rule_type_id)

    def get_rule_type(self, rule_type_id: int) -> RuleType:
        row = self._db.fetchone(
            "SELECT id, name, created_at, updated_at FROM rule_types WHERE id = ?",
            (rule_type_id,),
            action="get rule type",
        )
        if row is None:
            raise RuleTypeNotFound(f"rule type {rule_type_id} not found")
        return _row_to_rule_type(row)

    def get_rule_type_by_name(self, name: str) -> RuleType:
        row = self._db.fetchone(
            "SELECT id, name, created_at, updated_at FROM rule_types WHERE name = ?",
            (name,),
            action="get rule type by name",
        )
        if row is None:
            raise RuleTypeNotFound(f"rule type {name!r} not found")
        return _row_to_rule_type(row)

    def update_rule_type(self, rule_type_id: int, name: str) -> RuleType:
        with self._db.transaction():
            cur = self._db.execute(
                "UPDATE rule_types SET name = ?, updated_at = ? WHERE id = ?",
                (name, utc_now(), rule_type_id),
                action="update rule type",
            )
            if cur.rowcount == 0:
                raise RuleTypeNotFound(f"rule type {rule_type_id} not found")
        return self.get_rule_type(rule_type_id)

    def delete_rule_type(self, rule_type_id: int) -> None:
        with self._db.transaction():
            cur = self._db.execute(
                "DELETE FROM rule_types WHERE id = ?", (rule_type_id,), action="delete rule type"
            )
            if cur.rowcount == 0:
                raise RuleTypeNotFound(f"rule type {rule_type_id} not found")
        LOG.info("Deleted rule type %d", rule_type_id)

    def list_rule_types(self, limit: int = 10, offset: int = 0) -> list[RuleType]:
        rows = self._db.fetchall(
            "SELECT id, name, created_at, updated_at FROM rule_types "
            "ORDER BY name ASC LIMIT ? OFFSET ?",
            (limit, offset),
            action="list rule types",
        )
        return [_row_to_rule_type(r) for r in rows]

    def count_rules_for_type(self, rule_type_id: int) -> int:
        row = self._db.fetchone(
            "SELECT COUNT(*) AS n FROM rules WHERE rule_type_id = ?",
            (rule_type_id,),
            action="count rules",
        )
        return int(row["n"])

    # ── Rules ─────────────────────────────────────────────────────────

    def create_rule(self, rule_type_id: int, content: Any, embedding: list[float]) -> Rule:
        content_json = _dump_content(content)
        now = utc_now()
        with self._db.transaction():
            cur = self._db.execute(
                "INSERT INTO rules (rule_type_id, content_json, embedding_json, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (rule_type_id, content_json, _dump_embedding(embedding), now, now),
            )
            return self.get_rule(cur.lastrowid)

    def get_rule(self, rule_id: int) -> Rule:
        row = self._db.fetchone(
            f"SELECT {_RULE_COLUMNS} FROM rules r "
            "JOIN rule_types rt ON r.rule_type_id = rt.id WHERE r.id = ?",
            (rule_id,),
            action="get rule",
        )
        if row is None:
            raise RuleNotFound(f"rule {rule_id} not found")
        return _row_to_rule(row)

    def get_rules(self, rule_ids: list[int]) -> dict[int, Rule]:
        """Bulk-load rules (without embeddings) keyed by id. Missing ids are absent."""
        if not rule_ids:
            return {}
        placeholders = ", ".join("?" for _ in rule_ids)
        rows = self._db.fetchall(
            f"SELECT {_RULE_COLUMNS} FROM rules r "
            f"JOIN rule_types rt ON r.rule_type_id = rt.id WHERE r.id IN ({placeholders})",
            tuple(rule_ids),
            action="get rules",
        )
        return {r["id"]: _row_to_rule(r, with_embedding=False) for r in rows}

    def update_rule(
        self,
        rule_id: int,
        rule_type_id: int,
        content: Any,
        embedding: list[float],
    ) -> Rule:
        content_json = _dump_content(content)
        with self._db.transaction():
            cur = self._db.execute(
                "UPDATE rules SET rule_type_id = ?, content_json = ?, embedding_json = ?, "
                "updated_at = ? WHERE id = ?",
                (rule_type_id, content_json, _dump_embedding(embedding), utc_now(), rule_id),
            )
            if cur.rowcount == 0:
                raise RuleNotFound(f"rule {rule_id} not found")
            return self.get_rule(rule_id)

    def update_embedding(self, rule_id: int, embedding: Optional[list[float]]) -> None:
        with self._db.transaction():
            cur = self._db.execute(
                "UPDATE rules SET embedding_json = ?, updated_at = ? WHERE id = ?",
                (_dump_embedding(embedding), utc_now(), rule_id),
            )
            if cur.rowcount == 0:
                raise RuleNotFound(f"rule {rule_id} not found")

    def delete_rule(self, rule_id: int) -> None:
        with self._db.transaction():
            cur = self._db.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
            if cur.rowcount == 0:
                raise RuleNotFound(f"rule {rule_id} not found")

    def list_rules(
        self,
        rule_type: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[Rule]:
        sql = f"SELECT {_RULE_COLUMNS} FROM rules r JOIN rule_types rt ON r.rule_type_id = rt.id"
        params: list[Any] = []
        if rule_type is not None:
            sql += " WHERE rt.name = ?"
            params.append(rule_type)
        sql += " ORDER BY r.created_at DESC, r.id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        rows = self._db.fetchall(sql, params, action="list rules")
        return [_row_to_rule(r, with_embedding=False) for r in rows]

    def iter_embeddings(self) -> Iterator[tuple[int, int, list[float]]]:
        """Yield (rule_id, rule_type_id, embedding) for every embedded rule."""
        rows = self._db.fetchall(
            "SELECT id, rule_type_id, embedding_json FROM rules "
            "WHERE embedding_json IS NOT NULL ORDER BY id",
            action="scan embeddings",
        )
        for row in rows:
            yield row["id"], row["rule_type_id"], json.loads(row["embedding_json"])
