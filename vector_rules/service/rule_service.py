"""
Rule retrieval and write orchestration.

Retrieval: embed every query → average → rank stored vectors → hydrate
rule rows, keeping the index order.

Writes: the embedding is computed before anything is persisted. The row and
its vector are then written inside one database transaction; a failure after
the index write restores the previous index entry, so content and vector
never disagree once the write is acknowledged.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional

from vector_rules.errors import (
    DimensionMismatch,
    EmbeddingFailed,
    InvalidInput,
    OperationCancelled,
    RuleServiceError,
    RuleTypeNotFound,
)
from vector_rules.models import Rule, RuleMatch
from vector_rules.rag.aggregate import average_embeddings
from vector_rules.rag.embedding_provider import EmbeddingProvider
from vector_rules.rag.vector_store import VectorStore
from vector_rules.storage.database import Database
from vector_rules.storage.rule_store import RuleStore

LOG = logging.getLogger("service.rule_service")

DEFAULT_MAX_RESULTS = 100


def content_to_text(content: Any) -> str:
    """
    Textual form of a rule payload used for embedding.

    Strings are used as-is; any other JSON value becomes canonical JSON so
    equal payloads always embed identically.
    """
    if content is None:
        raise InvalidInput("content is required")
    if isinstance(content, str):
        return content
    try:
        return json.dumps(content, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"content is not JSON serializable: {exc}") from exc


def check_cancelled(cancel: Optional[threading.Event], action: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"{action} cancelled")


def validate_page(limit: int, offset: int, max_limit: int) -> None:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= max_limit:
        raise InvalidInput(f"limit must be between 1 and {max_limit}, got {limit!r}")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise InvalidInput(f"offset must be a non-negative integer, got {offset!r}")


class RuleService:
    """
    Stores rules with their embeddings and retrieves the ones most similar
    to a set of free-text queries.

    Usage::

        service = RuleService(store, index, MockEmbeddingProvider(dim=1536))
        service.create_rule("security", {"description": "rotate keys"})
        matches = service.retrieve_similar(["key rotation"], n=5)
    """

    def __init__(
        self,
        store: RuleStore,
        index: VectorStore,
        embedding_provider: EmbeddingProvider,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> None:
        if embedding_provider.dimension() != index.dimension:
            raise DimensionMismatch(
                f"embedding provider produces {embedding_provider.dimension()}-d vectors, "
                f"index expects {index.dimension}",
                expected=index.dimension,
                actual=embedding_provider.dimension(),
            )
        self._store = store
        self._db = store.database
        self._index = index
        self._embed = embedding_provider
        self._max_results = max_results

    @property
    def max_results(self) -> int:
        return self._max_results

    # ── Retrieval ─────────────────────────────────────────────────────

    def retrieve_similar(
        self,
        queries: List[str],
        rule_type: Optional[str] = None,
        n: int = 10,
        cancel: Optional[threading.Event] = None,
    ) -> List[RuleMatch]:
        """
        Return up to ``n`` rules ranked by similarity to the averaged
        embedding of ``queries``, optionally restricted to one rule type.
        """
        if not queries or isinstance(queries, str):
            raise InvalidInput("queries must be a non-empty list of strings")
        for i, query in enumerate(queries):
            if not isinstance(query, str) or not query.strip():
                raise InvalidInput(f"query {i} is empty")
        if isinstance(n, bool) or not isinstance(n, int) or not 1 <= n <= self._max_results:
            raise InvalidInput(f"n must be between 1 and {self._max_results}, got {n!r}")

        category: Optional[int] = None
        if rule_type is not None:
            try:
                category = self._store.get_rule_type_by_name(rule_type).id
            except RuleTypeNotFound:
                LOG.debug("Unknown rule type %r: no candidates", rule_type)
                return []

        check_cancelled(cancel, "retrieve")
        vectors = self._embed.embed_batch(list(queries))
        query_vec = average_embeddings(vectors)

        check_cancelled(cancel, "retrieve")
        with self._db.locked():
            hits = self._index.query(query_vec, category=category, limit=n)
            rules = self._store.get_rules([h.id for h in hits])

        matches: List[RuleMatch] = []
        for hit in hits:
            rule = rules.get(hit.id)
            if rule is None:
                # Deleted between the index query and hydration.
                LOG.warning("Dropping index hit for missing rule %d", hit.id)
                continue
            matches.append(RuleMatch(**rule.model_dump(), score=hit.score))

        LOG.debug(
            "Retrieved %d rules for %d queries (type=%s, n=%d)",
            len(matches), len(queries), rule_type, n,
        )
        return matches

    # ── Writes ────────────────────────────────────────────────────────

    def create_rule(
        self,
        rule_type: str,
        content: Any,
        cancel: Optional[threading.Event] = None,
    ) -> Rule:
        """Embed ``content`` and persist it as a new rule of ``rule_type``."""
        text = content_to_text(content)
        rt = self._store.get_rule_type_by_name(rule_type)

        check_cancelled(cancel, "create rule")
        embedding = self._embed_one(text)

        state: dict = {"rule_id": None}
        with _compensating(self._db, lambda: self._index.remove(state["rule_id"]), state):
            with self._db.transaction():
                rule = self._store.create_rule(rt.id, content, embedding)
                state["rule_id"] = rule.id
                self._index.upsert(rule.id, embedding, category=rt.id)
                state["index_written"] = True
                check_cancelled(cancel, "create rule")

        LOG.info("Created rule %d (type=%s)", rule.id, rt.name)
        return rule

    def update_rule(
        self,
        rule_id: int,
        rule_type: str,
        content: Any,
        cancel: Optional[threading.Event] = None,
    ) -> Rule:
        """Replace a rule's type and content; its embedding is recomputed."""
        text = content_to_text(content)
        rt = self._store.get_rule_type_by_name(rule_type)
        self._store.get_rule(rule_id)

        check_cancelled(cancel, "update rule")
        embedding = self._embed_one(text)

        state: dict = {}
        with _compensating(self._db, lambda: self._restore(state["previous"]), state):
            with self._db.transaction():
                state["previous"] = self._store.get_rule(rule_id)
                rule = self._store.update_rule(rule_id, rt.id, content, embedding)
                self._index.upsert(rule_id, embedding, category=rt.id)
                state["index_written"] = True
                check_cancelled(cancel, "update rule")

        LOG.info("Updated rule %d (type=%s)", rule_id, rt.name)
        return rule

    def delete_rule(self, rule_id: int, cancel: Optional[threading.Event] = None) -> None:
        """Delete a rule and its vector."""
        check_cancelled(cancel, "delete rule")

        state: dict = {}
        with _compensating(self._db, lambda: self._restore(state["previous"]), state):
            with self._db.transaction():
                state["previous"] = self._store.get_rule(rule_id)
                self._store.delete_rule(rule_id)
                self._index.remove(rule_id)
                state["index_written"] = True
                check_cancelled(cancel, "delete rule")

        LOG.info("Deleted rule %d", rule_id)

    def reembed_rule(self, rule_id: int, cancel: Optional[threading.Event] = None) -> Rule:
        """Recompute a rule's embedding from its stored content."""
        current = self._store.get_rule(rule_id)

        check_cancelled(cancel, "re-embed rule")
        embedding = self._embed_one(content_to_text(current.content))

        state: dict = {}
        with _compensating(self._db, lambda: self._restore(state["previous"]), state):
            with self._db.transaction():
                state["previous"] = self._store.get_rule(rule_id)
                self._store.update_embedding(rule_id, embedding)
                self._index.upsert(rule_id, embedding, category=state["previous"].ruleTypeId)
                state["index_written"] = True
                check_cancelled(cancel, "re-embed rule")

        return self._store.get_rule(rule_id)

    def rebuild_index(self) -> int:
        """
        Repopulate the index from stored rule rows.

        Vectors of rules that no longer exist are removed. Returns the number
        of indexed rules.
        """
        live: set[int] = set()
        with self._db.locked():
            for rule_id, rule_type_id, embedding in self._store.iter_embeddings():
                self._index.upsert(rule_id, embedding, category=rule_type_id)
                live.add(rule_id)
            for stale in self._index.ids() - live:
                self._index.remove(stale)
        LOG.info("Index rebuilt with %d rules", len(live))
        return len(live)

    # ── Reads ─────────────────────────────────────────────────────────

    def get_rule(self, rule_id: int) -> Rule:
        return self._store.get_rule(rule_id)

    def list_rules(
        self,
        rule_type: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Rule]:
        validate_page(limit, offset, self._max_results)
        return self._store.list_rules(rule_type, limit=limit, offset=offset)

    # ── Internals ─────────────────────────────────────────────────────

    def _embed_one(self, text: str) -> List[float]:
        try:
            embedding = self._embed.embed(text)
        except RuleServiceError:
            raise
        except Exception as exc:
            raise EmbeddingFailed(f"failed to generate embedding: {exc}") from exc
        if len(embedding) != self._index.dimension:
            raise DimensionMismatch(
                f"embedding has {len(embedding)} dimensions, index expects {self._index.dimension}",
                expected=self._index.dimension,
                actual=len(embedding),
            )
        return embedding

    def _restore(self, previous: Rule) -> None:
        if previous.embedding is None:
            self._index.remove(previous.id)
        else:
            self._index.upsert(previous.id, previous.embedding, category=previous.ruleTypeId)


@contextmanager
def _compensating(database: Database, undo: Callable[[], None], state: dict) -> Iterator[None]:
    """
    Runs ``undo`` when the block fails after the index was written.

    The block records progress in ``state``; the undo only fires once
    ``state["index_written"]`` is set. The database lock is held until the
    undo has run, so readers never rank against a vector whose row was
    rolled back. A failing undo is logged and the original error propagates.
    """
    with database.locked():
        try:
            yield
        except BaseException as exc:
            if state.get("index_written"):
                try:
                    undo()
                except Exception as undo_exc:
                    LOG.error("Index compensation failed after %s: %s", type(exc).__name__, undo_exc)
            raise
