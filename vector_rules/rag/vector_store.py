"""
Abstract similarity index with in-memory, SQLite and Chroma backends.

Every backend stores one vector per entity (rule id) tagged with a category
(rule type id) and ranks entities by cosine similarity against a query
vector. The category filter is applied before ranking, so ``limit`` counts
only in-category candidates. Ties are broken by ascending entity id.

Follows the abstract base + factory function pattern.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Sequence

import numpy as np

from vector_rules.errors import (
    DimensionMismatch,
    InvalidInput,
    RuleNotFound,
    RuleServiceError,
    StorageUnavailable,
)

if TYPE_CHECKING:
    from vector_rules.storage.database import Database

LOG = logging.getLogger("rag.vector_store")

DEFAULT_MAX_LIMIT = 100


@dataclass
class VectorSearchResult:
    """A single ranked hit from the index."""

    id: int
    score: float
    category: Optional[int] = None


def rank_by_cosine(
    ids: Sequence[int],
    categories: Sequence[Optional[int]],
    matrix: np.ndarray,
    query: np.ndarray,
    limit: int,
) -> List[VectorSearchResult]:
    """
    Exact cosine ranking of ``matrix`` rows against ``query``.

    Rows with zero norm are not candidates. Order is descending score, then
    ascending id.
    """
    if len(ids) == 0:
        return []

    norms = np.linalg.norm(matrix, axis=1)
    valid = norms > 0.0
    if not valid.all():
        ids = [i for i, ok in zip(ids, valid) if ok]
        categories = [c for c, ok in zip(categories, valid) if ok]
        matrix = matrix[valid]
        norms = norms[valid]
        if len(ids) == 0:
            return []

    scores = (matrix @ query) / (norms * float(np.linalg.norm(query)))
    scores = np.clip(scores, -1.0, 1.0)
    order = np.lexsort((np.asarray(ids), -scores))[:limit]
    return [
        VectorSearchResult(id=int(ids[i]), score=float(scores[i]), category=categories[i])
        for i in order
    ]


class VectorStore(ABC):
    """
    Abstract interface for vector storage and similarity search.

    Implementations persist (entity id, vector, category) triples and
    support nearest-neighbor queries by cosine similarity.
    """

    def __init__(self, dimension: int, max_limit: int = DEFAULT_MAX_LIMIT) -> None:
        self._dim = dimension
        self._max_limit = max_limit

    @property
    def dimension(self) -> int:
        return self._dim

    @property
    def max_limit(self) -> int:
        return self._max_limit

    def _check_vector(self, vector: Sequence[float]) -> np.ndarray:
        if len(vector) != self._dim:
            raise DimensionMismatch(
                f"vector has {len(vector)} dimensions, index expects {self._dim}",
                expected=self._dim,
                actual=len(vector),
            )
        arr = np.asarray(vector, dtype=np.float64)
        if not np.all(np.isfinite(arr)) or float(np.linalg.norm(arr)) == 0.0:
            raise InvalidInput("vector must be finite with non-zero norm")
        return arr

    def _check_limit(self, limit: int) -> None:
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidInput(f"limit must be an integer, got {limit!r}")
        if limit < 1 or limit > self._max_limit:
            raise InvalidInput(f"limit must be between 1 and {self._max_limit}, got {limit}")

    @abstractmethod
    def upsert(self, entity_id: int, vector: Sequence[float], category: Optional[int] = None) -> None:
        """Store or replace the vector associated with an entity."""

    @abstractmethod
    def remove(self, entity_id: int) -> None:
        """Remove an entity's vector. No error if absent."""

    @abstractmethod
    def query(
        self,
        vector: Sequence[float],
        category: Optional[int] = None,
        limit: int = 10,
    ) -> List[VectorSearchResult]:
        """Return up to ``limit`` entities most similar to ``vector``."""

    @abstractmethod
    def ids(self) -> set[int]:
        """Return the ids of all entities that currently have a vector."""

    @abstractmethod
    def count(self) -> int:
        """Return the number of stored vectors."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every stored vector."""

    def close(self) -> None:
        """Release resources. Override if needed."""
        pass


class InMemoryVectorStore(VectorStore):
    """
    Exact in-process index (numpy brute-force cosine).

    Not persistent: the service rebuilds it from stored rule rows at startup.
    """

    def __init__(self, dimension: int, max_limit: int = DEFAULT_MAX_LIMIT) -> None:
        super().__init__(dimension, max_limit)
        self._lock = threading.Lock()
        self._vectors: Dict[int, np.ndarray] = {}
        self._categories: Dict[int, Optional[int]] = {}

    def upsert(self, entity_id: int, vector: Sequence[float], category: Optional[int] = None) -> None:
        arr = self._check_vector(vector)
        with self._lock:
            # Replace, never mutate in place.
            self._vectors[entity_id] = arr
            self._categories[entity_id] = category

    def remove(self, entity_id: int) -> None:
        with self._lock:
            self._vectors.pop(entity_id, None)
            self._categories.pop(entity_id, None)

    def query(
        self,
        vector: Sequence[float],
        category: Optional[int] = None,
        limit: int = 10,
    ) -> List[VectorSearchResult]:
        self._check_limit(limit)
        q = self._check_vector(vector)
        with self._lock:
            ids = [
                eid for eid in self._vectors
                if category is None or self._categories[eid] == category
            ]
            if not ids:
                return []
            categories = [self._categories[eid] for eid in ids]
            matrix = np.vstack([self._vectors[eid] for eid in ids])
        return rank_by_cosine(ids, categories, matrix, q, limit)

    def ids(self) -> set[int]:
        with self._lock:
            return set(self._vectors)

    def count(self) -> int:
        with self._lock:
            return len(self._vectors)

    def clear(self) -> None:
        with self._lock:
            self._vectors.clear()
            self._categories.clear()


class SQLiteVectorStore(VectorStore):
    """
    Index over the ``rules.embedding_json`` column.

    The vector lives in the rule row itself, so a write issued inside an open
    ``Database.transaction()`` commits or rolls back together with the row.
    The category filter is a SQL pre-filter on ``rule_type_id``; the
    ``category`` argument to ``upsert`` is ignored because the row already
    carries it.
    """

    def __init__(self, database: "Database", dimension: int, max_limit: int = DEFAULT_MAX_LIMIT) -> None:
        super().__init__(dimension, max_limit)
        self._db = database

    def upsert(self, entity_id: int, vector: Sequence[float], category: Optional[int] = None) -> None:
        arr = self._check_vector(vector)
        with self._db.transaction():
            cur = self._db.execute(
                "UPDATE rules SET embedding_json = ? WHERE id = ?",
                (json.dumps(arr.tolist()), entity_id),
                action="upsert vector",
            )
            if cur.rowcount == 0:
                raise RuleNotFound(f"rule {entity_id} not found")

    def remove(self, entity_id: int) -> None:
        self._db.execute(
            "UPDATE rules SET embedding_json = NULL WHERE id = ?",
            (entity_id,),
            action="remove vector",
        )

    def query(
        self,
        vector: Sequence[float],
        category: Optional[int] = None,
        limit: int = 10,
    ) -> List[VectorSearchResult]:
        self._check_limit(limit)
        q = self._check_vector(vector)

        sql = "SELECT id, rule_type_id, embedding_json FROM rules WHERE embedding_json IS NOT NULL"
        params: List[Any] = []
        if category is not None:
            sql += " AND rule_type_id = ?"
            params.append(category)
        rows = self._db.fetchall(sql, params, action="query vectors")

        ids: List[int] = []
        categories: List[Optional[int]] = []
        vectors: List[List[float]] = []
        for row in rows:
            vec = json.loads(row["embedding_json"])
            if len(vec) != self._dim:
                LOG.warning("Skipping rule %d: stored vector has %d dimensions", row["id"], len(vec))
                continue
            ids.append(row["id"])
            categories.append(row["rule_type_id"])
            vectors.append(vec)
        if not ids:
            return []
        return rank_by_cosine(ids, categories, np.asarray(vectors, dtype=np.float64), q, limit)

    def ids(self) -> set[int]:
        rows = self._db.fetchall(
            "SELECT id FROM rules WHERE embedding_json IS NOT NULL", action="list vectors"
        )
        return {r["id"] for r in rows}

    def count(self) -> int:
        row = self._db.fetchone(
            "SELECT COUNT(*) AS n FROM rules WHERE embedding_json IS NOT NULL", action="count vectors"
        )
        return int(row["n"])

    def clear(self) -> None:
        self._db.execute("UPDATE rules SET embedding_json = NULL", action="clear vectors")


# Chroma metadata values cannot be None.
_NO_CATEGORY = -1


class ChromaVectorStore(VectorStore):
    """
    Chroma-based vector store.

    Operates in three modes:
    - Embedded (PersistentClient): no server, local persistence
    - Client/server (HttpClient): connects to a running chroma service
    - Ephemeral (Client): in-memory, for tests

    HNSW search is approximate; hits are re-sorted by (score, id) so the
    order is deterministic for identical inputs.
    """

    def __init__(
        self,
        dimension: int,
        max_limit: int = DEFAULT_MAX_LIMIT,
        collection_name: str = "rules",
        persist_directory: Optional[str] = None,
        chroma_host: Optional[str] = None,
        chroma_port: int = 8000,
    ) -> None:
        super().__init__(dimension, max_limit)
        import chromadb

        with self._guard("connect"):
            if chroma_host:
                self._client = chromadb.HttpClient(host=chroma_host, port=chroma_port)
                LOG.info("Chroma: connected to %s:%d", chroma_host, chroma_port)
            elif persist_directory:
                Path(persist_directory).mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=persist_directory)
                LOG.info("Chroma: persistent at %s", persist_directory)
            else:
                self._client = chromadb.Client()
                LOG.info("Chroma: ephemeral (in-memory)")

            self._collection = self._client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": "cosine"},
            )

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except RuleServiceError:
            raise
        except Exception as exc:
            raise StorageUnavailable(f"chroma {action} failed: {exc}") from exc

    def upsert(self, entity_id: int, vector: Sequence[float], category: Optional[int] = None) -> None:
        arr = self._check_vector(vector)
        with self._guard("upsert"):
            self._collection.upsert(
                ids=[str(entity_id)],
                embeddings=[arr.tolist()],
                metadatas=[{"rule_type_id": _NO_CATEGORY if category is None else int(category)}],
            )

    def remove(self, entity_id: int) -> None:
        with self._guard("delete"):
            self._collection.delete(ids=[str(entity_id)])

    def query(
        self,
        vector: Sequence[float],
        category: Optional[int] = None,
        limit: int = 10,
    ) -> List[VectorSearchResult]:
        self._check_limit(limit)
        q = self._check_vector(vector)

        with self._guard("query"):
            n = min(limit, self._collection.count())
            if n == 0:
                return []

            kwargs: Dict[str, Any] = {
                "query_embeddings": [q.tolist()],
                "n_results": n,
                "include": ["distances", "metadatas"],
            }
            if category is not None:
                kwargs["where"] = {"rule_type_id": int(category)}

            results = self._collection.query(**kwargs)

        out: List[VectorSearchResult] = []
        if results and results["ids"]:
            for i, doc_id in enumerate(results["ids"][0]):
                distance = results["distances"][0][i]
                meta = results["metadatas"][0][i] if results.get("metadatas") else {}
                rule_type_id = (meta or {}).get("rule_type_id", _NO_CATEGORY)
                out.append(
                    VectorSearchResult(
                        id=int(doc_id),
                        score=1.0 - float(distance),  # cosine distance → similarity
                        category=None if rule_type_id == _NO_CATEGORY else rule_type_id,
                    )
                )

        out.sort(key=lambda r: (-r.score, r.id))
        return out

    def ids(self) -> set[int]:
        with self._guard("get"):
            return {int(i) for i in self._collection.get(include=[])["ids"]}

    def count(self) -> int:
        with self._guard("count"):
            return self._collection.count()

    def clear(self) -> None:
        with self._guard("clear"):
            ids = self._collection.get(include=[])["ids"]
            if ids:
                self._collection.delete(ids=ids)


def build_vector_store(
    backend: str = "sqlite",
    dimension: int = 1536,
    max_limit: int = DEFAULT_MAX_LIMIT,
    **kwargs: Any,
) -> VectorStore:
    """
    Factory: create a VectorStore of the requested type.

    Args:
        backend: "sqlite" (requires ``database=``), "memory" or "chroma"
        dimension: Configured vector dimensionality
        max_limit: Largest accepted ``limit`` for queries
        **kwargs: Backend-specific configuration

    Returns:
        VectorStore instance

    Raises:
        ValueError: Unknown backend or missing backend argument
    """
    if backend == "sqlite":
        database = kwargs.pop("database", None)
        if database is None:
            raise ValueError("The 'sqlite' vector store backend requires database=")
        return SQLiteVectorStore(database, dimension=dimension, max_limit=max_limit)
    elif backend == "memory":
        return InMemoryVectorStore(dimension=dimension, max_limit=max_limit)
    elif backend == "chroma":
        return ChromaVectorStore(dimension=dimension, max_limit=max_limit, **kwargs)
    else:
        raise ValueError(
            f"Unknown vector store backend: {backend!r}. "
            f"Supported: 'sqlite', 'memory', 'chroma'"
        )
