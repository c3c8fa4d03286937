"""
Shared test fixtures and pytest configuration.

Markers:
    @pytest.mark.embedding: requires the sentence-transformers model to be downloadable

Run:
    pytest -m embedding               # only real-model tests
    pytest -m "not embedding"         # fast CI
"""

from typing import Optional

import pytest

from vector_rules.rag.embedding_provider import MockEmbeddingProvider
from vector_rules.rag.vector_store import InMemoryVectorStore, SQLiteVectorStore
from vector_rules.service.rule_service import RuleService
from vector_rules.service.rule_type_service import RuleTypeService
from vector_rules.storage.database import Database
from vector_rules.storage.rule_store import RuleStore

DIM = 64


def _embedding_model_available() -> bool:
    """Check if all-MiniLM-L6-v2 can be loaded (already cached or downloadable)."""
    try:
        from sentence_transformers import SentenceTransformer
        model = SentenceTransformer("all-MiniLM-L6-v2")
        vec = model.encode(["test"])
        return vec.shape[1] == 384
    except Exception:
        return False


# Cache the check at module level so it runs once per session
_EMBEDDING_OK: Optional[bool] = None


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "embedding: requires sentence-transformers model available")


def pytest_collection_modifyitems(config, items):
    """Auto-skip tests whose infrastructure requirements are not met."""
    global _EMBEDDING_OK

    if not any("embedding" in item.keywords for item in items):
        return
    if _EMBEDDING_OK is None:
        _EMBEDDING_OK = _embedding_model_available()

    skip_embedding = pytest.mark.skip(reason="Embedding model not available (all-MiniLM-L6-v2)")
    for item in items:
        if "embedding" in item.keywords and not _EMBEDDING_OK:
            item.add_marker(skip_embedding)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def database(tmp_path):
    """A fresh SQLite database in a temp directory."""
    db = Database(tmp_path / "rules.db")
    yield db
    db.close()


@pytest.fixture
def store(database):
    return RuleStore(database)


@pytest.fixture
def provider():
    return MockEmbeddingProvider(dim=DIM)


@pytest.fixture(params=["sqlite", "memory"])
def index(request, database):
    """Each service test runs against both local index backends."""
    if request.param == "sqlite":
        return SQLiteVectorStore(database, dimension=DIM)
    return InMemoryVectorStore(dimension=DIM)


@pytest.fixture
def service(store, index, provider):
    return RuleService(store, index, provider)


@pytest.fixture
def rule_types(store):
    return RuleTypeService(store)


@pytest.fixture
def seeded(rule_types):
    """Two rule types: security and billing."""
    return {
        "security": rule_types.create_rule_type("security"),
        "billing": rule_types.create_rule_type("billing"),
    }
