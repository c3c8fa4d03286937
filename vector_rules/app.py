"""
Wiring: build the storage, index, embedding provider and services from an
``AppConfig``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from vector_rules.config.settings import AppConfig
from vector_rules.rag.embedding_provider import build_embedding_provider
from vector_rules.rag.vector_store import VectorStore, build_vector_store
from vector_rules.service.rule_service import RuleService
from vector_rules.service.rule_type_service import RuleTypeService
from vector_rules.storage.database import Database
from vector_rules.storage.rule_store import RuleStore

LOG = logging.getLogger("vector_rules.app")


@dataclass
class Services:
    database: Database
    index: VectorStore
    rules: RuleService
    rule_types: RuleTypeService

    def close(self) -> None:
        self.index.close()
        self.database.close()


def _index_kwargs(config: AppConfig, database: Database) -> dict:
    backend = config.storage.vector_store_backend
    if backend == "sqlite":
        return {"database": database}
    if backend == "chroma":
        return {
            "collection_name": config.storage.collection_name,
            "persist_directory": config.storage.chroma_persist_dir or None,
            "chroma_host": config.storage.chroma_host or None,
            "chroma_port": config.storage.chroma_port,
        }
    return {}


def build_services(config: AppConfig) -> Services:
    """Create every collaborator and return the ready-to-use services."""
    database = Database(config.storage.db_path)
    try:
        store = RuleStore(database)
        provider = build_embedding_provider(
            backend=config.embedding.provider,
            dimension=config.embedding.dimension,
            model_name=config.embedding.model_name,
            cache_size=config.embedding.cache_size,
        )

        backend = config.storage.vector_store_backend
        index = build_vector_store(
            backend,
            dimension=config.embedding.dimension,
            max_limit=config.retrieval.max_results,
            **_index_kwargs(config, database),
        )

        rules = RuleService(store, index, provider, max_results=config.retrieval.max_results)
        if backend != "sqlite":
            # The rule rows are the durable copy of every vector.
            rules.rebuild_index()
    except Exception:
        database.close()
        raise

    LOG.info("Services ready (index=%s, provider=%s)", backend, config.embedding.provider)
    return Services(
        database=database,
        index=index,
        rules=rules,
        rule_types=RuleTypeService(store, max_page=config.retrieval.max_results),
    )
