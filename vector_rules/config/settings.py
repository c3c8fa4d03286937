"""Configuration management for vector-rules.

Loads settings from environment variables with sensible defaults.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration."""
    provider: str = "mock"  # "mock", "local"
    dimension: int = 1536
    model_name: str = "all-MiniLM-L6-v2"
    cache_size: int = 1024  # 0 = no cache

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        return cls(
            provider=os.getenv("EMBEDDING_PROVIDER", "mock"),
            dimension=int(os.getenv("EMBEDDING_DIMENSION", "1536")),
            model_name=os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            cache_size=int(os.getenv("EMBEDDING_CACHE_SIZE", "1024")),
        )


@dataclass
class StorageConfig:
    """Relational store and vector index configuration."""
    db_path: str = "./data/rules.db"
    vector_store_backend: str = "sqlite"  # "sqlite", "memory", "chroma"
    chroma_persist_dir: str = ""  # empty = ephemeral
    chroma_host: str = ""  # empty = embedded mode
    chroma_port: int = 8000
    collection_name: str = "rules"

    @classmethod
    def from_env(cls) -> "StorageConfig":
        return cls(
            db_path=os.getenv("RULES_DB_PATH", "./data/rules.db"),
            vector_store_backend=os.getenv("VECTOR_STORE_BACKEND", "sqlite"),
            chroma_persist_dir=os.getenv("CHROMA_PERSIST_DIR", ""),
            chroma_host=os.getenv("CHROMA_HOST", ""),
            chroma_port=int(os.getenv("CHROMA_PORT", "8000")),
            collection_name=os.getenv("CHROMA_COLLECTION", "rules"),
        )


@dataclass
class RetrievalConfig:
    """Retrieval bounds."""
    max_results: int = 100
    default_results: int = 10

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        return cls(
            max_results=int(os.getenv("RETRIEVAL_MAX_RESULTS", "100")),
            default_results=int(os.getenv("RETRIEVAL_DEFAULT_RESULTS", "10")),
        )


@dataclass
class AppConfig:
    """Top-level application configuration."""
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    log_level: str = "INFO"
    request_timeout_s: float = 30.0

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            embedding=EmbeddingConfig.from_env(),
            storage=StorageConfig.from_env(),
            retrieval=RetrievalConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            request_timeout_s=float(os.getenv("REQUEST_TIMEOUT_S", "30")),
        )
