"""Fleet Memory - cross-agent memory for multi-agent systems

Agents remember in two tiers:

    SESSION CONTEXT (Redis, TTL-bound)
      Per-agent, per-session working state: topic, entities, decisions,
      outcome. Bounded recency list per agent. Expires unless rewritten.

    KNOWLEDGE (SQLAlchemy, durable)
      Deduplicated facts keyed by (domain, concept, rule) with confidence,
      usage counts and an embedding vector for similarity search.

The MemoryCoordinator ties both together with the embedding index.

Usage:
    from fleet_memory import MemoryConfig, MemoryCoordinator, Context

    memory = MemoryCoordinator.from_config(MemoryConfig.from_env())
    ctx = Context("db-agent", "s1", topic="Index Optimization", entities=["SQL Server", "Index"])
    memory.store_context("db-agent", "s1", ctx)
    memory.learn_from_interaction("db-agent", ctx, "60% faster", 0.95)
    memory.query_knowledge("index performance", domain="db-agent")
"""

from .config import EmbeddingConfig, ManagementConfig, MemoryConfig, VectorIndexConfig
from .context_store import SessionContextStore
from .coordinator import MemoryCoordinator
from .embeddings import (
    EmbeddingProvider,
    FunctionEmbedder,
    HashingEmbedder,
    SentenceTransformerEmbedder,
    resolve_provider,
)
from .errors import (
    FleetMemoryError,
    InvalidInput,
    NotFound,
    OperationCancelled,
    RedisStartupError,
    StorageFailure,
)
from .knowledge_store import KnowledgeStore
from .models import Context, DistanceMetric, Knowledge, KnowledgeStatus, SimilarityMatch
from .redis_factory import create_redis_client
from .telemetry import MemoryMetrics
from .vector_index import EmbeddingIndex

__version__ = "0.1.0"

__all__ = [
    'Context',
    'DistanceMetric',
    'EmbeddingConfig',
    'EmbeddingIndex',
    'EmbeddingProvider',
    'FleetMemoryError',
    'FunctionEmbedder',
    'HashingEmbedder',
    'InvalidInput',
    'Knowledge',
    'KnowledgeStatus',
    'KnowledgeStore',
    'ManagementConfig',
    'MemoryConfig',
    'MemoryCoordinator',
    'MemoryMetrics',
    'NotFound',
    'OperationCancelled',
    'RedisStartupError',
    'SentenceTransformerEmbedder',
    'SessionContextStore',
    'SimilarityMatch',
    'StorageFailure',
    'VectorIndexConfig',
    'create_redis_client',
    'resolve_provider',
]
