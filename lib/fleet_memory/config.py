"""Memory configuration - schema, loading and validation.

One MemoryConfig is built at startup and passed explicitly to every
component. There is no module-level configuration state.
"""

import json
import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional

from .constants import Defaults
from .errors import InvalidInput
from .models import DistanceMetric
from .security import sanitize_dict


@dataclass
class EmbeddingConfig:
    """Which embedding provider turns text into vectors."""
    provider: str = Defaults.EMBEDDING_PROVIDER
    dimension: int = Defaults.EMBEDDING_DIMENSION
    model_name: str = Defaults.EMBEDDING_MODEL
    provider_version: Optional[str] = None


@dataclass
class VectorIndexConfig:
    distance_metric: str = Defaults.DISTANCE_METRIC
    index_type: str = Defaults.INDEX_TYPE


@dataclass
class ManagementConfig:
    """Retention, ranking and policy knobs."""
    session_context_ttl: int = Defaults.SESSION_CONTEXT_TTL
    max_context_items_per_agent: int = Defaults.MAX_CONTEXT_ITEMS_PER_AGENT
    min_knowledge_confidence: float = Defaults.MIN_KNOWLEDGE_CONFIDENCE
    max_similar_knowledge_results: int = Defaults.MAX_SIMILAR_KNOWLEDGE_RESULTS
    default_similarity_threshold: float = Defaults.DEFAULT_SIMILARITY_THRESHOLD
    cleanup_interval: int = Defaults.CLEANUP_INTERVAL
    summary_entity_limit: int = Defaults.SUMMARY_ENTITY_LIMIT
    summary_decision_limit: int = Defaults.SUMMARY_DECISION_LIMIT
    summary_confidence_decrement: float = Defaults.SUMMARY_CONFIDENCE_DECREMENT
    summary_confidence_floor: float = Defaults.SUMMARY_CONFIDENCE_FLOOR
    share_confidence_decay: float = Defaults.SHARE_CONFIDENCE_DECAY


@dataclass
class MemoryConfig:
    """Complete memory subsystem configuration."""
    redis_url: str = Defaults.REDIS_URL
    database_url: str = Defaults.DATABASE_URL
    key_prefix: str = Defaults.KEY_PREFIX
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    vector_index: VectorIndexConfig = field(default_factory=VectorIndexConfig)
    management: ManagementConfig = field(default_factory=ManagementConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MemoryConfig':
        config = cls(
            redis_url=data.get('redis_url', Defaults.REDIS_URL),
            database_url=data.get('database_url', Defaults.DATABASE_URL),
            key_prefix=data.get('key_prefix', Defaults.KEY_PREFIX),
            embedding=EmbeddingConfig(**data.get('embedding', {})),
            vector_index=VectorIndexConfig(**data.get('vector_index', {})),
            management=ManagementConfig(**data.get('management', {})),
        )
        config.validate()
        return config

    @classmethod
    def load(cls, path: str) -> 'MemoryConfig':
        """Load config from a JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'MemoryConfig':
        """Build config from defaults overridden by environment variables."""
        env = os.environ if environ is None else environ
        config = cls(
            redis_url=env.get('REDIS_URL', Defaults.REDIS_URL),
            database_url=env.get('FLEET_MEMORY_DATABASE_URL', Defaults.DATABASE_URL),
            key_prefix=env.get('FLEET_MEMORY_KEY_PREFIX', Defaults.KEY_PREFIX),
        )
        if 'FLEET_MEMORY_EMBEDDING_PROVIDER' in env:
            config.embedding.provider = env['FLEET_MEMORY_EMBEDDING_PROVIDER']
        if 'FLEET_MEMORY_SESSION_TTL' in env:
            config.management.session_context_ttl = int(env['FLEET_MEMORY_SESSION_TTL'])
        if 'FLEET_MEMORY_MIN_CONFIDENCE' in env:
            config.management.min_knowledge_confidence = float(env['FLEET_MEMORY_MIN_CONFIDENCE'])
        config.validate()
        return config

    def validate(self) -> None:
        m = self.management
        if not self.key_prefix:
            raise InvalidInput("key_prefix cannot be empty")
        if m.session_context_ttl <= 0:
            raise InvalidInput("session_context_ttl must be positive")
        if m.max_context_items_per_agent <= 0:
            raise InvalidInput("max_context_items_per_agent must be positive")
        if m.max_similar_knowledge_results <= 0:
            raise InvalidInput("max_similar_knowledge_results must be positive")
        for name in ('min_knowledge_confidence', 'default_similarity_threshold',
                     'summary_confidence_decrement', 'summary_confidence_floor',
                     'share_confidence_decay'):
            value = getattr(m, name)
            if not 0.0 <= value <= 1.0:
                raise InvalidInput(f"{name} must be between 0.0 and 1.0, got {value}")
        if self.embedding.dimension <= 0:
            raise InvalidInput("embedding dimension must be positive")
        DistanceMetric.parse(self.vector_index.distance_metric)

    def to_dict(self) -> Dict[str, Any]:
        """Report form with credentials masked."""
        return sanitize_dict(asdict(self))
