"""Constants and Redis key patterns for fleet memory."""


class RedisKeys:
    """Redis key patterns, parameterised by the configured prefix."""

    CONTEXT = "context"
    CONTEXTS = "contexts"

    def __init__(self, prefix: str = "fleet"):
        self.prefix = prefix

    def context(self, agent_id: str, session_id: str) -> str:
        return f"{self.prefix}:{self.CONTEXT}:{agent_id}:{session_id}"

    def agent_contexts(self, agent_id: str) -> str:
        return f"{self.prefix}:{self.CONTEXTS}:{agent_id}"

    def context_pattern(self) -> str:
        return f"{self.prefix}:{self.CONTEXT}:*"

    def agent_contexts_pattern(self) -> str:
        return f"{self.prefix}:{self.CONTEXTS}:*"

    def agent_from_list_key(self, key: str) -> str:
        return key[len(self.agent_contexts("")):]


class Tags:
    """Tags the memory subsystem attaches itself."""
    SUMMARIZED = "summarized"
    SHARED = "shared"
    LEARNED = "learned"
    INTERACTION = "interaction"

    @staticmethod
    def shared_from(agent_id: str) -> str:
        return f"from_{agent_id}"


class SessionPrefix:
    SHARED = "shared_"


class Defaults:
    """Default configuration values."""
    KEY_PREFIX = "fleet"
    REDIS_URL = "redis://localhost:6379"
    DATABASE_URL = "sqlite:///fleet_memory.db"

    SESSION_CONTEXT_TTL = 86400
    MAX_CONTEXT_ITEMS_PER_AGENT = 100
    MIN_KNOWLEDGE_CONFIDENCE = 0.3
    MAX_SIMILAR_KNOWLEDGE_RESULTS = 10
    DEFAULT_SIMILARITY_THRESHOLD = 0.7
    CLEANUP_INTERVAL = 21600

    SUMMARY_ENTITY_LIMIT = 10
    SUMMARY_DECISION_LIMIT = 5
    SUMMARY_CONFIDENCE_DECREMENT = 0.1
    SUMMARY_CONFIDENCE_FLOOR = 0.1
    SHARE_CONFIDENCE_DECAY = 0.9

    EMBEDDING_PROVIDER = "hashing"
    EMBEDDING_DIMENSION = 384
    EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
    DISTANCE_METRIC = "cosine"
    INDEX_TYPE = "in_memory"

    RECOMMENDATION_ENTITY_QUERIES = 3
    RECOMMENDATION_RESULTS_PER_ENTITY = 2
    MOST_USED_LIMIT = 5
