"""Session Context Store - short-lived per-agent contexts in Redis

Each context is a JSON string under {prefix}:context:{agent}:{session} with a
write-driven TTL. A bounded list {prefix}:contexts:{agent} holds the agent's
session ids, newest first, each at most once.
"""

import json
from datetime import timedelta
from typing import Callable, Iterator, List, Optional, TypeVar, Union

import redis

from .config import MemoryConfig
from .constants import RedisKeys, Tags
from .errors import NotFound, StorageFailure, require
from .models import Context, utc_now
from .security import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class SessionContextStore:
    """Per-agent session contexts over a redis-py client.

    The client must be created with decode_responses=True.
    """

    def __init__(self, redis_client: redis.Redis, config: Optional[MemoryConfig] = None):
        self.redis = redis_client
        self._config = config or MemoryConfig()
        self._keys = RedisKeys(self._config.key_prefix)

    @property
    def ttl(self) -> int:
        return self._config.management.session_context_ttl

    @property
    def max_items(self) -> int:
        return self._config.management.max_context_items_per_agent

    def _call(self, operation: str, key: str, func: Callable[[], T]) -> T:
        try:
            return func()
        except redis.RedisError as e:
            logger.error("Failed to %s for %s: %s", operation, key, str(e))
            raise StorageFailure(operation, str(e), key) from e

    def _decode(self, key: str, data: Optional[str]) -> Optional[Context]:
        if data is None:
            return None
        try:
            return Context.from_dict(json.loads(data))
        except (ValueError, TypeError) as e:
            logger.error("Failed to decode context %s: %s", key, str(e))
            raise StorageFailure("decode context", str(e), key) from e

    def store(self, agent_id: str, session_id: str, context: Context) -> None:
        """Upsert the context and move session_id to the front of the recency list.

        Stamps the context with the write time and the given identifiers.
        """
        require(agent_id, "agent_id")
        require(session_id, "session_id")

        context.agent_id = agent_id
        context.session_id = session_id
        context.timestamp = utc_now()
        context.validate()

        key = self._keys.context(agent_id, session_id)
        list_key = self._keys.agent_contexts(agent_id)
        payload = json.dumps(context.to_dict())

        def write():
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(key, payload, ex=self.ttl)
            pipe.lrem(list_key, 0, session_id)
            pipe.lpush(list_key, session_id)
            pipe.ltrim(list_key, 0, self.max_items - 1)
            pipe.expire(list_key, self.ttl)
            pipe.execute()

        self._call("store context", key, write)
        logger.debug("Stored context for agent: %s, session: %s", agent_id, session_id)

    def update(self, agent_id: str, session_id: str, context: Context) -> None:
        """Full replace; same as store."""
        self.store(agent_id, session_id, context)

    def get(self, agent_id: str, session_id: str) -> Optional[Context]:
        require(agent_id, "agent_id")
        require(session_id, "session_id")

        key = self._keys.context(agent_id, session_id)
        context = self._decode(key, self._call("get context", key, lambda: self.redis.get(key)))
        if context is None:
            logger.debug("No context found for agent: %s, session: %s", agent_id, session_id)
        return context

    def _session_ids(self, agent_id: str) -> List[str]:
        list_key = self._keys.agent_contexts(agent_id)
        return self._call("read recency list", list_key, lambda: self.redis.lrange(list_key, 0, -1))

    def _load_sessions(self, agent_id: str, session_ids: List[str]) -> List[Context]:
        if not session_ids:
            return []
        keys = [self._keys.context(agent_id, s) for s in session_ids]
        values = self._call("get contexts", self._keys.agent_contexts(agent_id), lambda: self.redis.mget(keys))
        return [c for c in (self._decode(k, v) for k, v in zip(keys, values)) if c is not None]

    def get_recent(self, agent_id: str, window: Union[timedelta, float]) -> List[Context]:
        """Contexts written within the window, newest first."""
        require(agent_id, "agent_id")
        if not isinstance(window, timedelta):
            window = timedelta(seconds=window)

        cutoff = utc_now() - window
        contexts = [c for c in self._load_sessions(agent_id, self._session_ids(agent_id)) if c.timestamp >= cutoff]
        contexts.sort(key=lambda c: c.timestamp, reverse=True)

        logger.debug("Retrieved %d recent contexts for agent: %s", len(contexts), agent_id)
        return contexts

    def get_agent_contexts(self, agent_id: str, topic: Optional[str] = None, max_results: int = 100) -> List[Context]:
        """Live contexts in recency order, optionally filtered by topic or tag."""
        require(agent_id, "agent_id")

        contexts = self._load_sessions(agent_id, self._session_ids(agent_id))
        if topic:
            needle = topic.lower()
            contexts = [
                c for c in contexts
                if needle in (c.topic or "").lower() or any(needle in t.lower() for t in c.tags)
            ]
        return contexts[:max_results]

    def delete(self, agent_id: str, session_id: str) -> bool:
        """Remove the context and its recency list entry. True if it existed."""
        require(agent_id, "agent_id")
        require(session_id, "session_id")

        key = self._keys.context(agent_id, session_id)
        list_key = self._keys.agent_contexts(agent_id)

        def remove():
            pipe = self.redis.pipeline(transaction=True)
            pipe.delete(key)
            pipe.lrem(list_key, 0, session_id)
            return pipe.execute()

        deleted, _ = self._call("delete context", key, remove)
        logger.debug("Deleted context for agent: %s, session: %s", agent_id, session_id)
        return bool(deleted)

    def summarize(self, agent_id: str, session_id: str) -> Context:
        """Compact a context in place and return the compacted version.

        Keeps the first entities and the last decisions, lowers confidence by
        a fixed step (never below the floor) and records the original counts.
        """
        context = self.get(agent_id, session_id)
        if context is None:
            raise NotFound(f"Context not found for agent: {agent_id}, session: {session_id}")

        m = self._config.management
        summarized = context.copy()
        summarized.entities = context.entities[:m.summary_entity_limit]
        summarized.decisions = context.decisions[-m.summary_decision_limit:] if m.summary_decision_limit else []
        summarized.confidence = max(context.confidence - m.summary_confidence_decrement, m.summary_confidence_floor)
        summarized.add_tag(Tags.SUMMARIZED)
        summarized.metadata.update({
            'summarized_at': utc_now().isoformat(),
            'original_entities_count': len(context.entities),
            'original_decisions_count': len(context.decisions),
        })

        self.store(agent_id, session_id, summarized)
        logger.debug("Summarized context for agent: %s, session: %s", agent_id, session_id)
        return summarized

    def search(self, query: str, agent_id: Optional[str] = None) -> List[Context]:
        """Case-insensitive substring search over one agent's contexts.

        Cross-agent search is not supported and returns nothing.
        """
        if query is None or not query.strip():
            return []
        if not agent_id:
            logger.warning("Cross-agent context search is not supported")
            return []

        needle = query.lower()
        results = []
        for context in self._load_sessions(agent_id, self._session_ids(agent_id)):
            haystack = [context.topic or "", context.outcome or ""]
            haystack.extend(context.entities)
            haystack.extend(context.decisions)
            haystack.extend(context.tags)
            if any(needle in field.lower() for field in haystack):
                results.append(context)

        logger.debug("Found %d contexts for search query: %s", len(results), query)
        return results

    def iter_agents(self) -> Iterator[str]:
        """Agents that still have a recency list."""
        pattern = self._keys.agent_contexts_pattern()
        for key in self._call("scan recency lists", pattern, lambda: list(self.redis.scan_iter(match=pattern))):
            yield self._keys.agent_from_list_key(key)

    def iter_contexts(self) -> Iterator[Context]:
        """Every live context, in no particular order."""
        pattern = self._keys.context_pattern()
        for key in self._call("scan contexts", pattern, lambda: list(self.redis.scan_iter(match=pattern))):
            context = self._decode(key, self._call("get context", key, lambda: self.redis.get(key)))
            if context is not None:
                yield context

    def prune_recency(self, agent_id: str) -> int:
        """Drop session ids whose context has expired. Returns how many."""
        require(agent_id, "agent_id")

        list_key = self._keys.agent_contexts(agent_id)
        session_ids = self._session_ids(agent_id)
        if not session_ids:
            return 0

        keys = [self._keys.context(agent_id, s) for s in session_ids]
        values = self._call("get contexts", list_key, lambda: self.redis.mget(keys))
        expired = [s for s, v in zip(session_ids, values) if v is None]
        for session_id in expired:
            self._call("prune recency list", list_key, lambda: self.redis.lrem(list_key, 0, session_id))

        if expired:
            logger.debug("Pruned %d expired sessions for agent: %s", len(expired), agent_id)
        return len(expired)

    def ping(self) -> bool:
        return bool(self._call("ping", "redis", self.redis.ping))
