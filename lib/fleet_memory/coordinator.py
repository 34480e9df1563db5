"""Memory Coordinator - the public face of the cross-agent memory subsystem

Composes the session context store, the knowledge store and the embedding
index, and owns the policies that span them: the knowledge confidence gate,
query defaults, context sharing, learning from interactions, recommendations
and maintenance.
"""

import threading
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy.engine import Engine
import redis

from .config import MemoryConfig
from .constants import Defaults, SessionPrefix, Tags
from .context_store import SessionContextStore
from .db import create_store_engine
from .embeddings import EmbeddingProvider, resolve_provider
from .errors import InvalidInput, NotFound, OperationCancelled, require, require_confidence
from .knowledge_store import KnowledgeStore
from .models import (
    Context,
    Knowledge,
    SimilarityMatch,
    dedupe_by_id,
    merge_tags,
    rank_knowledge,
    utc_now,
)
from .redis_factory import create_redis_client
from .security import get_logger
from .telemetry import MemoryMetrics
from .vector_index import EmbeddingIndex

logger = get_logger(__name__)

Window = Union[timedelta, float]


def _as_timedelta(value: Window) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


class MemoryCoordinator:
    """Single entry point agents use to remember, share and learn.

    Every operation accepts an optional ``cancel`` event. It is checked
    between steps; once set the operation raises OperationCancelled and
    writes already applied stay applied.
    """

    def __init__(
        self,
        context_store: SessionContextStore,
        knowledge_store: KnowledgeStore,
        index: EmbeddingIndex,
        config: Optional[MemoryConfig] = None,
        metrics: Optional[MemoryMetrics] = None
    ):
        self.contexts = context_store
        self.knowledge = knowledge_store
        self.index = index
        self.config = config or MemoryConfig()
        self.metrics = metrics or MemoryMetrics()

    @classmethod
    def from_config(
        cls,
        config: Optional[MemoryConfig] = None,
        redis_client: Optional[redis.Redis] = None,
        engine: Optional[Engine] = None,
        provider: Optional[EmbeddingProvider] = None
    ) -> 'MemoryCoordinator':
        """Build the full component graph and warm the index from the durable store."""
        config = config or MemoryConfig.from_env()
        config.validate()

        index = EmbeddingIndex(provider or resolve_provider(config.embedding), config)
        if redis_client is None:
            redis_client = create_redis_client(config.redis_url)
        if engine is None:
            engine = create_store_engine(config.database_url)

        knowledge_store = KnowledgeStore(engine, index, config)
        knowledge_store.load_index()

        return cls(SessionContextStore(redis_client, config), knowledge_store, index, config)

    @staticmethod
    def _check(cancel: Optional[threading.Event], operation: str) -> None:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"{operation} cancelled")

    # Context operations

    def store_context(self, agent_id: str, session_id: str, context: Context,
                      cancel: Optional[threading.Event] = None) -> None:
        with self.metrics.measure_operation("store_context"):
            self._check(cancel, "store_context")
            self.contexts.store(agent_id, session_id, context)
            logger.debug("Stored context for agent %s session %s", agent_id, session_id)

    def get_context(self, agent_id: str, session_id: str,
                    cancel: Optional[threading.Event] = None) -> Optional[Context]:
        with self.metrics.measure_operation("get_context"):
            self._check(cancel, "get_context")
            return self.contexts.get(agent_id, session_id)

    def get_recent_context(self, agent_id: str, window: Window,
                           cancel: Optional[threading.Event] = None) -> List[Context]:
        with self.metrics.measure_operation("get_recent_context"):
            self._check(cancel, "get_recent_context")
            return self.contexts.get_recent(agent_id, _as_timedelta(window))

    # Knowledge operations

    def store_knowledge(self, knowledge: Knowledge, cancel: Optional[threading.Event] = None) -> str:
        """Store knowledge unless it is below the confidence floor.

        A dropped write still returns the knowledge's (unsaved) id and
        raises nothing; drops are counted per domain in the metrics.
        """
        with self.metrics.measure_operation("store_knowledge"):
            self._check(cancel, "store_knowledge")
            return self._store_knowledge(knowledge)

    def _store_knowledge(self, knowledge: Knowledge) -> str:
        knowledge.validate()

        floor = self.config.management.min_knowledge_confidence
        if knowledge.confidence < floor:
            self.metrics.record_policy_drop(knowledge.domain)
            logger.warning("Knowledge confidence %.2f below threshold %.2f, not storing (domain: %s)",
                           knowledge.confidence, floor, knowledge.domain)
            return knowledge.id

        knowledge_id = self.knowledge.store(knowledge)
        self.metrics.record_knowledge_stored(knowledge.domain)
        self.metrics.set_index_size(len(self.index))
        logger.info("Stored knowledge %s in domain %s", knowledge_id, knowledge.domain)
        return knowledge_id

    def get_knowledge(self, knowledge_id: str, cancel: Optional[threading.Event] = None) -> Optional[Knowledge]:
        with self.metrics.measure_operation("get_knowledge"):
            self._check(cancel, "get_knowledge")
            return self.knowledge.get(knowledge_id)

    def query_knowledge(
        self,
        query: str,
        domain: Optional[str] = None,
        threshold: float = 0.0,
        max_results: int = 0,
        cancel: Optional[threading.Event] = None
    ) -> List[Knowledge]:
        """Similarity search; non-positive threshold or max_results fall back to config."""
        return [m.knowledge for m in self.query_knowledge_matches(query, domain, threshold, max_results, cancel)]

    def query_knowledge_matches(
        self,
        query: str,
        domain: Optional[str] = None,
        threshold: float = 0.0,
        max_results: int = 0,
        cancel: Optional[threading.Event] = None
    ) -> List[SimilarityMatch]:
        """Like query_knowledge but keeps the similarity scores."""
        with self.metrics.measure_operation("query_knowledge"):
            self._check(cancel, "query_knowledge")
            return self._query_matches(query, domain, threshold, max_results)

    def _query_matches(self, query: str, domain: Optional[str], threshold: float, max_results: int) -> List[SimilarityMatch]:
        m = self.config.management
        effective_threshold = threshold if threshold > 0 else m.default_similarity_threshold
        effective_max = min(max_results, m.max_similar_knowledge_results) if max_results > 0 \
            else m.max_similar_knowledge_results

        matches = self.knowledge.query_similar(query, effective_threshold, effective_max)

        # domain narrows what is kept, never what is found
        if domain:
            wanted = domain.lower()
            matches = [match for match in matches if match.knowledge.domain.lower() == wanted]

        logger.debug("Query returned %d knowledge items (threshold %.2f)", len(matches), effective_threshold)
        return matches

    def get_knowledge_by_domain(self, domain: str, max_results: int = 100,
                                cancel: Optional[threading.Event] = None) -> List[Knowledge]:
        with self.metrics.measure_operation("get_knowledge_by_domain"):
            self._check(cancel, "get_knowledge_by_domain")
            return self.knowledge.get_by_domain(domain, max_results)

    # Cross-agent operations

    def share_context(self, from_agent_id: str, to_agent_id: str, session_id: str,
                      cancel: Optional[threading.Event] = None) -> Optional[Context]:
        """Copy a context to another agent under ``shared_<session_id>``.

        The copy is independent of the source, carries decayed confidence and
        provenance tags and metadata. Returns None when the source is missing.
        """
        with self.metrics.measure_operation("share_context"):
            require(from_agent_id, "from_agent_id")
            require(to_agent_id, "to_agent_id")
            require(session_id, "session_id")
            self._check(cancel, "share_context")

            source = self.contexts.get(from_agent_id, session_id)
            if source is None:
                logger.warning("No context to share from %s for session %s", from_agent_id, session_id)
                return None

            self._check(cancel, "share_context")
            now = utc_now()
            metadata = dict(source.metadata)
            metadata.update({
                'shared_from': from_agent_id,
                'shared_at': now.isoformat(),
                'original_session': session_id,
            })
            shared = Context(
                agent_id=to_agent_id,
                session_id=f"{SessionPrefix.SHARED}{session_id}",
                topic=source.topic,
                entities=list(source.entities),
                decisions=list(source.decisions),
                outcome=source.outcome,
                tags=merge_tags(source.tags, [Tags.SHARED, Tags.shared_from(from_agent_id)]),
                metadata=metadata,
                confidence=source.confidence * self.config.management.share_confidence_decay,
                timestamp=now,
            )

            self.contexts.store(to_agent_id, shared.session_id, shared)
            self.metrics.record_share(from_agent_id, to_agent_id)
            logger.info("Shared context from %s to %s for session %s", from_agent_id, to_agent_id, session_id)
            return shared

    def get_shared_knowledge(self, agent_ids: Iterable[str], topic: Optional[str] = None,
                             cancel: Optional[threading.Event] = None) -> List[Knowledge]:
        """Knowledge surfaced by searching for each agent id, deduplicated by id."""
        with self.metrics.measure_operation("get_shared_knowledge"):
            found: List[Knowledge] = []
            for agent_id in agent_ids or []:
                self._check(cancel, "get_shared_knowledge")
                if agent_id:
                    found.extend(self.knowledge.search(agent_id))

            if topic:
                needle = topic.lower()
                found = [
                    k for k in found
                    if needle in k.concept.lower() or any(needle in tag.lower() for tag in k.tags)
                ]

            shared = rank_knowledge(dedupe_by_id(found, keep_highest_confidence=True))
            logger.debug("Found %d shared knowledge items", len(shared))
            return shared

    def learn_from_interaction(self, agent_id: str, context: Context, outcome: str, confidence: float,
                               cancel: Optional[threading.Event] = None) -> str:
        """Turn an interaction into knowledge, then record the outcome on the context.

        The two writes are not atomic. If the knowledge write fails the
        context is left untouched.
        """
        with self.metrics.measure_operation("learn_from_interaction"):
            require(agent_id, "agent_id")
            if context is None:
                raise InvalidInput("context cannot be null")
            require_confidence(confidence)
            self._check(cancel, "learn_from_interaction")

            knowledge = Knowledge(
                domain=agent_id,
                concept=context.topic,
                rule=(
                    f"When dealing with {', '.join(context.entities)}, "
                    f"apply decisions: {'; '.join(context.decisions)} to achieve: {outcome}"
                ),
                confidence=confidence,
                source=agent_id,
                tags=merge_tags(context.tags, [Tags.LEARNED, Tags.INTERACTION]),
                metadata={
                    'learned_from_session': context.session_id,
                    'interaction_timestamp': context.timestamp.isoformat(),
                    'agent_id': agent_id,
                    'entities': list(context.entities),
                    'decisions': list(context.decisions),
                },
            )
            knowledge_id = self._store_knowledge(knowledge)

            self._check(cancel, "learn_from_interaction")
            context.outcome = outcome
            context.confidence = confidence
            context.add_tag(Tags.LEARNED)
            self.contexts.update(agent_id, context.session_id, context)

            logger.info("Learned from interaction for agent %s, session %s", agent_id, context.session_id)
            return knowledge_id

    def get_recommendations(self, agent_id: str, current_context: Context, max_results: int = 5,
                            cancel: Optional[threading.Event] = None) -> List[Knowledge]:
        """Knowledge in the agent's own domain relevant to the context's topic
        and its leading entities.

        Each query runs with the configured result budget and is narrowed to
        the agent's domain before being cut to its share.
        """
        with self.metrics.measure_operation("get_recommendations"):
            require(agent_id, "agent_id")
            if current_context is None or max_results <= 0:
                return []

            candidates: List[Knowledge] = []
            if current_context.topic:
                self._check(cancel, "get_recommendations")
                matches = self._query_matches(current_context.topic, agent_id, 0.0, 0)
                candidates.extend(m.knowledge for m in matches[:max(1, max_results // 2)])

            for entity in current_context.entities[:Defaults.RECOMMENDATION_ENTITY_QUERIES]:
                self._check(cancel, "get_recommendations")
                matches = self._query_matches(entity, agent_id, 0.0, 0)
                candidates.extend(m.knowledge for m in matches[:Defaults.RECOMMENDATION_RESULTS_PER_ENTITY])

            recommendations = rank_knowledge(dedupe_by_id(candidates))[:max_results]
            logger.debug("Generated %d recommendations for agent %s", len(recommendations), agent_id)
            return recommendations

    # Maintenance

    def summarize_old_context(self, older_than: Window, cancel: Optional[threading.Event] = None) -> int:
        """Summarize every cached context last written before now - older_than.

        Contexts already tagged summarized are skipped. Returns how many
        were summarized.
        """
        with self.metrics.measure_operation("summarize_old_context"):
            cutoff = utc_now() - _as_timedelta(older_than)
            summarized = 0

            for context in self.contexts.iter_contexts():
                self._check(cancel, "summarize_old_context")
                if context.has_tag(Tags.SUMMARIZED) or context.timestamp >= cutoff:
                    continue
                try:
                    self.contexts.summarize(context.agent_id, context.session_id)
                except NotFound:
                    # expired between scan and read
                    continue
                summarized += 1

            self.metrics.record_summarized(summarized)
            logger.info("Summarized %d contexts older than %s", summarized, cutoff.isoformat())
            return summarized

    def cleanup_memory(self, min_confidence: Optional[float] = None, older_than: Window = timedelta(0),
                       cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Delete stale low-confidence knowledge and prune expired sessions.

        Knowledge goes when its confidence is below min_confidence and its
        last use (or creation) is at or before now - older_than.
        """
        with self.metrics.measure_operation("cleanup_memory"):
            if min_confidence is None:
                min_confidence = self.config.management.min_knowledge_confidence
            require_confidence(min_confidence, "min_confidence")
            cutoff = utc_now() - _as_timedelta(older_than)

            self._check(cancel, "cleanup_memory")
            removed = self.knowledge.prune(min_confidence, cutoff)
            self.metrics.record_pruned(len(removed))

            sessions_pruned = 0
            for agent_id in self.contexts.iter_agents():
                self._check(cancel, "cleanup_memory")
                sessions_pruned += self.contexts.prune_recency(agent_id)

            self.metrics.set_index_size(len(self.index))
            logger.info("Cleanup removed %d knowledge items and %d expired sessions",
                        len(removed), sessions_pruned)
            return {
                'knowledge_removed': len(removed),
                'removed_ids': removed,
                'sessions_pruned': sessions_pruned,
                'min_confidence': min_confidence,
                'cutoff': cutoff.isoformat(),
            }

    # Stats and health

    def get_memory_stats(self, cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        with self.metrics.measure_operation("get_memory_stats"):
            self._check(cancel, "get_memory_stats")
            knowledge_stats = self.knowledge.stats()
            index_stats = self.index.stats()
            self.metrics.set_index_size(index_stats['total_knowledge_items'])
            return {
                'knowledge': knowledge_stats,
                'vector_index': index_stats,
                'configuration': self.config.to_dict(),
                'operations': self.metrics.get_summary(),
                'timestamp': utc_now().isoformat(),
            }

    def is_healthy(self) -> bool:
        """True when both knowledge and index stats can be produced. Never raises."""
        try:
            self.knowledge.stats()
            self.index.stats()
            return True
        except Exception as e:
            logger.error("Memory health check failed: %s", str(e))
            return False
