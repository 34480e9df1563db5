"""Knowledge Store - durable, deduplicating repository of knowledge facts"""

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import MemoryConfig
from .constants import Defaults
from .db import KnowledgeRow, create_session_factory, create_store_engine, init_schema
from .errors import NotFound, StorageFailure, require
from .models import (
    Knowledge,
    KnowledgeStatus,
    SimilarityMatch,
    as_utc,
    merge_tags,
)
from .security import get_logger
from .vector_index import EmbeddingIndex

logger = get_logger(__name__)


class KnowledgeStore:
    """Persists knowledge rows and keeps the embedding index in step.

    At most one row exists per (domain, concept, rule). Storing an existing
    key merges into the row instead of inserting. Stores of the same key are
    serialised within this process; across processes the unique constraint
    turns the losing insert into a merge.

    The store applies no confidence policy of its own.
    """

    LOCK_STRIPES = 64

    def __init__(self, engine: Engine, index: EmbeddingIndex, config: Optional[MemoryConfig] = None):
        self._engine = engine
        self._index = index
        self._config = config or MemoryConfig()
        self._session_factory = create_session_factory(engine)
        self._key_locks = [threading.Lock() for _ in range(self.LOCK_STRIPES)]
        init_schema(engine)

    @classmethod
    def from_url(cls, database_url: str, index: EmbeddingIndex, config: Optional[MemoryConfig] = None) -> 'KnowledgeStore':
        return cls(create_store_engine(database_url), index, config)

    @property
    def index(self) -> EmbeddingIndex:
        return self._index

    def _lock_for(self, dedup_key: Tuple[str, str, str]) -> threading.Lock:
        return self._key_locks[hash(dedup_key) % self.LOCK_STRIPES]

    @contextmanager
    def _transaction(self, operation: str, key: Optional[str] = None) -> Iterator[Session]:
        """One unit of work; SQLAlchemy errors surface as StorageFailure."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to %s (%s): %s", operation, key or "-", str(e))
            raise StorageFailure(operation, str(e), key) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _active(self):
        return select(KnowledgeRow).where(KnowledgeRow.status == KnowledgeStatus.ACTIVE.value)

    def _ranked(self, statement):
        return statement.order_by(KnowledgeRow.confidence.desc(), KnowledgeRow.usage_count.desc())

    def store(self, knowledge: Knowledge) -> str:
        """Insert knowledge, or merge it into the row with the same dedup key.

        Returns the id of the row that now holds the fact, which is the
        existing row's id on a merge.
        """
        knowledge.validate()

        if knowledge.embedding:
            self._index.check_vector(knowledge.embedding)
        else:
            knowledge.embedding = self._index.embed(knowledge.source_text).tolist()

        with self._lock_for(knowledge.dedup_key):
            try:
                stored, merged = self._merge_or_insert(knowledge)
            except IntegrityError:
                logger.warning("Concurrent insert for knowledge %s/%s, retrying as merge",
                               knowledge.domain, knowledge.concept)
                try:
                    stored, merged = self._merge_or_insert(knowledge)
                except IntegrityError as e:
                    logger.error("Failed to store knowledge in domain: %s: %s", knowledge.domain, str(e))
                    raise StorageFailure("store knowledge", str(e), knowledge.domain) from e

        # an archived row absorbs the merge but stays out of the index
        if stored.status == KnowledgeStatus.ACTIVE.value:
            self._index.index(stored.id, stored)

        if merged:
            logger.debug("Updated existing knowledge: %s", stored.id)
        else:
            logger.debug("Stored new knowledge: %s in domain: %s", stored.id, stored.domain)
        return stored.id

    def _merge_or_insert(self, knowledge: Knowledge) -> Tuple[Knowledge, bool]:
        with self._transaction("store knowledge", knowledge.domain) as session:
            existing = session.execute(
                select(KnowledgeRow).where(
                    KnowledgeRow.domain == knowledge.domain,
                    KnowledgeRow.concept == knowledge.concept,
                    KnowledgeRow.rule == knowledge.rule,
                )
            ).scalar_one_or_none()

            if existing is not None:
                existing.confidence = max(existing.confidence, knowledge.confidence)
                existing.tags = merge_tags(existing.tags, knowledge.tags)
                existing.meta = {**(existing.meta or {}), **knowledge.metadata}
                if not existing.embedding:
                    existing.embedding = list(knowledge.embedding)
                existing.touch()
                return existing.to_model(), True

            row = KnowledgeRow.from_model(knowledge)
            session.add(row)
            session.flush()
            return row.to_model(), False

    def get(self, knowledge_id: str) -> Optional[Knowledge]:
        """Fetch by id. A hit counts as a use."""
        require(knowledge_id, "knowledge_id")

        with self._transaction("get knowledge", knowledge_id) as session:
            row = session.get(KnowledgeRow, knowledge_id)
            if row is None:
                return None
            row.touch()
            knowledge = row.to_model()

        logger.debug("Retrieved knowledge: %s", knowledge_id)
        return knowledge

    def query_similar(
        self,
        text: str,
        threshold: float = Defaults.DEFAULT_SIMILARITY_THRESHOLD,
        max_results: int = Defaults.MAX_SIMILAR_KNOWLEDGE_RESULTS,
        metric: Optional[str] = None
    ) -> List[SimilarityMatch]:
        """Vector search, then one batched usage update for every match.

        Matches carry the persisted row as of after the update; index entries
        whose row no longer exists or is no longer active are dropped.
        """
        if text is None or not text.strip():
            return []

        matches = self._index.find_similar(text, max_results, threshold, metric)
        if not matches:
            logger.debug("Found 0 similar knowledge items for query")
            return []

        ids = [m.knowledge.id for m in matches]
        with self._transaction("record knowledge usage", ",".join(ids)) as session:
            rows = session.execute(self._active().where(KnowledgeRow.id.in_(ids))).scalars().all()
            persisted: Dict[str, Knowledge] = {}
            for row in rows:
                row.touch()
                persisted[row.id] = row.to_model()

        results = []
        for match in matches:
            knowledge = persisted.get(match.knowledge.id)
            if knowledge is None:
                logger.warning("Index entry without active stored knowledge: %s", match.knowledge.id)
                self._index.remove(match.knowledge.id)
                continue
            match.knowledge = knowledge
            results.append(match)

        logger.debug("Found %d similar knowledge items for query", len(results))
        return results

    def get_by_domain(self, domain: str, max_results: int = 100) -> List[Knowledge]:
        require(domain, "domain")

        with self._transaction("get knowledge by domain", domain) as session:
            rows = session.execute(
                self._ranked(self._active().where(KnowledgeRow.domain == domain)).limit(max_results)
            ).scalars().all()
            knowledge = [row.to_model() for row in rows]

        logger.debug("Retrieved %d knowledge items for domain: %s", len(knowledge), domain)
        return knowledge

    def get_by_tags(self, tags: List[str], max_results: int = 100) -> List[Knowledge]:
        """Rows carrying any of the given tags."""
        if not tags:
            return []
        wanted = set(tags)

        with self._transaction("get knowledge by tags", ", ".join(tags)) as session:
            rows = session.execute(self._ranked(self._active())).scalars()
            knowledge = []
            for row in rows:
                if wanted.intersection(row.tags or []):
                    knowledge.append(row.to_model())
                    if len(knowledge) >= max_results:
                        break

        logger.debug("Retrieved %d knowledge items for tags: %s", len(knowledge), ", ".join(tags))
        return knowledge

    def update(self, knowledge: Knowledge) -> None:
        """Full replace of an existing row; re-indexes it."""
        knowledge.validate()
        if knowledge.embedding:
            self._index.check_vector(knowledge.embedding)

        with self._transaction("update knowledge", knowledge.id) as session:
            row = session.get(KnowledgeRow, knowledge.id)
            if row is None:
                raise NotFound(f"No knowledge with id {knowledge.id}")

            content_changed = (row.domain, row.concept, row.rule) != knowledge.dedup_key
            if not knowledge.embedding or (content_changed and knowledge.embedding == row.embedding):
                knowledge.embedding = self._index.embed(knowledge.source_text).tolist()
            row.apply(knowledge)

        if knowledge.status == KnowledgeStatus.ACTIVE.value:
            self._index.index(knowledge.id, knowledge)
        elif knowledge.id in self._index:
            self._index.remove(knowledge.id)
        logger.debug("Updated knowledge: %s", knowledge.id)

    def delete(self, knowledge_id: str) -> bool:
        require(knowledge_id, "knowledge_id")

        with self._transaction("delete knowledge", knowledge_id) as session:
            row = session.get(KnowledgeRow, knowledge_id)
            if row is None:
                return False
            session.delete(row)

        if knowledge_id in self._index:
            self._index.remove(knowledge_id)
        logger.debug("Deleted knowledge: %s", knowledge_id)
        return True

    def archive(self, knowledge_id: str) -> bool:
        """Hide a row from retrieval without deleting it."""
        require(knowledge_id, "knowledge_id")

        with self._transaction("archive knowledge", knowledge_id) as session:
            row = session.get(KnowledgeRow, knowledge_id)
            if row is None:
                return False
            row.status = KnowledgeStatus.ARCHIVED.value

        if knowledge_id in self._index:
            self._index.remove(knowledge_id)
        logger.debug("Archived knowledge: %s", knowledge_id)
        return True

    def link(self, source_id: str, target_id: str, relationship_type: str) -> bool:
        """Add target to source's related ids. Returns False if nothing changed."""
        require(source_id, "source_id")
        require(target_id, "target_id")

        with self._transaction("link knowledge", f"{source_id}->{target_id}") as session:
            row = session.get(KnowledgeRow, source_id)
            if row is None or target_id in (row.related_knowledge_ids or []):
                return False
            row.related_knowledge_ids = list(row.related_knowledge_ids or []) + [target_id]
            row.meta = {**(row.meta or {}), f"relationship_to_{target_id}": relationship_type}

        logger.debug("Linked knowledge %s to %s with relationship: %s", source_id, target_id, relationship_type)
        return True

    def get_related(self, knowledge_id: str, max_results: int = 10) -> List[Knowledge]:
        require(knowledge_id, "knowledge_id")

        with self._transaction("get related knowledge", knowledge_id) as session:
            row = session.get(KnowledgeRow, knowledge_id)
            if row is None or not row.related_knowledge_ids:
                return []
            related_ids = list(row.related_knowledge_ids)
            rows = session.execute(select(KnowledgeRow).where(KnowledgeRow.id.in_(related_ids))).scalars().all()
            by_id = {r.id: r.to_model() for r in rows}

        related = [by_id[i] for i in related_ids if i in by_id][:max_results]
        logger.debug("Retrieved %d related knowledge items for: %s", len(related), knowledge_id)
        return related

    def search(self, text: str, domain: Optional[str] = None) -> List[Knowledge]:
        """Case-insensitive substring match over concept, rule and tags."""
        if text is None or not text.strip():
            return []
        needle = text.lower()

        statement = self._active()
        if domain:
            statement = statement.where(KnowledgeRow.domain == domain)

        with self._transaction("search knowledge", text) as session:
            knowledge = [
                row.to_model()
                for row in session.execute(self._ranked(statement)).scalars()
                if needle in row.concept.lower()
                or needle in row.rule.lower()
                or any(needle in tag.lower() for tag in row.tags or [])
            ]

        logger.debug("Found %d knowledge items for search query: %s", len(knowledge), text)
        return knowledge

    def stats(self) -> Dict[str, object]:
        with self._transaction("knowledge stats") as session:
            total = session.scalar(select(func.count()).select_from(KnowledgeRow)) or 0
            domains = {
                domain: count
                for domain, count in session.execute(
                    select(KnowledgeRow.domain, func.count()).group_by(KnowledgeRow.domain)
                )
            }
            average = session.scalar(select(func.avg(KnowledgeRow.confidence)))
            archived = session.scalar(
                select(func.count()).select_from(KnowledgeRow).where(
                    KnowledgeRow.status == KnowledgeStatus.ARCHIVED.value
                )
            ) or 0
            most_used = [
                {'id': row.id, 'concept': row.concept, 'usage_count': row.usage_count}
                for row in session.execute(
                    select(KnowledgeRow).order_by(KnowledgeRow.usage_count.desc()).limit(Defaults.MOST_USED_LIMIT)
                ).scalars()
            ]

        return {
            'total_knowledge': total,
            'domains': domains,
            'average_confidence': float(average) if average is not None else 0.0,
            'archived_knowledge': archived,
            'most_used_knowledge': most_used,
        }

    def count(self) -> int:
        with self._transaction("count knowledge") as session:
            return session.scalar(select(func.count()).select_from(KnowledgeRow)) or 0

    def load_index(self) -> int:
        """Index every active row; rows without an embedding get one persisted."""
        with self._transaction("load knowledge index") as session:
            loaded = 0
            for row in session.execute(self._active()).scalars():
                knowledge = row.to_model()
                vector = self._index.index(row.id, knowledge)
                if not row.embedding:
                    row.embedding = vector.tolist()
                loaded += 1

        logger.info("Loaded %d knowledge items into the vector index", loaded)
        return loaded

    def rebuild_index(self) -> int:
        """Re-embed every active row with the index's current provider."""
        self._index.clear()
        with self._transaction("rebuild knowledge index") as session:
            rebuilt = 0
            for row in session.execute(self._active()).scalars():
                knowledge = row.to_model()
                knowledge.embedding = None
                row.embedding = self._index.index(row.id, knowledge).tolist()
                rebuilt += 1

        logger.info("Rebuilt vector index with %d items", rebuilt)
        return rebuilt

    def prune(self, min_confidence: float, cutoff: datetime) -> List[str]:
        """Delete rows below min_confidence whose last activity is before cutoff."""
        cutoff = as_utc(cutoff)

        with self._transaction("prune knowledge") as session:
            removed = []
            rows = session.execute(
                select(KnowledgeRow).where(KnowledgeRow.confidence < min_confidence)
            ).scalars().all()
            for row in rows:
                last_activity = as_utc(row.last_used_at or row.created_at)
                if last_activity is None or last_activity <= cutoff:
                    removed.append(row.id)
                    session.delete(row)

        for knowledge_id in removed:
            if knowledge_id in self._index:
                self._index.remove(knowledge_id)
        if removed:
            logger.info("Pruned %d knowledge items below confidence %.2f", len(removed), min_confidence)
        return removed
