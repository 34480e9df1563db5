"""Embedding Index - in-memory nearest-neighbour search over knowledge vectors"""

import threading
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import MemoryConfig
from .embeddings import EmbeddingProvider
from .errors import InvalidInput, require
from .models import DistanceMetric, Knowledge, SimilarityMatch
from .security import get_logger

logger = get_logger(__name__)

Vector = Union[np.ndarray, Sequence[float]]

SCORE_PRECISION = 6


class EmbeddingIndex:
    """Mutable set of (knowledge id -> vector) pairs with linear-scan queries.

    Every read and write takes the same lock. Entries keep insertion order,
    which is the tie-break for equal scores; replacing an entry keeps its
    original position.
    """

    def __init__(self, provider: EmbeddingProvider, config: Optional[MemoryConfig] = None):
        self._config = config or MemoryConfig()
        self._provider = provider
        self._metric = DistanceMetric.parse(self._config.vector_index.distance_metric)
        self._entries: 'OrderedDict[str, Tuple[Knowledge, np.ndarray]]' = OrderedDict()
        self._lock = threading.RLock()

    @property
    def dimension(self) -> int:
        return self._provider.dimension

    @property
    def metric(self) -> DistanceMetric:
        return self._metric

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, knowledge_id: str) -> bool:
        with self._lock:
            return knowledge_id in self._entries

    def embed(self, text: str) -> np.ndarray:
        """Turn text into a vector with the current provider."""
        if text is None or not str(text).strip():
            raise InvalidInput("Text cannot be null or empty")

        vector = np.asarray(self._provider.embed(text), dtype=np.float64)
        self._check_dimension(vector)
        logger.debug("Generated embedding for text length: %d", len(text))
        return vector

    def _check_dimension(self, vector: np.ndarray) -> None:
        if vector.ndim != 1 or vector.shape[0] != self.dimension:
            raise InvalidInput(
                f"Vector dimension {vector.shape[-1] if vector.ndim else 0} does not match index dimension {self.dimension}"
            )

    def check_vector(self, vector: Vector) -> np.ndarray:
        """Coerce vector to an array, raising InvalidInput on a dimension mismatch."""
        array = np.asarray(vector, dtype=np.float64)
        self._check_dimension(array)
        return array

    def index(self, knowledge_id: str, knowledge: Knowledge) -> np.ndarray:
        """Insert or replace the entry for knowledge_id.

        Uses knowledge.embedding when present, otherwise embeds the
        knowledge's source text and writes the vector back onto it.
        """
        require(knowledge_id, "knowledge_id")

        with self._lock:
            if knowledge.embedding:
                vector = np.asarray(knowledge.embedding, dtype=np.float64)
                self._check_dimension(vector)
            else:
                vector = self.embed(knowledge.source_text)
                knowledge.embedding = vector.tolist()

            self._entries[knowledge_id] = (knowledge.copy(), vector)
            logger.debug("Indexed knowledge: %s in domain: %s", knowledge_id, knowledge.domain)
            return vector

    def query(
        self,
        vector: Vector,
        top_k: int = 10,
        threshold: float = 0.7,
        metric: Optional[Union[str, DistanceMetric]] = None
    ) -> List[SimilarityMatch]:
        """Entries scoring at or above threshold, best first, at most top_k."""
        if vector is None:
            raise InvalidInput("Query vector cannot be null")
        if top_k <= 0:
            return []

        metric = DistanceMetric.parse(metric) if metric else self._metric
        query_vector = np.asarray(vector, dtype=np.float64)
        self._check_dimension(query_vector)

        with self._lock:
            scored = []
            for knowledge, indexed in self._entries.values():
                score = self.similarity(query_vector, indexed, metric)
                if score >= threshold:
                    scored.append((knowledge, score))

            # sorted() is stable, so equal scores keep insertion order
            scored.sort(key=lambda item: -item[1])
            return [
                SimilarityMatch(knowledge=knowledge.copy(), score=score, distance_metric=metric.value)
                for knowledge, score in scored[:top_k]
            ]

    def find_similar(
        self,
        text: str,
        top_k: int = 10,
        threshold: float = 0.7,
        metric: Optional[Union[str, DistanceMetric]] = None
    ) -> List[SimilarityMatch]:
        """Embed text and query with it. Blank text finds nothing."""
        if text is None or not str(text).strip():
            return []
        return self.query(self.embed(text), top_k, threshold, metric)

    def remove(self, knowledge_id: str) -> bool:
        with self._lock:
            if self._entries.pop(knowledge_id, None) is not None:
                logger.debug("Removed knowledge from index: %s", knowledge_id)
                return True
            logger.warning("Knowledge not found in index: %s", knowledge_id)
            return False

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def rebuild(self) -> int:
        """Recompute every vector from source text with the current provider."""
        with self._lock:
            logger.info("Rebuilding in-memory vector index")
            for knowledge_id, (knowledge, _) in list(self._entries.items()):
                vector = self.embed(knowledge.source_text)
                knowledge.embedding = vector.tolist()
                self._entries[knowledge_id] = (knowledge, vector)
            logger.info("Rebuilt vector index with %d items", len(self._entries))
            return len(self._entries)

    def set_provider(self, provider: EmbeddingProvider, rebuild: bool = True) -> None:
        """Swap the embedding provider; existing vectors are stale until rebuilt."""
        with self._lock:
            self._provider = provider
            if rebuild:
                self.rebuild()
            else:
                self._entries.clear()

    def get_vector(self, knowledge_id: str) -> Optional[np.ndarray]:
        with self._lock:
            entry = self._entries.get(knowledge_id)
            return entry[1].copy() if entry else None

    def stats(self) -> Dict[str, object]:
        with self._lock:
            stats: Dict[str, object] = {
                'total_knowledge_items': len(self._entries),
                'vector_dimension': self.dimension,
                'distance_metric': self._metric.value,
                'index_type': self._config.vector_index.index_type,
                'provider': self._provider.name,
            }
            domains = []
            for knowledge, _ in self._entries.values():
                if knowledge.domain not in domains:
                    domains.append(knowledge.domain)
            stats['domains'] = domains
            stats['domain_count'] = len(domains)
            return stats

    @staticmethod
    def similarity(a: Vector, b: Vector, metric: Union[str, DistanceMetric] = DistanceMetric.COSINE) -> float:
        """Higher is more similar for every metric.

        Euclidean distance is mapped into (0, 1] via 1 / (1 + distance).
        """
        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
        if va.shape != vb.shape:
            raise InvalidInput("Vectors must have the same dimension")

        metric = DistanceMetric.parse(metric)
        if metric is DistanceMetric.COSINE:
            magnitude = np.linalg.norm(va) * np.linalg.norm(vb)
            if magnitude == 0:
                return 0.0
            score = float(np.dot(va, vb) / magnitude)
        elif metric is DistanceMetric.DOT:
            score = float(np.dot(va, vb))
        else:
            score = 1.0 / (1.0 + float(np.linalg.norm(va - vb)))
        return round(score, SCORE_PRECISION)
