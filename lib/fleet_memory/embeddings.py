"""Embedding providers.

A provider turns text into a fixed-length float vector. Providers are looked
up in a closed registry keyed by a stable name, and the configured version
requirement is checked when the provider is resolved at startup. Any other
text -> vector function can be plugged in directly via FunctionEmbedder.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import EmbeddingConfig
from .errors import InvalidInput
from .security import get_logger

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"[\w]+", re.UNICODE)


class EmbeddingProvider:
    """Base class for text -> vector functions."""

    name = "base"
    version = "0.0.0"

    def __init__(self, dimension: int):
        if dimension <= 0:
            raise InvalidInput("embedding dimension must be positive")
        self.dimension = dimension

    def embed(self, text: str) -> np.ndarray:
        raise NotImplementedError

    def __call__(self, text: str) -> np.ndarray:
        return self.embed(text)

    def describe(self) -> Dict[str, object]:
        return {'provider': self.name, 'version': self.version, 'dimension': self.dimension}


class HashingEmbedder(EmbeddingProvider):
    """Deterministic feature-hashing embedder for development and tests.

    Word tokens and their character trigrams are hashed into signed buckets
    and the result is L2-normalised, so texts sharing vocabulary score a high
    cosine similarity. Not a semantic model.
    """

    name = "hashing"
    version = "1.0.0"

    WORD_WEIGHT = 1.0
    TRIGRAM_WEIGHT = 0.5

    def _bucket(self, feature: str) -> Tuple[int, float]:
        digest = hashlib.blake2b(feature.encode('utf-8'), digest_size=8).digest()
        value = int.from_bytes(digest, 'little')
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self.dimension, sign

    def _features(self, text: str) -> List[Tuple[str, float]]:
        features = []
        for token in _TOKEN_RE.findall(text.lower()):
            features.append((f"w:{token}", self.WORD_WEIGHT))
            padded = f"<{token}>"
            for i in range(len(padded) - 2):
                features.append((f"t:{padded[i:i + 3]}", self.TRIGRAM_WEIGHT))
        return features

    def embed(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype=np.float64)
        for feature, weight in self._features(text):
            index, sign = self._bucket(feature)
            vector[index] += sign * weight

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector


class SentenceTransformerEmbedder(EmbeddingProvider):
    """Embeddings from a sentence-transformers model, loaded on first use."""

    name = "sentence-transformers"
    version = "1.0.0"

    def __init__(self, model_name: str, device: Optional[str] = None):
        self.model_name = model_name
        self.device = device
        self._model = None
        super().__init__(dimension=1)
        self.dimension = self._load_model().get_sentence_embedding_dimension()

    def _load_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model %s", self.model_name)
            self._model = SentenceTransformer(self.model_name, device=self.device)
        return self._model

    def embed(self, text: str) -> np.ndarray:
        vector = self._load_model().encode(text, normalize_embeddings=True)
        return np.asarray(vector, dtype=np.float64)


class FunctionEmbedder(EmbeddingProvider):
    """Adapts any callable text -> sequence of floats into a provider."""

    name = "function"
    version = "1.0.0"

    def __init__(self, func: Callable[[str], Sequence[float]], dimension: int, name: Optional[str] = None):
        super().__init__(dimension)
        self._func = func
        if name:
            self.name = name

    def embed(self, text: str) -> np.ndarray:
        return np.asarray(self._func(text), dtype=np.float64)


@dataclass(frozen=True)
class ProviderSpec:
    name: str
    version: str
    factory: Callable[[EmbeddingConfig], EmbeddingProvider]


PROVIDERS: Dict[str, ProviderSpec] = {
    HashingEmbedder.name: ProviderSpec(
        name=HashingEmbedder.name,
        version=HashingEmbedder.version,
        factory=lambda cfg: HashingEmbedder(cfg.dimension),
    ),
    SentenceTransformerEmbedder.name: ProviderSpec(
        name=SentenceTransformerEmbedder.name,
        version=SentenceTransformerEmbedder.version,
        factory=lambda cfg: SentenceTransformerEmbedder(cfg.model_name),
    ),
}


def parse_version(version: str) -> Tuple[int, int, int]:
    parts = str(version).strip().split('.')
    try:
        numbers = [int(p) for p in parts]
    except ValueError:
        raise InvalidInput(f"Invalid version: {version}") from None
    if not 1 <= len(numbers) <= 3:
        raise InvalidInput(f"Invalid version: {version}")
    numbers += [0] * (3 - len(numbers))
    return numbers[0], numbers[1], numbers[2]


def is_compatible(available: str, required: str) -> bool:
    """Same major version and at least the required minor/patch."""
    have = parse_version(available)
    want = parse_version(required)
    return have[0] == want[0] and have >= want


def resolve_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Build the configured provider, checking version compatibility."""
    spec = PROVIDERS.get(config.provider)
    if spec is None:
        raise InvalidInput(
            f"Unknown embedding provider '{config.provider}'. Available: {', '.join(sorted(PROVIDERS))}"
        )
    if config.provider_version and not is_compatible(spec.version, config.provider_version):
        raise InvalidInput(
            f"Embedding provider '{spec.name}' {spec.version} is not compatible with required {config.provider_version}"
        )
    provider = spec.factory(config)
    logger.debug("Resolved embedding provider %s %s (dimension %d)", spec.name, spec.version, provider.dimension)
    return provider
