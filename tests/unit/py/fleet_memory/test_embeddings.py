"""Tests for embedding providers and the provider registry."""

import numpy as np
import pytest

from fleet_memory.config import EmbeddingConfig
from fleet_memory.embeddings import (
    PROVIDERS,
    FunctionEmbedder,
    HashingEmbedder,
    is_compatible,
    parse_version,
    resolve_provider,
)
from fleet_memory.errors import InvalidInput
from fleet_memory.vector_index import EmbeddingIndex


class TestHashingEmbedder:

    @pytest.fixture
    def embedder(self):
        return HashingEmbedder(128)

    def test_deterministic(self, embedder):
        assert np.array_equal(embedder.embed("covering index"), embedder.embed("covering index"))

    def test_unit_length(self, embedder):
        assert np.linalg.norm(embedder.embed("Use covering indexes")) == pytest.approx(1.0)

    def test_case_insensitive(self, embedder):
        assert np.array_equal(embedder.embed("Index"), embedder.embed("index"))

    def test_shared_vocabulary_scores_higher(self, embedder):
        base = embedder.embed("db Index Use covering indexes")
        near = embedder.embed("covering indexes for db")
        far = embedder.embed("rotate the auth token weekly")
        assert EmbeddingIndex.similarity(base, near) > EmbeddingIndex.similarity(base, far)

    def test_text_without_tokens_is_zero(self, embedder):
        assert not embedder.embed("!!!").any()

    def test_rejects_non_positive_dimension(self):
        with pytest.raises(InvalidInput):
            HashingEmbedder(0)


class TestFunctionEmbedder:

    def test_wraps_callable(self):
        provider = FunctionEmbedder(lambda text: [len(text), 0.0], 2, name="length")
        assert provider.name == "length"
        assert provider("abc").tolist() == [3.0, 0.0]
        assert provider.describe() == {'provider': 'length', 'version': '1.0.0', 'dimension': 2}


class TestProviderRegistry:

    def test_registry_is_closed_set(self):
        assert set(PROVIDERS) == {"hashing", "sentence-transformers"}

    def test_resolve_hashing(self):
        provider = resolve_provider(EmbeddingConfig(provider="hashing", dimension=32))
        assert isinstance(provider, HashingEmbedder)
        assert provider.dimension == 32

    def test_resolve_unknown_provider(self):
        with pytest.raises(InvalidInput, match="Unknown embedding provider"):
            resolve_provider(EmbeddingConfig(provider="word2vec"))

    def test_resolve_checks_version(self):
        resolve_provider(EmbeddingConfig(provider="hashing", provider_version="1.0"))
        with pytest.raises(InvalidInput, match="not compatible"):
            resolve_provider(EmbeddingConfig(provider="hashing", provider_version="2.0.0"))

    @pytest.mark.parametrize("available,required,expected", [
        ("1.2.0", "1.0.0", True),
        ("1.2.0", "1.2.0", True),
        ("1.2.0", "1.3", False),
        ("2.0.0", "1.0.0", False),
    ])
    def test_is_compatible(self, available, required, expected):
        assert is_compatible(available, required) is expected

    def test_parse_version(self):
        assert parse_version("2") == (2, 0, 0)
        with pytest.raises(InvalidInput):
            parse_version("1.x")
