"""Shared pytest fixtures for fleet memory tests."""

import re
import sys
from pathlib import Path

import fakeredis
import pytest

# Add lib directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "lib"))

from fleet_memory.config import MemoryConfig
from fleet_memory.context_store import SessionContextStore
from fleet_memory.coordinator import MemoryCoordinator
from fleet_memory.db import create_store_engine
from fleet_memory.embeddings import FunctionEmbedder, HashingEmbedder
from fleet_memory.knowledge_store import KnowledgeStore
from fleet_memory.models import Context, Knowledge
from fleet_memory.vector_index import EmbeddingIndex


# Small topic vocabulary: texts that talk about the same concepts land on the
# same axes, which is what a real sentence embedding model gives us.
CONCEPT_AXES = {
    'index': 0, 'indexes': 0, 'indexing': 0, 'covering': 0,
    'performance': 1, 'faster': 1, 'optimization': 1, 'speed': 1, 'slow': 1,
    'sql': 2, 'query': 2, 'queries': 2, 'server': 2,
    'cache': 3, 'caching': 3, 'redis': 3,
    'auth': 4, 'token': 4, 'login': 4,
}
CONCEPT_DIMENSION = 8


def concept_vector(text):
    vector = [0.0] * CONCEPT_DIMENSION
    for token in re.findall(r"\w+", text.lower()):
        axis = CONCEPT_AXES.get(token)
        if axis is not None:
            vector[axis] += 1.0
    return vector


@pytest.fixture
def mock_redis():
    """Create a fake Redis client for testing."""
    return fakeredis.FakeStrictRedis(decode_responses=True)


@pytest.fixture
def agent_id():
    """Default test agent ID."""
    return "test-agent-001"


@pytest.fixture
def other_agent_id():
    """Another agent ID for multi-agent tests."""
    return "test-agent-002"


@pytest.fixture
def memory_config():
    return MemoryConfig(key_prefix="test", database_url="sqlite:///:memory:")


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads."""
    engine = create_store_engine("sqlite:///:memory:")
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite engine, one connection per thread."""
    engine = create_store_engine(f"sqlite:///{tmp_path / 'knowledge.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def hashing_provider(memory_config):
    return HashingEmbedder(memory_config.embedding.dimension)


@pytest.fixture
def concept_provider():
    return FunctionEmbedder(concept_vector, CONCEPT_DIMENSION, name="concepts")


@pytest.fixture
def index(hashing_provider, memory_config):
    return EmbeddingIndex(hashing_provider, memory_config)


@pytest.fixture
def knowledge_store(engine, index, memory_config):
    return KnowledgeStore(engine, index, memory_config)


@pytest.fixture
def context_store(mock_redis, memory_config):
    return SessionContextStore(mock_redis, memory_config)


@pytest.fixture
def coordinator(context_store, knowledge_store, index, memory_config):
    return MemoryCoordinator(context_store, knowledge_store, index, memory_config)


@pytest.fixture
def concept_coordinator(mock_redis, engine, concept_provider, memory_config):
    """Coordinator whose embeddings group texts by topic vocabulary."""
    index = EmbeddingIndex(concept_provider, memory_config)
    return MemoryCoordinator(
        SessionContextStore(mock_redis, memory_config),
        KnowledgeStore(engine, index, memory_config),
        index,
        memory_config,
    )


@pytest.fixture
def sample_context(agent_id):
    return Context(
        agent_id=agent_id,
        session_id="session-001",
        topic="Index Optimization",
        entities=["SQL Server", "Index"],
        decisions=["Add covering index", "Drop unused index"],
        tags=["database"],
        metadata={"ticket": "DB-42"},
        confidence=0.8,
    )


@pytest.fixture
def sample_knowledge():
    return Knowledge(
        domain="db",
        concept="Index",
        rule="Use covering indexes",
        confidence=0.9,
        source="db-agent",
        tags=["perf"],
    )


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "p0: marks critical invariant tests"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests that wire every component together"
    )
    config.addinivalue_line(
        "markers", "slow: marks slow-running tests"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers based on test location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
