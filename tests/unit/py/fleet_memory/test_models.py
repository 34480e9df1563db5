"""Tests for the memory data model."""

import json
from datetime import datetime, timezone

import pytest

from fleet_memory.errors import InvalidInput
from fleet_memory.models import (
    Context,
    DistanceMetric,
    Knowledge,
    SimilarityMatch,
    dedupe_by_id,
    merge_tags,
    parse_timestamp,
    rank_knowledge,
)


class TestContext:
    """Tests for the Context dataclass."""

    def test_tags_are_deduplicated_in_order(self):
        ctx = Context("a1", "s1", tags=["x", "y", "x", "z"])
        assert ctx.tags == ["x", "y", "z"]

    def test_add_tag_is_idempotent(self):
        ctx = Context("a1", "s1")
        ctx.add_tag("learned")
        ctx.add_tag("learned")
        assert ctx.tags == ["learned"]
        assert ctx.has_tag("learned")

    def test_entities_keep_duplicates(self):
        ctx = Context("a1", "s1", entities=["Index", "Index"])
        assert ctx.entities == ["Index", "Index"]

    def test_json_round_trip(self, sample_context):
        """to_dict output survives JSON and rebuilds an equal context."""
        data = json.loads(json.dumps(sample_context.to_dict()))
        restored = Context.from_dict(data)
        assert restored == sample_context

    def test_from_dict_ignores_unknown_fields(self):
        ctx = Context.from_dict({"agent_id": "a1", "session_id": "s1", "extra": 1})
        assert ctx.agent_id == "a1"

    def test_validate_rejects_blank_ids(self):
        with pytest.raises(InvalidInput):
            Context("", "s1").validate()
        with pytest.raises(InvalidInput):
            Context("a1", "  ").validate()

    def test_validate_rejects_out_of_range_confidence(self):
        with pytest.raises(InvalidInput):
            Context("a1", "s1", confidence=1.5).validate()

    def test_copy_is_independent(self, sample_context):
        clone = sample_context.copy()
        clone.entities.append("Other")
        clone.metadata["ticket"] = "changed"
        assert "Other" not in sample_context.entities
        assert sample_context.metadata["ticket"] == "DB-42"


class TestKnowledge:
    """Tests for the Knowledge dataclass."""

    def test_ids_are_unique(self):
        assert Knowledge().id != Knowledge().id

    def test_dedup_key_and_source_text(self, sample_knowledge):
        assert sample_knowledge.dedup_key == ("db", "Index", "Use covering indexes")
        assert sample_knowledge.source_text == "db Index Use covering indexes"

    def test_validate_requires_content(self):
        with pytest.raises(InvalidInput):
            Knowledge(domain="db", concept="", rule="r").validate()
        with pytest.raises(InvalidInput):
            Knowledge(domain="db", concept="c", rule="r", confidence=-0.1).validate()

    def test_last_activity_prefers_last_use(self, sample_knowledge):
        assert sample_knowledge.last_activity == sample_knowledge.created_at
        used = datetime(2030, 1, 1, tzinfo=timezone.utc)
        sample_knowledge.last_used_at = used
        assert sample_knowledge.last_activity == used

    def test_json_round_trip(self, sample_knowledge):
        sample_knowledge.embedding = [0.1, 0.2]
        data = json.loads(json.dumps(sample_knowledge.to_dict()))
        assert Knowledge.from_dict(data) == sample_knowledge


class TestHelpers:
    """Tests for ranking and merge helpers."""

    def test_merge_tags_keeps_first_seen_order(self):
        assert merge_tags(["perf"], ["new", "perf"], None) == ["perf", "new"]

    def test_rank_by_confidence_then_usage(self):
        a = Knowledge(domain="d", concept="a", rule="r", confidence=0.8, usage_count=1)
        b = Knowledge(domain="d", concept="b", rule="r", confidence=0.9, usage_count=0)
        c = Knowledge(domain="d", concept="c", rule="r", confidence=0.8, usage_count=5)
        assert [k.concept for k in rank_knowledge([a, b, c])] == ["b", "c", "a"]

    def test_dedupe_keeps_first(self):
        a = Knowledge(id="k1", domain="d", concept="a", rule="r", confidence=0.5)
        b = Knowledge(id="k1", domain="d", concept="a", rule="r", confidence=0.9)
        assert dedupe_by_id([a, b]) == [a]

    def test_dedupe_keeps_highest_confidence(self):
        a = Knowledge(id="k1", domain="d", concept="a", rule="r", confidence=0.5)
        b = Knowledge(id="k1", domain="d", concept="a", rule="r", confidence=0.9)
        assert dedupe_by_id([a, b], keep_highest_confidence=True) == [b]

    def test_parse_timestamp_attaches_utc(self):
        parsed = parse_timestamp("2024-01-01T00:00:00")
        assert parsed.tzinfo is not None
        assert parsed.utcoffset().total_seconds() == 0

    def test_distance_metric_parse(self):
        assert DistanceMetric.parse("COSINE") is DistanceMetric.COSINE
        assert DistanceMetric.parse(DistanceMetric.DOT) is DistanceMetric.DOT
        with pytest.raises(InvalidInput):
            DistanceMetric.parse("manhattan")

    def test_similarity_match_to_dict(self, sample_knowledge):
        match = SimilarityMatch(sample_knowledge, 0.87)
        data = match.to_dict()
        assert data["score"] == 0.87
        assert data["distance_metric"] == "cosine"
        assert data["knowledge"]["concept"] == "Index"
