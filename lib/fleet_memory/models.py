"""Memory data model - contexts, knowledge and similarity matches."""

import copy
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import InvalidInput, require, require_confidence


class DistanceMetric(Enum):
    COSINE = "cosine"
    DOT = "dot"
    EUCLIDEAN = "euclidean"

    @classmethod
    def parse(cls, value) -> 'DistanceMetric':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidInput(f"Unsupported distance metric: {value}") from None


class KnowledgeStatus(Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return as_utc(datetime.fromisoformat(str(value)))


def merge_tags(*groups: Iterable[str]) -> List[str]:
    """Union of tag groups, keeping first-seen order."""
    merged: List[str] = []
    for group in groups:
        for tag in group or []:
            if tag not in merged:
                merged.append(tag)
    return merged


def new_knowledge_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Context:
    """Session-scoped snapshot of an agent's working state.

    Keyed by (agent_id, session_id). Entities and decisions keep order and
    duplicates; tags behave as an ordered set.
    """
    agent_id: str
    session_id: str
    topic: str = ""
    entities: List[str] = field(default_factory=list)
    decisions: List[str] = field(default_factory=list)
    outcome: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.tags = merge_tags(self.tags)
        self.timestamp = as_utc(self.timestamp)

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def validate(self) -> None:
        require(self.agent_id, "agent_id")
        require(self.session_id, "session_id")
        require_confidence(self.confidence)

    def copy(self) -> 'Context':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Context':
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        values['timestamp'] = parse_timestamp(values.get('timestamp')) or utc_now()
        return cls(**values)


@dataclass
class Knowledge:
    """A durable, reusable fact deduplicated on (domain, concept, rule)."""
    id: str = field(default_factory=new_knowledge_id)
    domain: str = ""
    concept: str = ""
    rule: str = ""
    confidence: float = 1.0
    source: str = ""
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None
    usage_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    last_used_at: Optional[datetime] = None
    related_knowledge_ids: List[str] = field(default_factory=list)
    status: str = KnowledgeStatus.ACTIVE.value

    def __post_init__(self):
        self.tags = merge_tags(self.tags)
        self.related_knowledge_ids = merge_tags(self.related_knowledge_ids)
        self.created_at = as_utc(self.created_at)
        self.last_used_at = as_utc(self.last_used_at)

    @property
    def dedup_key(self) -> Tuple[str, str, str]:
        return (self.domain, self.concept, self.rule)

    @property
    def source_text(self) -> str:
        """Text the embedding is derived from."""
        return f"{self.domain} {self.concept} {self.rule}"

    @property
    def last_activity(self) -> datetime:
        return self.last_used_at or self.created_at

    def validate(self) -> None:
        require(self.id, "knowledge id")
        require(self.domain, "domain")
        require(self.concept, "concept")
        require(self.rule, "rule")
        require_confidence(self.confidence)
        if self.usage_count < 0:
            raise InvalidInput(f"usage_count cannot be negative, got {self.usage_count}")

    def copy(self) -> 'Knowledge':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        data['last_used_at'] = self.last_used_at.isoformat() if self.last_used_at else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Knowledge':
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if 'created_at' in values:
            values['created_at'] = parse_timestamp(values['created_at']) or utc_now()
        if 'last_used_at' in values:
            values['last_used_at'] = parse_timestamp(values['last_used_at'])
        return cls(**values)


@dataclass
class SimilarityMatch:
    """A knowledge row paired with its similarity score. Never persisted."""
    knowledge: Knowledge
    score: float
    distance_metric: str = DistanceMetric.COSINE.value
    match_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'knowledge': self.knowledge.to_dict(),
            'score': self.score,
            'distance_metric': self.distance_metric,
            'match_metadata': dict(self.match_metadata),
        }


def rank_knowledge(items: Iterable[Knowledge]) -> List[Knowledge]:
    """Confidence descending, then usage descending (stable)."""
    return sorted(items, key=lambda k: (-k.confidence, -k.usage_count))


def dedupe_by_id(items: Iterable[Knowledge], keep_highest_confidence: bool = False) -> List[Knowledge]:
    """Drop repeated ids, keeping the first instance or the most confident one."""
    chosen: Dict[str, Knowledge] = {}
    for item in items:
        current = chosen.get(item.id)
        if current is None:
            chosen[item.id] = item
        elif keep_highest_confidence and item.confidence > current.confidence:
            chosen[item.id] = item
    return list(chosen.values())
