"""Durable knowledge table and engine helpers (SQLAlchemy)."""

from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Knowledge, KnowledgeStatus, as_utc, utc_now


class Base(DeclarativeBase):
    pass


class KnowledgeRow(Base):
    """One deduplicated knowledge fact."""

    __tablename__ = "knowledge"
    __table_args__ = (
        UniqueConstraint("domain", "concept", "rule", name="uq_knowledge_dedup_key"),
        Index("ix_knowledge_domain_concept", "domain", "concept"),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    domain: Mapped[str] = mapped_column(String(100), index=True)
    concept: Mapped[str] = mapped_column(String(200))
    rule: Mapped[str] = mapped_column(Text)
    confidence: Mapped[float] = mapped_column(Float, index=True, default=1.0)
    source: Mapped[str] = mapped_column(String(100), default="")
    tags: Mapped[list] = mapped_column(JSON, default=list)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    embedding: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, index=True, default=0)
    created_at = mapped_column(DateTime(timezone=True), index=True, default=utc_now)
    last_used_at = mapped_column(DateTime(timezone=True), nullable=True)
    related_knowledge_ids: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(20), default=KnowledgeStatus.ACTIVE.value)

    @classmethod
    def from_model(cls, knowledge: Knowledge) -> 'KnowledgeRow':
        row = cls(id=knowledge.id)
        row.apply(knowledge)
        return row

    def apply(self, knowledge: Knowledge) -> None:
        """Copy every mutable field from the model onto the row."""
        self.domain = knowledge.domain
        self.concept = knowledge.concept
        self.rule = knowledge.rule
        self.confidence = knowledge.confidence
        self.source = knowledge.source
        self.tags = list(knowledge.tags)
        self.meta = dict(knowledge.metadata)
        self.embedding = list(knowledge.embedding) if knowledge.embedding else None
        self.usage_count = knowledge.usage_count
        self.created_at = knowledge.created_at
        self.last_used_at = knowledge.last_used_at
        self.related_knowledge_ids = list(knowledge.related_knowledge_ids)
        self.status = knowledge.status

    def to_model(self) -> Knowledge:
        return Knowledge(
            id=self.id,
            domain=self.domain,
            concept=self.concept,
            rule=self.rule,
            confidence=self.confidence,
            source=self.source or "",
            tags=list(self.tags or []),
            metadata=dict(self.meta or {}),
            embedding=list(self.embedding) if self.embedding else None,
            usage_count=self.usage_count or 0,
            created_at=as_utc(self.created_at),
            last_used_at=as_utc(self.last_used_at),
            related_knowledge_ids=list(self.related_knowledge_ids or []),
            status=self.status or KnowledgeStatus.ACTIVE.value,
        )

    def touch(self) -> None:
        """Record one use."""
        self.usage_count = (self.usage_count or 0) + 1
        self.last_used_at = utc_now()


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite") and (":memory:" in database_url or database_url.rstrip("/") == "sqlite:"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def init_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)
