"""
SQLAlchemy database models for lorekeep.

These models are the canonical store: conversations and messages synced from
every source, the per-source sync cursors, the analysis queue, and the
learnings and workflow signatures extracted from conversations.

All datetimes are naive UTC.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from lorekeep.utils.timestamps import utcnow

# JSONB on PostgreSQL, plain JSON everywhere else
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Provider(str, enum.Enum):
    """Conversation sources. CLI providers are file-watched, web providers are polled."""

    CLI_SOURCE_A = "cli_source_a"
    CLI_SOURCE_B = "cli_source_b"
    WEB_SOURCE_A = "web_source_a"
    WEB_SOURCE_B = "web_source_b"

    @property
    def is_cli(self) -> bool:
        return self in (Provider.CLI_SOURCE_A, Provider.CLI_SOURCE_B)


class SourceKind(str, enum.Enum):
    CLI = "cli"
    WEB = "web"
    IMPORT = "import"


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class AnalysisType(str, enum.Enum):
    LEARNING = "learning"
    WORKFLOW = "workflow"
    DEDUPE = "dedupe"


class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class LearningType(str, enum.Enum):
    CORRECTION = "correction"  # User corrected the assistant
    POSITIVE = "positive"  # User praised a behavior
    IMPLICIT = "implicit"  # Preference inferred without an explicit correction


class ReviewStatus(str, enum.Enum):
    """Lifecycle shared by learnings and workflow signatures."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Scope(str, enum.Enum):
    GLOBAL = "global"
    PROJECT = "project"


class Conversation(Base):
    """A conversation synced from one provider, unique per (provider, external_key)."""

    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    source_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    external_key: Mapped[str] = mapped_column(String(1024), nullable=False)

    title: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    project_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    preview_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Semantic search
    embedding: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    embedding_provider: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        UniqueConstraint("provider", "external_key", name="uq_conversation_provider_key"),
    )

    # Relationships
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.ordering_key",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id}, provider={self.provider!r}, "
            f"external_key={self.external_key!r}, messages={self.message_count})>"
        )


class Message(Base):
    """A single message, owned exclusively by its conversation."""

    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ordering_key: Mapped[str] = mapped_column(String(48), nullable=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "ordering_key", name="uq_message_ordering"),
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, role={self.role!r}, key={self.ordering_key!r})>"


class SyncCursor(Base):
    """Per-provider, per-descriptor progress fragment. Written only after a commit."""

    __tablename__ = "sync_cursors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    descriptor_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    fragment: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("provider", "descriptor_key", name="uq_sync_cursor_descriptor"),
    )

    def __repr__(self) -> str:
        return f"<SyncCursor(provider={self.provider!r}, key={self.descriptor_key!r})>"


ACTIVE_QUEUE_CLAUSE = text("status IN ('pending', 'in_progress')")
NOT_REJECTED_CLAUSE = text("status != 'rejected'")


class AnalysisQueueItem(Base):
    """One unit of analysis work for a (conversation, analysis type) pair."""

    __tablename__ = "analysis_queue"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    analysis_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=QueueStatus.PENDING.value, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    batch_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # At most one in-flight item per (conversation, type)
        Index(
            "uq_analysis_queue_active",
            "conversation_id",
            "analysis_type",
            unique=True,
            sqlite_where=ACTIVE_QUEUE_CLAUSE,
            postgresql_where=ACTIVE_QUEUE_CLAUSE,
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<AnalysisQueueItem(id={self.id}, type={self.analysis_type!r}, "
            f"status={self.status!r}, attempts={self.attempts})>"
        )


class Learning(Base):
    """A rule extracted from a conversation, reviewed by a human."""

    __tablename__ = "learnings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    rule_text: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_rule: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ReviewStatus.PENDING.value, index=True
    )
    scope: Mapped[str] = mapped_column(String(16), nullable=False)
    project_key: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    evidence: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="pattern")
    duplicate_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("learnings.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_learning_scope_rule",
            "scope",
            "project_key",
            "normalized_rule",
            unique=True,
            sqlite_where=NOT_REJECTED_CLAUSE,
            postgresql_where=NOT_REJECTED_CLAUSE,
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Learning(id={self.id}, status={self.status!r}, "
            f"rule={self.normalized_rule!r})>"
        )


class WorkflowSignature(Base):
    """A repeated task pattern shared by one or more conversations."""

    __tablename__ = "workflow_signatures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    signature: Mapped[str] = mapped_column(String(512), nullable=False)
    signature_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    artifact: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    domains: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    scope: Mapped[str] = mapped_column(String(16), nullable=False)
    project_key: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ReviewStatus.PENDING.value, index=True
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="pattern")
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_workflow_scope_signature",
            "scope",
            "project_key",
            "signature_hash",
            unique=True,
            sqlite_where=NOT_REJECTED_CLAUSE,
            postgresql_where=NOT_REJECTED_CLAUSE,
        ),
    )

    members: Mapped[list["WorkflowSignatureMember"]] = relationship(
        back_populates="signature", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<WorkflowSignature(id={self.id}, signature={self.signature!r})>"


class WorkflowSignatureMember(Base):
    """Links a conversation to the workflow signature it exhibits."""

    __tablename__ = "workflow_signature_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    signature_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("workflow_signatures.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    snippet: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("signature_id", "conversation_id", name="uq_workflow_member"),
    )

    signature: Mapped["WorkflowSignature"] = relationship(back_populates="members")


class SearchIndexEntry(Base):
    """Derived term postings for lexical search. Rebuildable from conversations."""

    __tablename__ = "search_index"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    term: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    field: Mapped[str] = mapped_column(String(16), nullable=False)  # title or message
    frequency: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("conversation_id", "term", "field", name="uq_search_posting"),
    )
