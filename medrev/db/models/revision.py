"""
Revision Note Models.

SQLAlchemy models for the personalised revision note cache:
- Cluster taxonomy (seeded, read-only at runtime)
- Context -> cluster memoisation
- Cached notes per (learner, domain, difficulty, cluster) scope
- Evidence rows justifying each note
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

# Stored in scope_key where a key component is a wildcard (NULL)
SCOPE_WILDCARD = "__all__"


def build_scope_key(domain: str, difficulty: str | None, cluster_key: str | None) -> str:
    """Canonical, NULL-free form of a note key, used as the upsert conflict target."""
    return "|".join([domain, difficulty or SCOPE_WILDCARD, cluster_key or SCOPE_WILDCARD])


class ClusterTaxonomyEntry(Base):
    """Sub-topic cluster within a clinical domain."""

    __tablename__ = "rivision_note_taxonomy"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(Text, nullable=False)
    cluster_key: Mapped[str] = mapped_column(Text, nullable=False)
    cluster_label: Mapped[str] = mapped_column(Text, nullable=False)
    keywords: Mapped[list[str]] = mapped_column(JSONType, default=list)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(default=func.now())

    __table_args__ = (
        UniqueConstraint("domain", "cluster_key", name="uq_taxonomy_domain_cluster"),
        Index("idx_taxonomy_domain", "domain"),
    )

    def __repr__(self) -> str:
        return f"<ClusterTaxonomyEntry {self.domain}/{self.cluster_key}>"


class ContextClusterMapping(Base):
    """
    Memoised resolution of a content context to its note key.

    Written once per context and never expired; a row is only re-resolved
    if it is deleted.
    """

    __tablename__ = "rivision_context_clusters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    context_type: Mapped[str] = mapped_column(Text, nullable=False)
    context_id: Mapped[str] = mapped_column(Text, nullable=False)
    domain: Mapped[str] = mapped_column(Text, nullable=False)
    difficulty_level: Mapped[str | None] = mapped_column(Text)
    cluster_key: Mapped[str | None] = mapped_column(Text)
    matched_by: Mapped[str] = mapped_column(Text, default="heuristic")  # metadata|heuristic|cached
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("context_type", "context_id", name="uq_context_cluster"),
        Index("idx_context_cluster_domain", "domain"),
    )

    def __repr__(self) -> str:
        return f"<ContextClusterMapping {self.context_type}:{self.context_id} -> {self.cluster_key}>"


class RevisionNote(Base):
    """
    Personalised revision note for one learner and one scope.

    NULL difficulty/cluster mark a coarser scope used by the fallback chain.
    Regeneration overwrites the row in place (no versioning).
    """

    __tablename__ = "rivision_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    domain: Mapped[str] = mapped_column(Text, nullable=False)
    difficulty_level: Mapped[str | None] = mapped_column(Text)
    cluster_key: Mapped[str | None] = mapped_column(Text)
    scope_key: Mapped[str] = mapped_column(Text, nullable=False)

    # Content
    title: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    key_concepts: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    common_mistakes: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    rapid_checklist: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    practice_plan: Mapped[list[str]] = mapped_column(JSONType, nullable=False)

    # Provenance & staleness
    source_version: Mapped[str] = mapped_column(Text, nullable=False)
    performance_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    stale_at: Mapped[datetime | None] = mapped_column()

    # Timestamps
    last_generated_at: Mapped[datetime] = mapped_column(nullable=False)
    last_served_at: Mapped[datetime] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    evidence: Mapped[list[RevisionNoteEvidence]] = relationship(
        back_populates="note", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("user_id", "scope_key", name="uq_rivision_note_scope"),
        Index("idx_rivision_notes_user", "user_id"),
        Index("idx_rivision_notes_stale", "stale_at"),
    )

    def __repr__(self) -> str:
        return f"<RevisionNote user={self.user_id} scope={self.scope_key}>"


class RevisionNoteEvidence(Base):
    """Attempt that justified a note's generation. Replaced on regeneration."""

    __tablename__ = "rivision_note_evidence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    note_id: Mapped[int] = mapped_column(
        ForeignKey("rivision_notes.id", ondelete="CASCADE"), nullable=False
    )
    source_type: Mapped[str] = mapped_column(Text, nullable=False)  # case_attempt|ukmla_attempt
    source_id: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[int] = mapped_column(Integer, default=1)

    note: Mapped[RevisionNote] = relationship(back_populates="evidence")

    __table_args__ = (Index("idx_rivision_evidence_note", "note_id"),)
