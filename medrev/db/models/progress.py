"""
Learner Progress Models.

SQLAlchemy models for everything the engine records per learner:
- Immutable attempt history (cases and UKMLA questions)
- SM-2 review cards per (learner, item)
- Incremental aggregate stats (overall, per domain, per difficulty)
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base
from .content import Case, UkmlaQuestion


class CaseAttempt(Base):
    """One submitted case run. Insert-only."""

    __tablename__ = "case_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    case_id: Mapped[int] = mapped_column(
        ForeignKey("cases.id", ondelete="CASCADE"), nullable=False
    )
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(nullable=False)

    case: Mapped[Case] = relationship()

    __table_args__ = (Index("idx_case_attempts_user_completed", "user_id", "completed_at"),)

    def __repr__(self) -> str:
        return f"<CaseAttempt user={self.user_id} case={self.case_id} score={self.score}>"


class UkmlaAttempt(Base):
    """One answered UKMLA question. Insert-only."""

    __tablename__ = "ukmla_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    question_id: Mapped[int] = mapped_column(
        ForeignKey("ukmla_questions.id", ondelete="CASCADE"), nullable=False
    )
    selected_option_id: Mapped[int] = mapped_column(Integer, nullable=False)
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(nullable=False)

    question: Mapped[UkmlaQuestion] = relationship()

    __table_args__ = (Index("idx_ukmla_attempts_user_completed", "user_id", "completed_at"),)

    def __repr__(self) -> str:
        return f"<UkmlaAttempt user={self.user_id} question={self.question_id} correct={self.is_correct}>"


class ReviewCard(Base):
    """
    SM-2 scheduling state for one learner and one item.

    ease_factor is stored x1000 (2500 == 2.5) and never drops below 1300.
    next_review_date is always last_reviewed_at + interval days.
    """

    __tablename__ = "review_cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    item_kind: Mapped[str] = mapped_column(Text, nullable=False)  # 'case' | 'question'
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)

    repetitions: Mapped[int] = mapped_column(Integer, default=0)
    ease_factor: Mapped[int] = mapped_column(Integer, default=2500)
    interval: Mapped[int] = mapped_column(Integer, default=1)  # days
    next_review_date: Mapped[datetime] = mapped_column(nullable=False)
    last_reviewed_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        UniqueConstraint("user_id", "item_kind", "item_id", name="uq_review_card_item"),
        Index("idx_review_cards_due", "user_id", "next_review_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReviewCard user={self.user_id} {self.item_kind}={self.item_id} "
            f"reps={self.repetitions} ef={self.ease_factor} interval={self.interval}>"
        )


class _StatColumns:
    """Shared aggregate columns, updated incrementally on every attempt."""

    total_attempts: Mapped[int] = mapped_column(Integer, default=0)
    total_score: Mapped[int] = mapped_column(Integer, default=0)
    total_correct: Mapped[int] = mapped_column(Integer, default=0)
    average_score: Mapped[int] = mapped_column(Integer, default=0)
    last_activity_at: Mapped[datetime | None] = mapped_column()


class UserStats(_StatColumns, Base):
    __tablename__ = "user_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    mode: Mapped[str] = mapped_column(Text, nullable=False)  # 'cases' | 'ukmla'

    __table_args__ = (UniqueConstraint("user_id", "mode", name="uq_user_stats"),)


class DomainStats(_StatColumns, Base):
    __tablename__ = "domain_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    mode: Mapped[str] = mapped_column(Text, nullable=False)
    domain: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "mode", "domain", name="uq_domain_stats"),)


class DifficultyStats(_StatColumns, Base):
    __tablename__ = "difficulty_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    mode: Mapped[str] = mapped_column(Text, nullable=False)
    difficulty_level: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "mode", "difficulty_level", name="uq_difficulty_stats"),
    )
