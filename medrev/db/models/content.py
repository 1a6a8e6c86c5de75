"""
Practice Content Models.

Read model for the authored practice content the engine schedules and
personalises against:
- Clinical cases (staged scenarios with weighted decision options)
- UKMLA single-best-answer questions

Authoring lives outside this package; the engine only reads these tables.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

DIFFICULTY_LEVELS = ("Foundation", "Core", "Advanced")


class Case(Base):
    """A staged clinical scenario."""

    __tablename__ = "cases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    clinical_domain: Mapped[str] = mapped_column(Text, nullable=False)  # e.g. "Cardiology"
    difficulty_level: Mapped[str] = mapped_column(Text, nullable=False)
    rivision_cluster_key: Mapped[str | None] = mapped_column(Text)  # Author-tagged cluster
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(default=func.now())

    stages: Mapped[list[CaseStage]] = relationship(
        back_populates="case", cascade="all, delete-orphan", order_by="CaseStage.stage_order"
    )

    def __repr__(self) -> str:
        return f"<Case id={self.id} domain={self.clinical_domain} difficulty={self.difficulty_level}>"

    @property
    def free_text(self) -> str:
        return f"{self.title}\n{self.description}"


class CaseStage(Base):
    """Time-ordered step within a case."""

    __tablename__ = "case_stages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(
        ForeignKey("cases.id", ondelete="CASCADE"), nullable=False
    )
    stage_order: Mapped[int] = mapped_column(Integer, nullable=False)
    narrative: Mapped[str] = mapped_column(Text, nullable=False)

    case: Mapped[Case] = relationship(back_populates="stages")
    options: Mapped[list[StageOption]] = relationship(
        back_populates="stage", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("idx_case_stages_case", "case_id"),)


class StageOption(Base):
    """Decision point within a stage; score_weight feeds the attempt score."""

    __tablename__ = "stage_options"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stage_id: Mapped[int] = mapped_column(
        ForeignKey("case_stages.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)
    score_weight: Mapped[int] = mapped_column(Integer, default=0)  # +2 optimal, -5 fatal, ...

    stage: Mapped[CaseStage] = relationship(back_populates="options")

    __table_args__ = (Index("idx_stage_options_stage", "stage_id"),)


class UkmlaQuestion(Base):
    """Single-best-answer question."""

    __tablename__ = "ukmla_questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stem: Mapped[str] = mapped_column(Text, nullable=False)
    explanation: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    difficulty_level: Mapped[str] = mapped_column(Text, nullable=False)
    rivision_cluster_key: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(default=func.now())

    options: Mapped[list[UkmlaQuestionOption]] = relationship(
        back_populates="question",
        cascade="all, delete-orphan",
        order_by="UkmlaQuestionOption.option_order",
    )

    def __repr__(self) -> str:
        return f"<UkmlaQuestion id={self.id} category={self.category}>"

    @property
    def free_text(self) -> str:
        return f"{self.stem}\n{self.explanation}"


class UkmlaQuestionOption(Base):
    __tablename__ = "ukmla_question_options"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question_id: Mapped[int] = mapped_column(
        ForeignKey("ukmla_questions.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)
    option_order: Mapped[int] = mapped_column(Integer, default=1)

    question: Mapped[UkmlaQuestion] = relationship(back_populates="options")

    __table_args__ = (Index("idx_ukmla_options_question", "question_id"),)
