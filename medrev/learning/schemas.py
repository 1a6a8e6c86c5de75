"""
Boundary schemas for the revision engine.

Pydantic models validate everything that crosses into the engine: caller
requests, attempt outcomes, and generator output.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

Difficulty = Literal["Foundation", "Core", "Advanced"]


class ContextType(str, Enum):
    """Kinds of content a note request can be anchored to."""

    CASE = "case"
    UKMLA_QUESTION = "ukmla_question"
    CATEGORY = "category"


class CacheStatus(str, Enum):
    HIT = "hit"
    STALE_HIT = "stale_hit"
    MISS = "miss"


class AnalyticsMode(str, Enum):
    CASES = "cases"
    UKMLA = "ukmla"
    ALL = "all"


# =============================================================================
# Keys & Snapshots
# =============================================================================


class NoteKey(BaseModel):
    """Resolved (domain, difficulty, cluster) scope. None is a wildcard level."""

    model_config = ConfigDict(frozen=True)

    domain: str = Field(min_length=1, max_length=80)
    difficulty: Difficulty | None = None
    cluster_key: str | None = Field(default=None, max_length=120)

    def coarser(self) -> list[NoteKey]:
        """Fallback chain, most specific first."""
        chain = [self]
        if self.difficulty is not None and self.cluster_key is not None:
            chain.append(NoteKey(domain=self.domain, difficulty=self.difficulty))
        if self.difficulty is not None or self.cluster_key is not None:
            chain.append(NoteKey(domain=self.domain))
        return chain


class PerformanceSnapshot(BaseModel):
    average_score: int = 0
    total_attempts: int = 0
    captured_at: datetime | None = None


# =============================================================================
# Outcomes
# =============================================================================


class CaseOutcome(BaseModel):
    """A submitted case run: the decision options the learner picked."""

    kind: Literal["case"] = "case"
    case_id: int = Field(gt=0)
    selected_option_ids: list[int] = Field(min_length=1)


class QuestionOutcome(BaseModel):
    """An answered single-best-answer question."""

    kind: Literal["question"] = "question"
    question_id: int = Field(gt=0)
    selected_option_id: int = Field(gt=0)


AttemptOutcome = Annotated[Union[CaseOutcome, QuestionOutcome], Field(discriminator="kind")]


class DueItem(BaseModel):
    """A review card that is due now."""

    model_config = ConfigDict(from_attributes=True)

    item_kind: str
    item_id: int
    repetitions: int
    ease_factor: int
    interval: int
    next_review_date: datetime
    last_reviewed_at: datetime | None = None


class ScheduleResult(BaseModel):
    """What the caller learns after recording an attempt."""

    item_kind: Literal["case", "question"]
    item_id: int
    score: int
    quality: int
    is_correct: bool | None = None
    interval: int
    next_review_date: datetime


# =============================================================================
# Note Content
# =============================================================================

_Line = Annotated[str, Field(min_length=3, max_length=240)]


class NoteContent(BaseModel):
    """Generated note body. Generator output that fails validation is discarded."""

    title: str = Field(min_length=5, max_length=200)
    summary: str = Field(min_length=20, max_length=2000)
    key_concepts: list[_Line] = Field(min_length=3, max_length=8)
    common_mistakes: list[_Line] = Field(min_length=2, max_length=8)
    rapid_checklist: list[_Line] = Field(min_length=3, max_length=10)
    practice_plan: list[_Line] = Field(min_length=3, max_length=8)


class CaseEvidence(BaseModel):
    attempt_id: int
    score: int
    title: str
    description: str


class QuestionEvidence(BaseModel):
    attempt_id: int
    is_correct: bool
    stem: str
    explanation: str


class NoteEvidence(BaseModel):
    """Recent attempts in scope, passed to the content generator."""

    case_evidence: list[CaseEvidence] = Field(default_factory=list)
    ukmla_evidence: list[QuestionEvidence] = Field(default_factory=list)


# =============================================================================
# Requests & Results
# =============================================================================


class GetNoteRequest(BaseModel):
    context_type: ContextType
    context_id: Annotated[str, Field(min_length=1, max_length=200)]
    force_refresh: bool = False


class RefreshNoteRequest(BaseModel):
    domain: str = Field(min_length=2, max_length=80)
    difficulty: Difficulty | None = None
    cluster_key: str | None = Field(default=None, min_length=2, max_length=120)
    source_version: str | None = Field(default=None, min_length=3, max_length=120)


class NoteView(BaseModel):
    """Detached, serialisable copy of a stored note."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    domain: str
    difficulty_level: str | None
    cluster_key: str | None
    title: str
    summary: str
    key_concepts: list[str]
    common_mistakes: list[str]
    rapid_checklist: list[str]
    practice_plan: list[str]
    source_version: str
    performance_snapshot: dict
    stale_at: datetime | None
    last_generated_at: datetime
    last_served_at: datetime


class NoteResult(BaseModel):
    note: NoteView
    cache_status: CacheStatus
    note_key: NoteKey
