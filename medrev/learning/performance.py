"""
Performance Aggregator.

Two views of learner performance:
- Incremental aggregate rows (overall / per domain / per difficulty) per
  practice mode, updated on every attempt with running-mean arithmetic
- Live, cluster-scoped snapshots recomputed from recent attempt history,
  used by the revision note staleness check
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from medrev.db.models import (
    Case,
    CaseAttempt,
    DifficultyStats,
    DomainStats,
    UkmlaAttempt,
    UkmlaQuestion,
    UserStats,
)
from medrev.learning.context_resolver import ContextResolver
from medrev.learning.review_scheduler import round_half_up
from medrev.learning.schemas import AnalyticsMode, ContextType, NoteKey, PerformanceSnapshot

MODE_CASES = AnalyticsMode.CASES.value
MODE_UKMLA = AnalyticsMode.UKMLA.value

# Points per UKMLA answer, by difficulty: (correct, incorrect)
QUESTION_SCORES = {
    "Foundation": (10, -2),
    "Core": (15, -3),
    "Advanced": (20, -4),
}


def question_score(difficulty: str, is_correct: bool) -> int:
    correct, incorrect = QUESTION_SCORES.get(difficulty, QUESTION_SCORES["Advanced"])
    return correct if is_correct else incorrect


@dataclass
class StatLine:
    """One aggregate row, detached from the session."""

    label: str | None
    total_attempts: int
    total_score: int
    average_score: int
    last_activity_at: datetime | None = None


def merge_averages(rows: Iterable[StatLine], label: str | None = None) -> StatLine:
    """Combine independently scored rows with attempt-weighted averaging."""
    rows = list(rows)
    attempts = sum(row.total_attempts for row in rows)
    weighted = sum(row.average_score * row.total_attempts for row in rows)
    activity = [row.last_activity_at for row in rows if row.last_activity_at is not None]
    return StatLine(
        label=label,
        total_attempts=attempts,
        total_score=sum(row.total_score for row in rows),
        average_score=round_half_up(weighted / attempts) if attempts else 0,
        last_activity_at=max(activity) if activity else None,
    )


class PerformanceAggregator:
    """Maintain aggregate stats and compute live snapshots."""

    def __init__(
        self,
        session: Session,
        clock: Callable[[], datetime],
        resolver: ContextResolver | None = None,
        snapshot_scan_limit: int = 80,
    ):
        self.session = session
        self.clock = clock
        self.resolver = resolver or ContextResolver(session, clock)
        self.snapshot_scan_limit = snapshot_scan_limit

    # =========================================================================
    # Incremental Aggregates
    # =========================================================================

    def record_outcome(
        self,
        user_id: str,
        mode: str,
        domain: str,
        difficulty: str,
        score: int,
        is_correct: bool | None = None,
    ) -> None:
        """
        Fold one attempt into the overall, domain and difficulty rows.

        Case mode averages raw scores; UKMLA mode averages percent correct.
        """
        now = self.clock()
        targets = [
            (UserStats, {"user_id": user_id, "mode": mode}),
            (DomainStats, {"user_id": user_id, "mode": mode, "domain": domain}),
            (DifficultyStats, {"user_id": user_id, "mode": mode, "difficulty_level": difficulty}),
        ]
        for model, key in targets:
            row = self.session.execute(
                select(model).filter_by(**key).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                row = model(**key, total_attempts=0, total_score=0, total_correct=0, average_score=0)
                self.session.add(row)

            row.total_attempts += 1
            row.total_score += score
            if mode == MODE_UKMLA:
                row.total_correct += 1 if is_correct else 0
                row.average_score = round_half_up(row.total_correct / row.total_attempts * 100)
            else:
                row.average_score = round_half_up(row.total_score / row.total_attempts)
            row.last_activity_at = now

        self.session.flush()

    def _modes(self, mode: AnalyticsMode) -> list[str]:
        if mode is AnalyticsMode.ALL:
            return [MODE_CASES, MODE_UKMLA]
        return [mode.value]

    def overall(self, user_id: str, mode: AnalyticsMode = AnalyticsMode.ALL) -> StatLine:
        rows = self.session.execute(
            select(UserStats).where(UserStats.user_id == user_id, UserStats.mode.in_(self._modes(mode)))
        ).scalars()
        return merge_averages((self._line(row, None) for row in rows))

    def domain_breakdown(self, user_id: str, mode: AnalyticsMode = AnalyticsMode.ALL) -> list[StatLine]:
        rows = self.session.execute(
            select(DomainStats).where(
                DomainStats.user_id == user_id, DomainStats.mode.in_(self._modes(mode))
            )
        ).scalars()
        return self._group((self._line(row, row.domain) for row in rows))

    def difficulty_breakdown(
        self, user_id: str, mode: AnalyticsMode = AnalyticsMode.ALL
    ) -> list[StatLine]:
        rows = self.session.execute(
            select(DifficultyStats).where(
                DifficultyStats.user_id == user_id, DifficultyStats.mode.in_(self._modes(mode))
            )
        ).scalars()
        return self._group((self._line(row, row.difficulty_level) for row in rows))

    def aggregate_snapshot(
        self,
        user_id: str,
        domain: str | None = None,
        difficulty: str | None = None,
    ) -> PerformanceSnapshot:
        """
        Merged aggregate view at domain or difficulty granularity.

        Aggregates are kept per domain and per difficulty, never per pair, so
        a (domain, difficulty) request is answered from live history instead.
        """
        if domain and difficulty:
            return self.snapshot(user_id, NoteKey(domain=domain, difficulty=difficulty))

        if domain:
            lines = [line for line in self.domain_breakdown(user_id) if line.label == domain]
        elif difficulty:
            lines = [line for line in self.difficulty_breakdown(user_id) if line.label == difficulty]
        else:
            lines = [self.overall(user_id)]

        merged = merge_averages(lines)
        return PerformanceSnapshot(
            average_score=merged.average_score,
            total_attempts=merged.total_attempts,
            captured_at=self.clock(),
        )

    @staticmethod
    def _line(row, label: str | None) -> StatLine:
        return StatLine(
            label=label,
            total_attempts=row.total_attempts,
            total_score=row.total_score,
            average_score=row.average_score,
            last_activity_at=row.last_activity_at,
        )

    @staticmethod
    def _group(lines: Iterable[StatLine]) -> list[StatLine]:
        grouped: dict[str, list[StatLine]] = {}
        for line in lines:
            grouped.setdefault(line.label, []).append(line)
        return [merge_averages(group, label) for label, group in sorted(grouped.items())]

    # =========================================================================
    # Live Snapshots
    # =========================================================================

    def scoped_case_attempts(
        self, user_id: str, key: NoteKey, limit: int
    ) -> list[tuple[CaseAttempt, Case]]:
        """Most recent case attempts (newest first) whose case falls inside key."""
        rows = self.session.execute(
            select(CaseAttempt, Case)
            .join(Case, CaseAttempt.case_id == Case.id)
            .where(CaseAttempt.user_id == user_id)
            .order_by(CaseAttempt.completed_at.desc(), CaseAttempt.id.desc())
            .limit(limit)
        ).all()
        return [
            (attempt, medical_case)
            for attempt, medical_case in rows
            if self._in_scope(
                key,
                ContextType.CASE,
                medical_case.id,
                medical_case.clinical_domain,
                medical_case.difficulty_level,
            )
        ]

    def scoped_question_attempts(
        self, user_id: str, key: NoteKey, limit: int
    ) -> list[tuple[UkmlaAttempt, UkmlaQuestion]]:
        """Most recent UKMLA attempts (newest first) whose question falls inside key."""
        rows = self.session.execute(
            select(UkmlaAttempt, UkmlaQuestion)
            .join(UkmlaQuestion, UkmlaAttempt.question_id == UkmlaQuestion.id)
            .where(UkmlaAttempt.user_id == user_id)
            .order_by(UkmlaAttempt.completed_at.desc(), UkmlaAttempt.id.desc())
            .limit(limit)
        ).all()
        return [
            (attempt, question)
            for attempt, question in rows
            if self._in_scope(
                key,
                ContextType.UKMLA_QUESTION,
                question.id,
                question.category,
                question.difficulty_level,
            )
        ]

    def _in_scope(
        self,
        key: NoteKey,
        context_type: ContextType,
        item_id: int,
        domain: str,
        difficulty: str,
    ) -> bool:
        if domain != key.domain:
            return False
        if key.difficulty and difficulty != key.difficulty:
            return False
        if key.cluster_key:
            return self.resolver.resolve(context_type, item_id).cluster_key == key.cluster_key
        return True

    def snapshot(self, user_id: str, key: NoteKey) -> PerformanceSnapshot:
        """
        Live performance inside key.

        Case attempts contribute their raw score, UKMLA attempts 100 or 0.
        """
        scores = [
            attempt.score
            for attempt, _ in self.scoped_case_attempts(user_id, key, self.snapshot_scan_limit)
        ]
        scores.extend(
            100 if attempt.is_correct else 0
            for attempt, _ in self.scoped_question_attempts(user_id, key, self.snapshot_scan_limit)
        )

        if not scores:
            return PerformanceSnapshot(average_score=0, total_attempts=0, captured_at=self.clock())

        return PerformanceSnapshot(
            average_score=round_half_up(sum(scores) / len(scores)),
            total_attempts=len(scores),
            captured_at=self.clock(),
        )
