"""
Learning Engine.

Caller-facing facade over the scheduler, aggregator, resolver and note
cache. Every public call runs in its own transaction; callers identify the
learner with an opaque user_id.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from loguru import logger
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from medrev.config import Settings, get_settings
from medrev.db.database import get_session_factory, session_scope
from medrev.db.models import (
    Case,
    CaseAttempt,
    CaseStage,
    StageOption,
    UkmlaAttempt,
    UkmlaQuestion,
    UkmlaQuestionOption,
)
from medrev.errors import InvalidInput, NotFound, StoreError
from medrev.learning.context_resolver import ContextResolver
from medrev.learning.locks import KeyedLocks
from medrev.learning.note_generator import ContentGenerator, GeminiNoteGenerator
from medrev.learning.performance import (
    MODE_CASES,
    MODE_UKMLA,
    PerformanceAggregator,
    StatLine,
    question_score,
)
from medrev.learning.refresh_queue import RefreshQueue
from medrev.learning.review_scheduler import (
    ReviewScheduler,
    SM2Config,
    SM2Scheduler,
    quality_from_correctness,
    quality_from_score,
)
from medrev.learning.revision_cache import RevisionNoteCache
from medrev.learning.schemas import (
    AnalyticsMode,
    AttemptOutcome,
    CaseOutcome,
    ContextType,
    DueItem,
    GetNoteRequest,
    NoteKey,
    NoteResult,
    NoteView,
    PerformanceSnapshot,
    QuestionOutcome,
    RefreshNoteRequest,
    ScheduleResult,
)

_outcome_adapter = TypeAdapter(AttemptOutcome)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored datetime uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _first_error(e: ValidationError) -> str:
    error = e.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error['msg']}" if location else error["msg"]


class LearningEngine:
    """
    Adaptive revision engine.

    Usage:
        engine = LearningEngine()
        engine.record_attempt("user-1", QuestionOutcome(question_id=4, selected_option_id=17))
        result = engine.get_revision_note("user-1", "ukmla_question", "4")
        engine.close()
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        generator: ContentGenerator | None = None,
        refresh_queue: RefreshQueue | None = None,
        clock: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.generator = generator or GeminiNoteGenerator(self.settings)
        self.refresh_queue = refresh_queue or RefreshQueue(self.settings.refresh_workers)
        self.clock = clock or utcnow
        self.sm2 = SM2Scheduler(
            SM2Config(
                initial_ease=self.settings.sm2_initial_ease,
                minimum_ease=self.settings.sm2_minimum_ease,
            )
        )
        self._user_locks = KeyedLocks()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with session_scope(self.session_factory) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Store failure: {}", e)
            raise StoreError(str(e)) from e

    def _cache(self, session: Session) -> RevisionNoteCache:
        resolver = ContextResolver(session, self.clock)
        return RevisionNoteCache(
            session,
            self.clock,
            self.generator,
            self.settings,
            resolver=resolver,
            performance=self._aggregator(session, resolver),
            refresh_queue=self.refresh_queue,
            session_factory=self.session_factory,
        )

    def _aggregator(
        self, session: Session, resolver: ContextResolver | None = None
    ) -> PerformanceAggregator:
        return PerformanceAggregator(
            session,
            self.clock,
            resolver or ContextResolver(session, self.clock),
            self.settings.snapshot_scan_limit,
        )

    @staticmethod
    def _require_user(user_id: str) -> str:
        if not user_id or not str(user_id).strip():
            raise InvalidInput("user_id is required")
        return str(user_id).strip()

    # =========================================================================
    # Attempts & Reviews
    # =========================================================================

    def record_attempt(
        self, user_id: str, outcome: CaseOutcome | QuestionOutcome | dict
    ) -> ScheduleResult:
        """
        Record one attempt and reschedule the item.

        The attempt row, the aggregate updates and the review card commit
        together; attempts by the same learner are serialised.

        Raises:
            InvalidInput: malformed outcome or options not belonging to the item
            NotFound: unknown case or question
            StoreError: the transaction failed and was rolled back
        """
        user_id = self._require_user(user_id)
        if isinstance(outcome, dict):
            try:
                outcome = _outcome_adapter.validate_python(outcome)
            except ValidationError as e:
                raise InvalidInput(_first_error(e)) from e

        with self._user_locks.hold(user_id), self._transaction() as session:
            if isinstance(outcome, CaseOutcome):
                return self._record_case(session, user_id, outcome)
            return self._record_question(session, user_id, outcome)

    def _record_case(self, session: Session, user_id: str, outcome: CaseOutcome) -> ScheduleResult:
        medical_case = session.get(Case, outcome.case_id)
        if medical_case is None:
            raise NotFound(f"Case not found: {outcome.case_id}")

        selected = set(outcome.selected_option_ids)
        if len(selected) != len(outcome.selected_option_ids):
            raise InvalidInput("Duplicate option in case outcome")

        options = session.execute(
            select(StageOption)
            .join(CaseStage, StageOption.stage_id == CaseStage.id)
            .where(CaseStage.case_id == medical_case.id, StageOption.id.in_(selected))
        ).scalars().all()
        if len(options) != len(selected):
            raise InvalidInput(f"Options do not belong to case {medical_case.id}")

        now = self.clock()
        score = sum(option.score_weight for option in options)
        quality = quality_from_score(score)

        session.add(
            CaseAttempt(user_id=user_id, case_id=medical_case.id, score=score, completed_at=now)
        )
        self._aggregator(session).record_outcome(
            user_id, MODE_CASES, medical_case.clinical_domain, medical_case.difficulty_level, score
        )
        card = ReviewScheduler(session, self.clock, self.sm2).record_outcome(
            user_id, "case", medical_case.id, quality
        )

        logger.info("Recorded case {} for {}: score={}, q={}", medical_case.id, user_id, score, quality)
        return ScheduleResult(
            item_kind="case",
            item_id=medical_case.id,
            score=score,
            quality=quality,
            interval=card.interval,
            next_review_date=card.next_review_date,
        )

    def _record_question(
        self, session: Session, user_id: str, outcome: QuestionOutcome
    ) -> ScheduleResult:
        question = session.get(UkmlaQuestion, outcome.question_id)
        if question is None:
            raise NotFound(f"Question not found: {outcome.question_id}")

        option = session.get(UkmlaQuestionOption, outcome.selected_option_id)
        if option is None or option.question_id != question.id:
            raise InvalidInput(f"Option {outcome.selected_option_id} does not belong to question {question.id}")

        now = self.clock()
        is_correct = bool(option.is_correct)
        score = question_score(question.difficulty_level, is_correct)
        quality = quality_from_correctness(is_correct)

        session.add(
            UkmlaAttempt(
                user_id=user_id,
                question_id=question.id,
                selected_option_id=option.id,
                is_correct=is_correct,
                score=score,
                completed_at=now,
            )
        )
        self._aggregator(session).record_outcome(
            user_id, MODE_UKMLA, question.category, question.difficulty_level, score, is_correct
        )
        card = ReviewScheduler(session, self.clock, self.sm2).record_outcome(
            user_id, "question", question.id, quality
        )

        logger.info(
            "Recorded question {} for {}: correct={}, q={}", question.id, user_id, is_correct, quality
        )
        return ScheduleResult(
            item_kind="question",
            item_id=question.id,
            score=score,
            quality=quality,
            is_correct=is_correct,
            interval=card.interval,
            next_review_date=card.next_review_date,
        )

    def get_due_items(self, user_id: str, limit: int = 50) -> list[DueItem]:
        user_id = self._require_user(user_id)
        if limit < 1:
            raise InvalidInput("limit must be positive")
        with self._transaction() as session:
            cards = ReviewScheduler(session, self.clock, self.sm2).due_items(user_id, limit)
            return [DueItem.model_validate(card) for card in cards]

    def get_due_count(self, user_id: str) -> int:
        user_id = self._require_user(user_id)
        with self._transaction() as session:
            return ReviewScheduler(session, self.clock, self.sm2).due_count(user_id)

    # =========================================================================
    # Revision Notes
    # =========================================================================

    def get_revision_note(
        self,
        user_id: str,
        context_type: ContextType | str,
        context_id: int | str,
        force_refresh: bool = False,
    ) -> NoteResult:
        """
        Serve the learner's note for a case, question or category.

        Stale notes are returned as-is (stale_hit) while a refresh runs in
        the background once this call's transaction has committed.
        """
        user_id = self._require_user(user_id)
        try:
            request = GetNoteRequest(
                context_type=context_type, context_id=str(context_id), force_refresh=force_refresh
            )
        except ValidationError as e:
            raise InvalidInput(_first_error(e)) from e

        with self._transaction() as session:
            return self._cache(session).get_note(
                user_id, request.context_type, request.context_id, request.force_refresh
            )

    def refresh_revision_note(
        self,
        user_id: str,
        domain: str,
        difficulty: str | None = None,
        cluster_key: str | None = None,
        source_version: str | None = None,
    ) -> NoteView:
        user_id = self._require_user(user_id)
        try:
            request = RefreshNoteRequest(
                domain=domain,
                difficulty=difficulty,
                cluster_key=cluster_key,
                source_version=source_version,
            )
        except ValidationError as e:
            raise InvalidInput(_first_error(e)) from e

        key = NoteKey(domain=request.domain, difficulty=request.difficulty, cluster_key=request.cluster_key)
        with self._transaction() as session:
            return self._cache(session).refresh_note(user_id, key, request.source_version)

    def get_category_note(self, user_id: str, category: str) -> NoteResult:
        if not category or "|" in category:
            raise InvalidInput(f"Invalid category: {category!r}")
        return self.get_revision_note(user_id, ContextType.CATEGORY, f"{category}|any|any")

    def mark_due_notes_stale(self, user_id: str) -> int:
        user_id = self._require_user(user_id)
        with self._transaction() as session:
            return self._cache(session).mark_due_notes_stale(user_id)

    # =========================================================================
    # Performance
    # =========================================================================

    def get_performance_snapshot(
        self,
        user_id: str,
        domain: str | None = None,
        difficulty: str | None = None,
    ) -> PerformanceSnapshot:
        user_id = self._require_user(user_id)
        try:
            if domain and difficulty:
                NoteKey(domain=domain, difficulty=difficulty)
        except ValidationError as e:
            raise InvalidInput(_first_error(e)) from e

        with self._transaction() as session:
            return self._aggregator(session).aggregate_snapshot(user_id, domain, difficulty)

    def get_stats(self, user_id: str, mode: AnalyticsMode | str = AnalyticsMode.ALL) -> StatLine:
        user_id = self._require_user(user_id)
        mode = self._mode(mode)
        with self._transaction() as session:
            return self._aggregator(session).overall(user_id, mode)

    def get_domain_stats(
        self, user_id: str, mode: AnalyticsMode | str = AnalyticsMode.ALL
    ) -> list[StatLine]:
        user_id = self._require_user(user_id)
        mode = self._mode(mode)
        with self._transaction() as session:
            return self._aggregator(session).domain_breakdown(user_id, mode)

    def get_difficulty_stats(
        self, user_id: str, mode: AnalyticsMode | str = AnalyticsMode.ALL
    ) -> list[StatLine]:
        user_id = self._require_user(user_id)
        mode = self._mode(mode)
        with self._transaction() as session:
            return self._aggregator(session).difficulty_breakdown(user_id, mode)

    @staticmethod
    def _mode(mode: AnalyticsMode | str) -> AnalyticsMode:
        try:
            return AnalyticsMode(mode)
        except ValueError:
            raise InvalidInput(f"Unknown analytics mode: {mode}") from None

    def close(self, wait: bool = True) -> None:
        """Stop the background refresh workers."""
        self.refresh_queue.shutdown(wait_for_jobs=wait)
