"""
Revision Note Cache.

Serves personalised revision notes keyed by (learner, domain, difficulty,
cluster) with:
- Hierarchical fallback to coarser scopes on lookup
- Multi-signal staleness (score drift, new attempts, age, explicit mark)
- Stale-while-revalidate: stale notes are served immediately and
  regenerated on the background refresh queue
- Synchronous regeneration on a miss or a forced refresh
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import delete, event, select, update
from sqlalchemy.orm import Session, sessionmaker

from medrev.config import Settings, get_settings
from medrev.db.database import session_scope, upsert
from medrev.db.models import RevisionNote, RevisionNoteEvidence, build_scope_key
from medrev.learning.context_resolver import ContextResolver
from medrev.learning.note_generator import (
    ContentGenerator,
    GenerationResult,
    build_fallback_note,
)
from medrev.learning.performance import PerformanceAggregator
from medrev.learning.refresh_queue import RefreshQueue
from medrev.learning.schemas import (
    CacheStatus,
    CaseEvidence,
    ContextType,
    NoteEvidence,
    NoteKey,
    NoteResult,
    NoteView,
    PerformanceSnapshot,
    QuestionEvidence,
)

EVIDENCE_WEIGHT_WEAK = 3
EVIDENCE_WEIGHT_NORMAL = 1


class RevisionNoteCache:
    """
    Note cache bound to one session.

    Background regeneration needs a session_factory so each job can open
    its own transaction; without a refresh queue stale notes are only
    marked, never regenerated in the background.
    """

    def __init__(
        self,
        session: Session,
        clock: Callable[[], datetime],
        generator: ContentGenerator,
        settings: Settings | None = None,
        resolver: ContextResolver | None = None,
        performance: PerformanceAggregator | None = None,
        refresh_queue: RefreshQueue | None = None,
        session_factory: sessionmaker | None = None,
    ):
        self.session = session
        self.clock = clock
        self.generator = generator
        self.settings = settings or get_settings()
        self.resolver = resolver or ContextResolver(session, clock)
        self.performance = performance or PerformanceAggregator(
            session, clock, self.resolver, self.settings.snapshot_scan_limit
        )
        self.refresh_queue = refresh_queue
        self.session_factory = session_factory

    # =========================================================================
    # Lookup
    # =========================================================================

    def find_scoped(self, user_id: str, key: NoteKey) -> RevisionNote | None:
        """Exact-scope lookup; a None level only matches a stored wildcard."""
        return self.session.execute(
            select(RevisionNote)
            .where(
                RevisionNote.user_id == user_id,
                RevisionNote.scope_key
                == build_scope_key(key.domain, key.difficulty, key.cluster_key),
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_by_fallback_chain(self, user_id: str, key: NoteKey) -> RevisionNote | None:
        for candidate in key.coarser():
            note = self.find_scoped(user_id, candidate)
            if note is not None:
                return note
        return None

    def is_stale(self, note: RevisionNote, snapshot: PerformanceSnapshot, now: datetime) -> bool:
        stored = note.performance_snapshot or {}
        score_drift = abs(snapshot.average_score - int(stored.get("average_score", 0)))
        new_attempts = snapshot.total_attempts - int(stored.get("total_attempts", 0))

        if score_drift >= self.settings.stale_score_delta:
            return True
        if new_attempts >= self.settings.stale_attempt_delta:
            return True
        if now - note.last_generated_at >= timedelta(days=self.settings.stale_max_age_days):
            return True
        return note.stale_at is not None and note.stale_at <= now

    # =========================================================================
    # Serving
    # =========================================================================

    def get_note(
        self,
        user_id: str,
        context_type: ContextType | str,
        context_id: int | str,
        force_refresh: bool = False,
    ) -> NoteResult:
        """
        Resolve a context and serve its note.

        Raises:
            InvalidInput / NotFound: from context resolution, before any write
        """
        key = self.resolver.resolve(context_type, context_id)

        if force_refresh:
            note = self.regenerate(user_id, key)
            return self._result(note, CacheStatus.MISS, key)

        note = self.find_by_fallback_chain(user_id, key)
        if note is None:
            note = self.regenerate(user_id, key)
            return self._result(note, CacheStatus.MISS, key)

        now = self.clock()
        stale = self.is_stale(note, self.performance.snapshot(user_id, key), now)

        note.last_served_at = now
        note.updated_at = now
        if stale:
            note.stale_at = now
        self.session.flush()

        if not stale:
            return self._result(note, CacheStatus.HIT, key)

        logger.info("Serving stale note {} for {} and scheduling refresh", note.scope_key, user_id)
        self._schedule_refresh(user_id, key)
        return self._result(note, CacheStatus.STALE_HIT, key)

    def refresh_note(
        self,
        user_id: str,
        key: NoteKey,
        source_version: str | None = None,
    ) -> NoteView:
        """Regenerate the note at exactly key, regardless of staleness."""
        return NoteView.model_validate(self.regenerate(user_id, key, source_version))

    def category_note(self, user_id: str, category: str) -> NoteResult:
        return self.get_note(user_id, ContextType.CATEGORY, f"{category}|any|any")

    def mark_due_notes_stale(self, user_id: str) -> int:
        """Flag notes past the maximum age; they regenerate on next serve."""
        now = self.clock()
        cutoff = now - timedelta(days=self.settings.stale_max_age_days)
        result = self.session.execute(
            update(RevisionNote)
            .where(
                RevisionNote.user_id == user_id,
                RevisionNote.last_generated_at <= cutoff,
            )
            .values(stale_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.flush()
        if result.rowcount:
            logger.info("Marked {} revision notes stale for {}", result.rowcount, user_id)
        return result.rowcount

    def _result(self, note: RevisionNote, status: CacheStatus, key: NoteKey) -> NoteResult:
        return NoteResult(note=NoteView.model_validate(note), cache_status=status, note_key=key)

    def _schedule_refresh(self, user_id: str, key: NoteKey) -> None:
        if self.refresh_queue is None or self.session_factory is None:
            logger.debug("No refresh queue configured; {} stays stale", key)
            return

        job = refresh_job(
            self.session_factory, self.clock, self.generator, self.settings, user_id, key
        )
        queue_key = f"{user_id}:{build_scope_key(key.domain, key.difficulty, key.cluster_key)}"

        refresh_queue = self.refresh_queue

        def enqueue(_session: Session) -> None:
            # Runs after commit; the stale response has already been served
            try:
                refresh_queue.submit(queue_key, job)
            except Exception as e:
                logger.warning("Could not queue refresh for {}: {}", queue_key, e)

        # The job must see the stale mark, so it is queued once this transaction commits
        event.listen(self.session, "after_commit", enqueue, once=True)

    # =========================================================================
    # Regeneration
    # =========================================================================

    def collect_evidence(self, user_id: str, key: NoteKey) -> NoteEvidence:
        scan = self.settings.evidence_scan_limit
        cap = self.settings.evidence_cap

        cases = self.performance.scoped_case_attempts(user_id, key, scan)[:cap]
        questions = self.performance.scoped_question_attempts(user_id, key, scan)[:cap]

        return NoteEvidence(
            case_evidence=[
                CaseEvidence(
                    attempt_id=attempt.id,
                    score=attempt.score,
                    title=medical_case.title,
                    description=medical_case.description,
                )
                for attempt, medical_case in cases
            ],
            ukmla_evidence=[
                QuestionEvidence(
                    attempt_id=attempt.id,
                    is_correct=attempt.is_correct,
                    stem=question.stem,
                    explanation=question.explanation,
                )
                for attempt, question in questions
            ],
        )

    def generate_content(self, key: NoteKey, evidence: NoteEvidence) -> GenerationResult:
        """Run the generator under a timeout; any failure yields the fallback note."""
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="note-generator")
        try:
            future = executor.submit(self.generator.generate, key, evidence)
            content = future.result(timeout=self.settings.generator_timeout_seconds)
            return GenerationResult(content=content, source="model")
        except FutureTimeout:
            logger.warning(
                "Note generation timed out after {}s for {}",
                self.settings.generator_timeout_seconds,
                key,
            )
        except Exception as e:
            logger.warning("Note generation failed for {}: {}", key, e)
        finally:
            executor.shutdown(wait=False)

        return GenerationResult(
            content=build_fallback_note(key.domain, key.cluster_key), source="fallback"
        )

    def regenerate(
        self,
        user_id: str,
        key: NoteKey,
        source_version: str | None = None,
    ) -> RevisionNote:
        """
        Rebuild the note at exactly key and replace its evidence.

        The upsert and the evidence rewrite share the caller's transaction.
        """
        evidence = self.collect_evidence(user_id, key)
        snapshot = self.performance.snapshot(user_id, key)
        generated = self.generate_content(key, evidence)
        now = self.clock()

        if generated.used_fallback:
            version = self.settings.fallback_source_version
        else:
            version = source_version or self.settings.rivision_source_version

        content = generated.content
        upsert(
            self.session,
            RevisionNote,
            {
                "user_id": user_id,
                "domain": key.domain,
                "difficulty_level": key.difficulty,
                "cluster_key": key.cluster_key,
                "scope_key": build_scope_key(key.domain, key.difficulty, key.cluster_key),
                "title": content.title,
                "summary": content.summary,
                "key_concepts": content.key_concepts,
                "common_mistakes": content.common_mistakes,
                "rapid_checklist": content.rapid_checklist,
                "practice_plan": content.practice_plan,
                "source_version": version,
                "performance_snapshot": {
                    "average_score": snapshot.average_score,
                    "total_attempts": snapshot.total_attempts,
                    "captured_at": now.isoformat(),
                },
                "stale_at": None,
                "last_generated_at": now,
                "last_served_at": now,
                "created_at": now,
                "updated_at": now,
            },
            conflict_columns=["user_id", "scope_key"],
            update_columns=[
                "title",
                "summary",
                "key_concepts",
                "common_mistakes",
                "rapid_checklist",
                "practice_plan",
                "source_version",
                "performance_snapshot",
                "stale_at",
                "last_generated_at",
                "last_served_at",
                "updated_at",
            ],
        )

        note = self.find_scoped(user_id, key)
        self.session.execute(
            delete(RevisionNoteEvidence).where(RevisionNoteEvidence.note_id == note.id)
        )
        rows = [
            RevisionNoteEvidence(
                note_id=note.id,
                source_type="case_attempt",
                source_id=item.attempt_id,
                weight=(
                    EVIDENCE_WEIGHT_WEAK
                    if item.score < self.settings.evidence_low_score_threshold
                    else EVIDENCE_WEIGHT_NORMAL
                ),
            )
            for item in evidence.case_evidence
        ]
        rows.extend(
            RevisionNoteEvidence(
                note_id=note.id,
                source_type="ukmla_attempt",
                source_id=item.attempt_id,
                weight=EVIDENCE_WEIGHT_NORMAL if item.is_correct else EVIDENCE_WEIGHT_WEAK,
            )
            for item in evidence.ukmla_evidence
        )
        self.session.add_all(rows)
        self.session.flush()
        self.session.expire(note, ["evidence"])

        logger.info(
            "Regenerated note {} for {} ({}, {} evidence rows)",
            note.scope_key,
            user_id,
            version,
            len(rows),
        )
        return note


def refresh_job(
    session_factory: sessionmaker,
    clock: Callable[[], datetime],
    generator: ContentGenerator,
    settings: Settings,
    user_id: str,
    key: NoteKey,
) -> Callable[[], int]:
    """Background regeneration in a fresh session. Returns the note id."""

    def run() -> int:
        with session_scope(session_factory) as session:
            cache = RevisionNoteCache(session, clock, generator, settings)
            return cache.regenerate(user_id, key).id

    return run
