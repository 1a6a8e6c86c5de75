"""
Unit tests for RevisionNoteCache.

Covers the fallback chain, every staleness signal, stale-while-revalidate
background refresh, generator failure and timeout fallbacks, and evidence
rewriting.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from medrev.db.models import CaseAttempt, RevisionNote, RevisionNoteEvidence, UkmlaAttempt
from medrev.learning.revision_cache import RevisionNoteCache
from medrev.learning.schemas import CacheStatus, NoteKey


@pytest.fixture
def cache_for(session, clock, settings, refresh_queue, session_factory):
    """Build a cache around the test session with a chosen generator."""

    def _build(generator, **overrides):
        return RevisionNoteCache(
            session,
            clock,
            generator,
            settings.model_copy(update=overrides) if overrides else settings,
            refresh_queue=refresh_queue,
            session_factory=session_factory,
        )

    return _build


def _case_attempt(session, clock, case_id, score, user_id="user-1"):
    clock.advance(minutes=1)
    attempt = CaseAttempt(user_id=user_id, case_id=case_id, score=score, completed_at=clock.now)
    session.add(attempt)
    session.flush()
    return attempt


def _question_attempt(session, clock, question_id, option_id, is_correct, user_id="user-1"):
    clock.advance(minutes=1)
    attempt = UkmlaAttempt(
        user_id=user_id,
        question_id=question_id,
        selected_option_id=option_id,
        is_correct=is_correct,
        score=15 if is_correct else -3,
        completed_at=clock.now,
    )
    session.add(attempt)
    session.flush()
    return attempt


def _notes(session_factory):
    with session_factory() as session:
        return list(session.execute(select(RevisionNote).order_by(RevisionNote.id)).scalars())


# ============================================================================
# Miss & Hit
# ============================================================================


class TestServing:
    def test_miss_without_generator_persists_fallback(
        self, seeded, make_case, session, cache_for, note_generators, settings
    ):
        case_id, _ = make_case()
        failing = note_generators.failing()
        cache = cache_for(failing)

        result = cache.get_note("user-1", "case", case_id)

        assert result.cache_status is CacheStatus.MISS
        assert result.note_key == NoteKey(
            domain="Cardiology", difficulty="Core", cluster_key="cardiology_emergency_red_flags"
        )
        assert result.note.source_version == settings.fallback_source_version
        assert result.note.title == "Cardiology Revision Brief (cardiology emergency red flags)"
        assert result.note.stale_at is None
        assert failing.calls == 1

        stored = cache.find_scoped("user-1", result.note_key)
        assert stored is not None
        assert stored.source_version == "v1-fallback"

    def test_miss_with_generator_uses_configured_version(
        self, make_case, cache_for, generator, settings
    ):
        case_id, _ = make_case()

        result = cache_for(generator).get_note("user-1", "case", case_id)

        assert result.note.title == generator.content.title
        assert result.note.source_version == settings.rivision_source_version
        assert len(generator.calls) == 1

    def test_fresh_hit_touches_last_served(self, make_case, cache_for, generator, clock):
        case_id, _ = make_case()
        cache = cache_for(generator)
        first = cache.get_note("user-1", "case", case_id)

        clock.advance(hours=2)
        second = cache.get_note("user-1", "case", case_id)

        assert second.cache_status is CacheStatus.HIT
        assert second.note.id == first.note.id
        assert second.note.last_served_at == clock.now
        assert second.note.last_generated_at == first.note.last_generated_at
        assert len(generator.calls) == 1

    def test_force_refresh_regenerates_in_place(self, make_case, cache_for, generator, clock):
        case_id, _ = make_case()
        cache = cache_for(generator)
        first = cache.get_note("user-1", "case", case_id)

        clock.advance(hours=1)
        forced = cache.get_note("user-1", "case", case_id, force_refresh=True)

        assert forced.cache_status is CacheStatus.MISS
        assert forced.note.id == first.note.id
        assert forced.note.last_generated_at == clock.now
        assert forced.note.stale_at is None
        assert len(generator.calls) == 2

    def test_notes_are_per_user(self, make_case, cache_for, generator):
        case_id, _ = make_case()
        cache = cache_for(generator)

        mine = cache.get_note("user-1", "case", case_id)
        theirs = cache.get_note("user-2", "case", case_id)

        assert theirs.cache_status is CacheStatus.MISS
        assert theirs.note.id != mine.note.id

    def test_category_note(self, seeded, cache_for, generator):
        result = cache_for(generator).category_note("user-1", "Respiratory")

        assert result.note_key == NoteKey(
            domain="Respiratory", cluster_key="respiratory_complications_follow_up"
        )
        assert result.cache_status is CacheStatus.MISS


# ============================================================================
# Fallback Chain
# ============================================================================


class TestFallbackChain:
    def test_exact_note_beats_domain_note(self, cache_for, generator):
        cache = cache_for(generator)
        exact_key = NoteKey(domain="Cardiology", difficulty="Core", cluster_key="c1")
        domain_note = cache.regenerate("user-1", NoteKey(domain="Cardiology"))
        exact_note = cache.regenerate("user-1", exact_key)

        assert cache.find_by_fallback_chain("user-1", exact_key).id == exact_note.id
        assert domain_note.id != exact_note.id

    def test_falls_back_to_difficulty_then_domain(self, cache_for, generator):
        cache = cache_for(generator)
        key = NoteKey(domain="Cardiology", difficulty="Core", cluster_key="c1")
        domain_note = cache.regenerate("user-1", NoteKey(domain="Cardiology"))

        assert cache.find_by_fallback_chain("user-1", key).id == domain_note.id

        difficulty_note = cache.regenerate("user-1", NoteKey(domain="Cardiology", difficulty="Core"))

        assert cache.find_by_fallback_chain("user-1", key).id == difficulty_note.id

    def test_null_levels_only_match_stored_nulls(self, cache_for, generator):
        cache = cache_for(generator)
        cache.regenerate("user-1", NoteKey(domain="Cardiology", difficulty="Core", cluster_key="c1"))

        assert cache.find_scoped("user-1", NoteKey(domain="Cardiology")) is None
        assert cache.find_scoped("user-1", NoteKey(domain="Cardiology", difficulty="Core")) is None

    def test_coarser_note_is_served_as_hit(self, make_case, cache_for, generator):
        case_id, _ = make_case(domain="Dermatology")
        cache = cache_for(generator)
        domain_note = cache.regenerate("user-1", NoteKey(domain="Dermatology"))

        result = cache.get_note("user-1", "case", case_id)

        assert result.cache_status is CacheStatus.HIT
        assert result.note.id == domain_note.id
        assert result.note_key == NoteKey(domain="Dermatology", difficulty="Core")


# ============================================================================
# Staleness
# ============================================================================


class TestStaleness:
    def test_score_drift_serves_stale_and_refreshes_in_background(
        self, make_case, session, session_factory, cache_for, generator, refresh_queue, clock
    ):
        case_id, _ = make_case(domain="Dermatology")
        cache = cache_for(generator)
        _case_attempt(session, clock, case_id, 40)
        original = cache.get_note("user-1", "case", case_id)
        session.commit()
        assert original.note.performance_snapshot["average_score"] == 40

        _case_attempt(session, clock, case_id, 70)  # live average 55, drift 15
        result = cache.get_note("user-1", "case", case_id)

        assert result.cache_status is CacheStatus.STALE_HIT
        assert result.note.title == original.note.title
        assert result.note.last_generated_at == original.note.last_generated_at
        assert result.note.stale_at == clock.now
        assert len(generator.calls) == 1

        # The refresh is only queued once the serving transaction commits
        assert refresh_queue.pending == 0
        session.commit()
        refresh_queue.drain(timeout=5)

        assert len(generator.calls) == 2
        [note] = _notes(session_factory)
        assert note.scope_key == "Dermatology|Core|__all__"
        assert note.stale_at is None
        assert note.performance_snapshot["average_score"] == 55
        assert note.performance_snapshot["total_attempts"] == 2

    def test_small_drift_is_a_hit(self, make_case, session, cache_for, generator, clock):
        case_id, _ = make_case(domain="Dermatology")
        cache = cache_for(generator)
        _case_attempt(session, clock, case_id, 40)
        cache.get_note("user-1", "case", case_id)

        _case_attempt(session, clock, case_id, 50)  # live average 45, drift 5

        assert cache.get_note("user-1", "case", case_id).cache_status is CacheStatus.HIT

    def test_new_attempts_make_note_stale(self, make_case, session, cache_for, generator, clock):
        case_id, _ = make_case(domain="Dermatology")
        cache = cache_for(generator)
        cache.get_note("user-1", "case", case_id)

        for _ in range(4):
            _case_attempt(session, clock, case_id, 0)
        assert cache.get_note("user-1", "case", case_id).cache_status is CacheStatus.HIT

        _case_attempt(session, clock, case_id, 0)
        assert cache.get_note("user-1", "case", case_id).cache_status is CacheStatus.STALE_HIT

    def test_age_makes_note_stale(self, make_case, cache_for, generator, clock):
        case_id, _ = make_case()
        cache = cache_for(generator)
        cache.get_note("user-1", "case", case_id)

        clock.advance(days=29, hours=23)
        assert cache.get_note("user-1", "case", case_id).cache_status is CacheStatus.HIT

        clock.advance(hours=1)
        assert cache.get_note("user-1", "case", case_id).cache_status is CacheStatus.STALE_HIT

    def test_explicit_stale_mark(self, session, cache_for, generator, clock):
        cache = cache_for(generator)
        key = NoteKey(domain="Renal")
        note = cache.regenerate("user-1", key)
        note.stale_at = clock.now + timedelta(hours=1)
        session.flush()

        assert cache.get_note("user-1", "category", "Renal|any|any").cache_status is CacheStatus.HIT

        clock.advance(hours=1)
        assert cache.get_note("user-1", "category", "Renal|any|any").cache_status is CacheStatus.STALE_HIT

    def test_thresholds_come_from_settings(self, make_case, session, cache_for, generator, clock):
        case_id, _ = make_case(domain="Dermatology")
        cache = cache_for(generator, stale_attempt_delta=1)
        cache.get_note("user-1", "case", case_id)

        _case_attempt(session, clock, case_id, 0)

        assert cache.get_note("user-1", "case", case_id).cache_status is CacheStatus.STALE_HIT

    def test_mark_due_notes_stale(self, cache_for, generator, clock):
        cache = cache_for(generator)
        cache.regenerate("user-1", NoteKey(domain="Cardiology"))
        clock.advance(days=31)
        cache.regenerate("user-1", NoteKey(domain="Renal"))
        cache.regenerate("user-2", NoteKey(domain="Cardiology"))

        marked = cache.mark_due_notes_stale("user-1")

        assert marked == 1
        assert cache.find_scoped("user-1", NoteKey(domain="Cardiology")).stale_at == clock.now
        assert cache.find_scoped("user-1", NoteKey(domain="Renal")).stale_at is None

    def test_stopped_queue_does_not_fail_stale_hit(
        self, make_case, session, cache_for, generator, refresh_queue, clock, log_records
    ):
        case_id, _ = make_case()
        cache = cache_for(generator)
        cache.get_note("user-1", "case", case_id)
        session.commit()
        refresh_queue.shutdown()

        clock.advance(days=30)
        result = cache.get_note("user-1", "case", case_id)
        session.commit()

        assert result.cache_status is CacheStatus.STALE_HIT
        assert len(generator.calls) == 1
        assert any("Could not queue refresh" in r["message"] for r in log_records)

    def test_failed_background_refresh_is_logged(
        self,
        make_case,
        session,
        session_factory,
        settings,
        generator,
        refresh_queue,
        clock,
        log_records,
    ):
        def unavailable():
            raise RuntimeError("database unavailable")

        case_id, _ = make_case()
        cache = RevisionNoteCache(
            session,
            clock,
            generator,
            settings,
            refresh_queue=refresh_queue,
            session_factory=unavailable,
        )
        cache.get_note("user-1", "case", case_id)
        session.commit()

        clock.advance(days=30)
        result = cache.get_note("user-1", "case", case_id)
        session.commit()
        refresh_queue.drain(timeout=5)

        assert result.cache_status is CacheStatus.STALE_HIT
        assert len(generator.calls) == 1
        failures = [r for r in log_records if "Background refresh failed" in r["message"]]
        assert len(failures) == 1
        assert failures[0]["level"].name == "ERROR"
        [note] = _notes(session_factory)
        assert note.stale_at == clock.now


# ============================================================================
# Regeneration
# ============================================================================


class TestRegeneration:
    def test_generator_timeout_uses_fallback(self, cache_for, note_generators, settings):
        cache = cache_for(note_generators.slow(delay=0.5), generator_timeout_seconds=0.05)

        note = cache.regenerate("user-1", NoteKey(domain="Renal"))

        assert note.source_version == settings.fallback_source_version
        assert note.title == "Renal Revision Brief"

    def test_source_version_override(self, cache_for, generator):
        view = cache_for(generator).refresh_note("user-1", NoteKey(domain="Renal"), "v2-manual")

        assert view.source_version == "v2-manual"

    def test_fallback_ignores_source_version_override(self, cache_for, note_generators):
        view = cache_for(note_generators.failing()).refresh_note(
            "user-1", NoteKey(domain="Renal"), "v2-manual"
        )

        assert view.source_version == "v1-fallback"

    def test_evidence_weights_and_replacement(
        self, make_case, make_question, session, cache_for, generator, clock
    ):
        case_id, _ = make_case(domain="Dermatology")
        question_id, correct_id, wrong_id = make_question(domain="Dermatology")
        weak = _case_attempt(session, clock, case_id, 20)
        strong = _case_attempt(session, clock, case_id, 90)
        missed = _question_attempt(session, clock, question_id, wrong_id, False)
        answered = _question_attempt(session, clock, question_id, correct_id, True)
        cache = cache_for(generator)

        note = cache.regenerate("user-1", NoteKey(domain="Dermatology"))

        rows = session.execute(
            select(RevisionNoteEvidence).where(RevisionNoteEvidence.note_id == note.id)
        ).scalars()
        weights = {(row.source_type, row.source_id): row.weight for row in rows}
        assert weights == {
            ("case_attempt", weak.id): 3,
            ("case_attempt", strong.id): 1,
            ("ukmla_attempt", missed.id): 3,
            ("ukmla_attempt", answered.id): 1,
        }

        # Evidence handed to the generator is newest first
        _, evidence = generator.calls[-1]
        assert [item.attempt_id for item in evidence.case_evidence] == [strong.id, weak.id]

        cache.regenerate("user-1", NoteKey(domain="Dermatology"))
        count = len(
            session.execute(
                select(RevisionNoteEvidence).where(RevisionNoteEvidence.note_id == note.id)
            ).all()
        )
        assert count == 4

    def test_evidence_capped_per_kind(self, make_case, session, cache_for, generator, clock):
        case_id, _ = make_case(domain="Dermatology")
        for score in range(12):
            _case_attempt(session, clock, case_id, score)

        cache_for(generator).regenerate("user-1", NoteKey(domain="Dermatology"))

        _, evidence = generator.calls[-1]
        assert len(evidence.case_evidence) == 8
        assert evidence.case_evidence[0].score == 11

    def test_snapshot_recorded_at_regeneration(self, make_case, session, cache_for, generator, clock):
        case_id, _ = make_case(domain="Dermatology")
        _case_attempt(session, clock, case_id, 30)
        _case_attempt(session, clock, case_id, 61)

        note = cache_for(generator).regenerate("user-1", NoteKey(domain="Dermatology"))

        assert note.performance_snapshot["average_score"] == 46  # 45.5 rounds half up
        assert note.performance_snapshot["total_attempts"] == 2
        assert note.last_generated_at == note.last_served_at == clock.now
        assert note.stale_at is None

    def test_regeneration_keeps_created_at(self, cache_for, generator, clock):
        cache = cache_for(generator)
        first = cache.regenerate("user-1", NoteKey(domain="Renal"))
        created = first.created_at

        clock.advance(days=2)
        second = cache.regenerate("user-1", NoteKey(domain="Renal"))

        assert second.id == first.id
        assert second.created_at == created
        assert second.updated_at == clock.now
        assert clock.now - created == timedelta(days=2)
