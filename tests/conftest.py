"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests:
a throwaway SQLite database per test, a controllable clock, practice
content factories, and fake note generators.
"""
from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from loguru import logger

from medrev.config import Settings
from medrev.db.database import build_engine, build_session_factory, init_db, session_scope
from medrev.db.models import (
    Case,
    CaseStage,
    StageOption,
    UkmlaQuestion,
    UkmlaQuestionOption,
)
from medrev.db.seed import seed_taxonomy
from medrev.engine import LearningEngine
from medrev.learning.refresh_queue import RefreshQueue
from medrev.learning.schemas import NoteContent


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (engine + database)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 9, 0, 0))


@pytest.fixture
def log_records():
    """Loguru records at WARNING and above, from any thread."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="WARNING")
    yield records
    logger.remove(handler_id)


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'medrev.db'}",
        gemini_api_key=None,
        generator_timeout_seconds=1.0,
        refresh_workers=1,
    )


@pytest.fixture
def db_engine(settings):
    engine = build_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def seeded(session_factory):
    """Taxonomy for two domains."""
    with session_scope(session_factory) as session:
        seed_taxonomy(session, ("Cardiology", "Respiratory"))


# ============================================================================
# Content Factories
# ============================================================================


@pytest.fixture
def make_case(session_factory):
    """
    Create a case with one stage per option weight.

    Returns (case_id, [option_id, ...]).
    """

    def _make(
        domain="Cardiology",
        difficulty="Core",
        title="Chest pain in the emergency department",
        description="A 58-year-old presents with crushing chest pain.",
        weights=(10, 5),
        cluster_key=None,
    ):
        with session_scope(session_factory) as session:
            medical_case = Case(
                title=title,
                description=description,
                clinical_domain=domain,
                difficulty_level=difficulty,
                rivision_cluster_key=cluster_key,
                is_published=True,
            )
            for order, weight in enumerate(weights, start=1):
                stage = CaseStage(stage_order=order, narrative=f"Stage {order}")
                stage.options.append(
                    StageOption(text=f"Option {order}", is_correct=weight > 0, score_weight=weight)
                )
                medical_case.stages.append(stage)
            session.add(medical_case)
            session.flush()
            option_ids = [stage.options[0].id for stage in medical_case.stages]
            return medical_case.id, option_ids

    return _make


@pytest.fixture
def make_question(session_factory):
    """
    Create a question with one correct and one wrong option.

    Returns (question_id, correct_option_id, wrong_option_id).
    """

    def _make(
        domain="Cardiology",
        difficulty="Core",
        stem="Which ECG finding suggests an inferior STEMI?",
        explanation="ST elevation in II, III and aVF.",
        cluster_key=None,
    ):
        with session_scope(session_factory) as session:
            question = UkmlaQuestion(
                stem=stem,
                explanation=explanation,
                category=domain,
                difficulty_level=difficulty,
                rivision_cluster_key=cluster_key,
            )
            question.options.append(UkmlaQuestionOption(text="II, III, aVF", is_correct=True, option_order=1))
            question.options.append(UkmlaQuestionOption(text="V1-V4", is_correct=False, option_order=2))
            session.add(question)
            session.flush()
            return question.id, question.options[0].id, question.options[1].id

    return _make


# ============================================================================
# Note Generators
# ============================================================================


def sample_note_content(title="Cardiology: Inferior MI") -> NoteContent:
    return NoteContent(
        title=title,
        summary="Recognise inferior STEMI early and check right-sided leads.",
        key_concepts=["ST elevation in II, III, aVF", "Check V4R", "Avoid nitrates if RV infarct"],
        common_mistakes=["Missing reciprocal changes", "Giving GTN in RV infarct"],
        rapid_checklist=["ABCDE", "12-lead ECG", "Activate PCI pathway"],
        practice_plan=["Review ACS guideline", "Do 10 ECG MCQs", "Repeat the case in 48h"],
    )


class StaticGenerator:
    """Returns the same note every time and records its calls."""

    def __init__(self, content: NoteContent | None = None):
        self.content = content or sample_note_content()
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, key, evidence):
        with self._lock:
            self.calls.append((key, evidence))
        return self.content


class FailingGenerator:
    def __init__(self):
        self.calls = 0

    def generate(self, key, evidence):
        self.calls += 1
        raise RuntimeError("model unavailable")


class SlowGenerator:
    def __init__(self, delay: float):
        self.delay = delay

    def generate(self, key, evidence):
        time.sleep(self.delay)
        return sample_note_content()


@pytest.fixture
def generator():
    return StaticGenerator()


# ============================================================================
# Engine
# ============================================================================


@pytest.fixture
def refresh_queue():
    queue = RefreshQueue(workers=1)
    yield queue
    queue.shutdown()


@pytest.fixture
def learning_engine(session_factory, generator, refresh_queue, clock, settings):
    engine = LearningEngine(
        session_factory=session_factory,
        generator=generator,
        refresh_queue=refresh_queue,
        clock=clock,
        settings=settings,
    )
    yield engine
    refresh_queue.drain(timeout=5)


@pytest.fixture
def note_generators():
    """Generator doubles for tests that need more than the default one."""
    return SimpleNamespace(
        static=StaticGenerator,
        failing=FailingGenerator,
        slow=SlowGenerator,
        content=sample_note_content,
    )
