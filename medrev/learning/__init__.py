"""
Learning: scheduling, performance and revision notes.

This package contains the adaptive revision logic:
- review_scheduler: SM-2 review cards
- context_resolver: content -> (domain, difficulty, cluster) keys
- performance: aggregate stats and live snapshots
- revision_cache: personalised note cache with background refresh
- note_generator: Gemini note writer and static fallback
"""

from medrev.learning.context_resolver import ContextResolver
from medrev.learning.note_generator import ContentGenerator, GeminiNoteGenerator, build_fallback_note
from medrev.learning.performance import PerformanceAggregator, merge_averages
from medrev.learning.refresh_queue import RefreshQueue
from medrev.learning.review_scheduler import ReviewScheduler, SM2Scheduler
from medrev.learning.revision_cache import RevisionNoteCache

__all__ = [
    # Keys
    "ContextResolver",
    # Scheduling
    "ReviewScheduler",
    "SM2Scheduler",
    # Performance
    "PerformanceAggregator",
    "merge_averages",
    # Notes
    "RevisionNoteCache",
    "RefreshQueue",
    "ContentGenerator",
    "GeminiNoteGenerator",
    "build_fallback_note",
]
