# SQLAlchemy models
from .base import Base
from .content import (
    DIFFICULTY_LEVELS,
    Case,
    CaseStage,
    StageOption,
    UkmlaQuestion,
    UkmlaQuestionOption,
)
from .progress import (
    CaseAttempt,
    DifficultyStats,
    DomainStats,
    ReviewCard,
    UkmlaAttempt,
    UserStats,
)
from .revision import (
    ClusterTaxonomyEntry,
    ContextClusterMapping,
    RevisionNote,
    RevisionNoteEvidence,
    build_scope_key,
)

__all__ = [
    # Base
    "Base",
    # Content
    "DIFFICULTY_LEVELS",
    "Case",
    "CaseStage",
    "StageOption",
    "UkmlaQuestion",
    "UkmlaQuestionOption",
    # Progress
    "CaseAttempt",
    "UkmlaAttempt",
    "ReviewCard",
    "UserStats",
    "DomainStats",
    "DifficultyStats",
    # Revision notes
    "ClusterTaxonomyEntry",
    "ContextClusterMapping",
    "RevisionNote",
    "RevisionNoteEvidence",
    "build_scope_key",
]
