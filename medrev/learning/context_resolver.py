"""
Context Resolver.

Maps a practice item (case, UKMLA question, or a bare category) to the
(domain, difficulty, cluster) key shared by the review scheduler and the
revision note cache.

Resolution order:
1. Memoised mapping row (permanent, no expiry)
2. Author-tagged cluster key, if it exists in the domain taxonomy
3. Keyword scoring against the domain taxonomy
4. Domain-only key when the domain has no taxonomy

Every fresh resolution is written through to the mapping table.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from medrev.db.database import upsert
from medrev.db.models import (
    DIFFICULTY_LEVELS,
    Case,
    ClusterTaxonomyEntry,
    ContextClusterMapping,
    UkmlaQuestion,
)
from medrev.errors import InvalidInput, NotFound
from medrev.learning.schemas import ContextType, NoteKey


class MatchedBy:
    METADATA = "metadata"
    HEURISTIC = "heuristic"
    CACHED = "cached"


def keyword_score(text: str, keywords: list[str]) -> int:
    """Count keywords occurring (case-insensitively) in text."""
    if not text or not keywords:
        return 0
    hay = text.lower()
    score = 0
    for keyword in keywords:
        normalized = keyword.lower().strip()
        if normalized and normalized in hay:
            score += 1
    return score


def build_key(label: str, **levels) -> NoteKey:
    """
    Build a note key from stored or parsed levels.

    Raises:
        InvalidInput: the levels fall outside the key's bounds (unknown
            difficulty, over-long domain)
    """
    try:
        return NoteKey(**levels)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ()))
        raise InvalidInput(f"Invalid {label} context: {field}: {error['msg']}") from e


def parse_category_context(context_id: str) -> tuple[NoteKey, str | None]:
    """
    Parse a 'domain|difficulty|cluster' category id.

    'any' (or an unknown difficulty) means no constraint at that level.
    Returns the domain/difficulty key and the requested cluster tag.
    """
    domain_raw, _, rest = context_id.partition("|")
    difficulty_raw, _, cluster_raw = rest.partition("|")

    domain = domain_raw.strip()
    if not domain:
        raise InvalidInput("Invalid category context")

    difficulty = difficulty_raw if difficulty_raw in DIFFICULTY_LEVELS else None
    cluster_key = cluster_raw if cluster_raw and cluster_raw != "any" else None
    return build_key("category", domain=domain, difficulty=difficulty), cluster_key


def _parse_item_id(context_id: str, label: str) -> int:
    try:
        item_id = int(context_id)
    except (TypeError, ValueError):
        raise InvalidInput(f"Invalid {label} id: {context_id}") from None
    if item_id <= 0:
        raise InvalidInput(f"Invalid {label} id: {context_id}")
    return item_id


class ContextResolver:
    """Resolve and memoise note keys for practice content."""

    def __init__(self, session: Session, clock: Callable[[], datetime]):
        self.session = session
        self.clock = clock

    def resolve(self, context_type: ContextType | str, context_id: int | str) -> NoteKey:
        """
        Resolve a context to its note key.

        Raises:
            InvalidInput: malformed context id, or content whose domain or
                difficulty cannot form a note key
            NotFound: the referenced case or question does not exist
        """
        context_type = ContextType(context_type)
        context_id = str(context_id).strip()

        cached = self.session.execute(
            select(ContextClusterMapping).where(
                ContextClusterMapping.context_type == context_type.value,
                ContextClusterMapping.context_id == context_id,
            )
        ).scalar_one_or_none()
        if cached is not None:
            return NoteKey(
                domain=cached.domain,
                difficulty=cached.difficulty_level,
                cluster_key=cached.cluster_key,
            )

        if context_type is ContextType.CATEGORY:
            base, tagged = parse_category_context(context_id)
            free_text = base.domain
        elif context_type is ContextType.UKMLA_QUESTION:
            question = self.session.get(UkmlaQuestion, _parse_item_id(context_id, "question"))
            if question is None:
                raise NotFound(f"Question not found: {context_id}")
            base = build_key(
                "question", domain=question.category, difficulty=question.difficulty_level
            )
            tagged = question.rivision_cluster_key
            free_text = question.free_text
        else:
            medical_case = self.session.get(Case, _parse_item_id(context_id, "case"))
            if medical_case is None:
                raise NotFound(f"Case not found: {context_id}")
            base = build_key(
                "case", domain=medical_case.clinical_domain, difficulty=medical_case.difficulty_level
            )
            tagged = medical_case.rivision_cluster_key
            free_text = medical_case.free_text

        cluster_key, matched_by = self.infer_cluster(base.domain, free_text, tagged)
        resolved = build_key(
            context_type.value, domain=base.domain, difficulty=base.difficulty, cluster_key=cluster_key
        )
        self._persist(context_type, context_id, resolved, matched_by)
        return resolved

    def taxonomy(self, domain: str) -> list[ClusterTaxonomyEntry]:
        """Active taxonomy entries for a domain, ordered by cluster key."""
        return list(
            self.session.execute(
                select(ClusterTaxonomyEntry)
                .where(ClusterTaxonomyEntry.domain == domain, ClusterTaxonomyEntry.active.is_(True))
                .order_by(ClusterTaxonomyEntry.cluster_key)
            ).scalars()
        )

    def infer_cluster(
        self,
        domain: str,
        text: str,
        tagged_cluster_key: str | None = None,
    ) -> tuple[str | None, str]:
        """
        Pick the cluster for free text within a domain.

        Returns (cluster_key, matched_by). When no keyword matches, or several
        clusters tie, the entry with the lowest cluster key wins.
        """
        entries = self.taxonomy(domain)
        if not entries:
            return None, MatchedBy.HEURISTIC

        if tagged_cluster_key:
            for entry in entries:
                if entry.cluster_key == tagged_cluster_key:
                    return entry.cluster_key, MatchedBy.METADATA
            logger.debug("Tagged cluster {} not in {} taxonomy", tagged_cluster_key, domain)

        best_entry = entries[0]
        best_score = 0
        for entry in entries:
            score = keyword_score(text, entry.keywords or [])
            if score > best_score:
                best_entry, best_score = entry, score

        return best_entry.cluster_key, MatchedBy.HEURISTIC

    def _persist(
        self,
        context_type: ContextType,
        context_id: str,
        resolved: NoteKey,
        matched_by: str,
    ) -> None:
        upsert(
            self.session,
            ContextClusterMapping,
            {
                "context_type": context_type.value,
                "context_id": context_id,
                "domain": resolved.domain,
                "difficulty_level": resolved.difficulty,
                "cluster_key": resolved.cluster_key,
                "matched_by": matched_by,
                "updated_at": self.clock(),
            },
            conflict_columns=["context_type", "context_id"],
        )
        logger.debug(
            "Resolved {}:{} -> {} ({})",
            context_type.value,
            context_id,
            resolved.cluster_key,
            matched_by,
        )
