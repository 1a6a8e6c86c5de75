"""
Unit tests for persistence helpers, seeding and settings.
"""

import pytest
from sqlalchemy import select

from medrev.config import Settings
from medrev.db.database import session_scope, upsert
from medrev.db.models import ClusterTaxonomyEntry, build_scope_key
from medrev.db.seed import CLUSTER_TEMPLATES, seed_taxonomy, slugify, taxonomy_rows


def test_scope_key_uses_wildcards_for_missing_levels():
    assert build_scope_key("Cardiology", None, None) == "Cardiology|__all__|__all__"
    assert build_scope_key("Cardiology", "Core", "c1") == "Cardiology|Core|c1"


def test_slugify():
    assert slugify("Obstetrics and Gynaecology") == "obstetrics_and_gynaecology"


def test_taxonomy_rows_include_domain_keyword():
    rows = taxonomy_rows(("Infectious Disease",))

    assert len(rows) == len(CLUSTER_TEMPLATES)
    assert rows[0]["cluster_key"] == "infectious_disease_core_patterns"
    assert all("infectious disease" in row["keywords"] for row in rows)


def test_seed_is_idempotent(session_factory):
    with session_scope(session_factory) as session:
        seed_taxonomy(session, ("Renal",))
    with session_scope(session_factory) as session:
        seed_taxonomy(session, ("Renal",))

    with session_factory() as session:
        entries = session.execute(select(ClusterTaxonomyEntry)).scalars().all()

    assert len(entries) == len(CLUSTER_TEMPLATES)


def test_upsert_overwrites_on_conflict(session):
    values = {
        "domain": "Renal",
        "cluster_key": "renal_x",
        "cluster_label": "First",
        "keywords": ["a"],
        "active": True,
    }
    upsert(session, ClusterTaxonomyEntry, values, conflict_columns=["domain", "cluster_key"])
    upsert(
        session,
        ClusterTaxonomyEntry,
        {**values, "cluster_label": "Second", "keywords": ["b"]},
        conflict_columns=["domain", "cluster_key"],
    )

    [entry] = session.execute(select(ClusterTaxonomyEntry)).scalars().all()
    assert entry.cluster_label == "Second"
    assert entry.keywords == ["b"]


def test_session_scope_rolls_back_on_error(session_factory):
    with pytest.raises(RuntimeError):
        with session_scope(session_factory) as session:
            seed_taxonomy(session, ("Renal",))
            raise RuntimeError("abort")

    with session_factory() as session:
        assert session.execute(select(ClusterTaxonomyEntry)).first() is None


def test_settings_env_prefix(monkeypatch):
    monkeypatch.setenv("MEDREV_STALE_SCORE_DELTA", "15")
    monkeypatch.setenv("MEDREV_GEMINI_API_KEY", "abc")

    settings = Settings(_env_file=None)

    assert settings.stale_score_delta == 15
    assert settings.has_ai_configured() is True
    assert settings.fallback_source_version == "v1-fallback"
