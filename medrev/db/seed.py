"""
Cluster taxonomy seed data.

Every domain gets the same six sub-topic clusters. Each cluster's keywords
include the lower-cased domain name, so text mentioning only the domain
scores every cluster equally.
"""

from __future__ import annotations

import re

from loguru import logger
from sqlalchemy.orm import Session

from medrev.db.database import upsert
from medrev.db.models import ClusterTaxonomyEntry

DOMAINS = (
    "Cardiology",
    "Respiratory",
    "Gastroenterology",
    "Neurology",
    "Endocrinology",
    "Renal",
    "Infectious Disease",
    "Psychiatry",
    "Obstetrics and Gynaecology",
    "Paediatrics",
    "Critical Care",
    "Musculoskeletal",
)

CLUSTER_TEMPLATES = (
    {
        "suffix": "core_patterns",
        "label": "Core Clinical Patterns",
        "keywords": ["presentation", "classic", "pattern", "features", "history"],
    },
    {
        "suffix": "diagnostic_strategy",
        "label": "Diagnostic Strategy",
        "keywords": ["investigation", "diagnosis", "test", "ecg", "imaging", "labs"],
    },
    {
        "suffix": "first_line_management",
        "label": "First-line Management",
        "keywords": ["first-line", "initial management", "treatment", "therapy", "plan"],
    },
    {
        "suffix": "emergency_red_flags",
        "label": "Emergency Red Flags",
        "keywords": ["emergency", "red flag", "urgent", "shock", "unstable", "sepsis"],
    },
    {
        "suffix": "complications_follow_up",
        "label": "Complications and Follow-up",
        "keywords": ["complication", "follow-up", "monitor", "safety net", "review"],
    },
    {
        "suffix": "guidelines_prescribing",
        "label": "Guidelines and Prescribing",
        "keywords": ["guideline", "nice", "dose", "prescribing", "contraindication"],
    },
)


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")


def taxonomy_rows(domains: tuple[str, ...] = DOMAINS) -> list[dict]:
    rows = []
    for domain in domains:
        slug = slugify(domain)
        for template in CLUSTER_TEMPLATES:
            rows.append(
                {
                    "domain": domain,
                    "cluster_key": f"{slug}_{template['suffix']}",
                    "cluster_label": template["label"],
                    "keywords": [*template["keywords"], domain.lower()],
                    "active": True,
                }
            )
    return rows


def seed_taxonomy(session: Session, domains: tuple[str, ...] = DOMAINS) -> int:
    """Insert or refresh taxonomy rows. Returns the number of rows written."""
    rows = taxonomy_rows(domains)
    for row in rows:
        upsert(
            session,
            ClusterTaxonomyEntry,
            row,
            conflict_columns=["domain", "cluster_key"],
            update_columns=["cluster_label", "keywords", "active"],
        )
    logger.info("Seeded {} taxonomy records across {} domains", len(rows), len(domains))
    return len(rows)
