"""
Revision Note Generator.

Writes personalised revision notes from a learner's weak evidence using
Gemini, with a deterministic fallback when the model is unavailable or
returns something unusable.

Notes are short and exam-oriented:
- Key concepts for the scope
- Common mistakes the evidence points at
- A rapid bedside checklist
- A concrete practice plan
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Protocol

import google.generativeai as genai
from loguru import logger
from pydantic import ValidationError

from medrev.config import Settings, get_settings
from medrev.learning.schemas import NoteContent, NoteEvidence, NoteKey

SYSTEM_PROMPT = (
    "You are a senior UKMLA medical educator. "
    "Return strict JSON with concise, personalised revision notes."
)

OUTPUT_SHAPE = {
    "title": "string",
    "summary": "string",
    "key_concepts": "string[] (3-8 items)",
    "common_mistakes": "string[] (2-8 items)",
    "rapid_checklist": "string[] (3-10 items)",
    "practice_plan": "string[] (3-8 items)",
}

CONSTRAINTS = [
    "High yield only",
    "No markdown",
    "Actionable exam-oriented language",
]


class GenerationError(Exception):
    """The generator produced no usable note."""


class ContentGenerator(Protocol):
    """Anything that can turn a scope and its evidence into note content."""

    def generate(self, key: NoteKey, evidence: NoteEvidence) -> NoteContent: ...


@dataclass
class GenerationResult:
    content: NoteContent
    source: str  # "model" | "fallback"

    @property
    def used_fallback(self) -> bool:
        return self.source == "fallback"


def build_fallback_note(domain: str, cluster_key: str | None = None) -> NoteContent:
    """Static, scope-labelled note used whenever generation fails."""
    focus = f" ({cluster_key.replace('_', ' ')})" if cluster_key else ""
    return NoteContent(
        title=f"{domain} Revision Brief{focus}",
        summary=(
            "Fallback note: focus on high-yield patterns, red flags, first-line "
            "investigations, and guideline-aligned management."
        ),
        key_concepts=[
            f"{domain} pattern recognition and prioritisation",
            "Targeted investigations that change management",
            "Immediate stabilisation and escalation triggers",
            "Definitive treatment and follow-up planning",
        ],
        common_mistakes=[
            "Missing immediate life-threatening differentials",
            "Choosing broad tests before focused bedside reasoning",
            "Delaying escalation when risk indicators are present",
        ],
        rapid_checklist=[
            "Confirm immediate ABCDE priorities",
            "State top diagnosis and key alternatives",
            "Order focused investigations with rationale",
            "Start first-line treatment immediately when indicated",
            "Plan disposition, escalation, and safety-net advice",
        ],
        practice_plan=[
            "Review one concise guideline summary",
            "Do a targeted MCQ set for this weak area",
            "Re-attempt one relevant case within 48 hours",
        ],
    )


def build_prompt(key: NoteKey, evidence: NoteEvidence) -> str:
    return json.dumps(
        {
            "task": "Generate personalised revision notes for a student based on weak evidence",
            "context": {
                "domain": key.domain,
                "difficulty": key.difficulty,
                "cluster_key": key.cluster_key,
            },
            "evidence": evidence.model_dump(),
            "output_shape": OUTPUT_SHAPE,
            "constraints": CONSTRAINTS,
        }
    )


def parse_note(raw: str | None) -> NoteContent:
    """
    Validate raw model output.

    Raises:
        GenerationError: empty, non-JSON, or out-of-bounds output
    """
    if not raw:
        raise GenerationError("Empty response from model")
    try:
        return NoteContent.model_validate_json(raw)
    except ValidationError as e:
        raise GenerationError(f"Model output failed validation: {e.error_count()} errors") from e


class GeminiNoteGenerator:
    """
    Gemini-backed note generator.

    The client is configured once at construction; without an API key every
    call raises GenerationError so the cache falls back.
    """

    def __init__(self, settings: Settings | None = None, model_name: str | None = None):
        self.settings = settings or get_settings()
        self.model_name = model_name or self.settings.ai_model
        self._model = None

        if self.settings.has_ai_configured():
            genai.configure(api_key=self.settings.gemini_api_key)
            self._model = genai.GenerativeModel(
                model_name=self.model_name,
                system_instruction=SYSTEM_PROMPT,
            )
        else:
            logger.info("Gemini API key not set - revision notes will use the fallback")

    @property
    def is_configured(self) -> bool:
        return self._model is not None

    def generate(self, key: NoteKey, evidence: NoteEvidence) -> NoteContent:
        if self._model is None:
            raise GenerationError("Gemini not configured")

        response = self._model.generate_content(
            build_prompt(key, evidence),
            generation_config={
                "temperature": 0.3,
                "top_p": 0.8,
                "max_output_tokens": 2048,
                "response_mime_type": "application/json",
            },
        )
        return parse_note(response.text)
