"""
Turns a finished conversation into first-person facts for the memory store.
"""

from __future__ import annotations

import json
from typing import Optional, Sequence

import coachcore.config as config
from coachcore.context import HistoryTurn, normalize_history, render_history
from coachcore.errors import CompletionProviderError
from coachcore.models import ConfidenceTier, MemoryCategory
from coachcore.services.providers import CompletionProvider
from coachcore.services.shared import logger, strip_json_fences

ASPECT_TYPES = ("identity", "emotion", "relationship", "value")

MEMORY_EXTRACTION_SCHEMA = {
    "type": "object",
    "properties": {
        "memories": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "aspect_type": {"type": "string", "enum": list(ASPECT_TYPES)},
                    "key": {"type": "string"},
                    "value": {"type": "string"},
                    "confidence": {"type": "string", "enum": ["speculative", "likely", "certain"]},
                    "person_name": {"type": "string"},
                },
                "required": ["aspect_type", "key", "value", "confidence", "person_name"],
            },
        },
    },
    "required": ["memories"],
}

CONFIDENCE_TIERS = {
    "speculative": ConfidenceTier.low.value,
    "likely": ConfidenceTier.medium.value,
    "certain": ConfidenceTier.high.value,
}

# relationship facts have no fixed category; the store's classifier decides
ASPECT_CATEGORIES = {
    "identity": MemoryCategory.preferences.value,
    "emotion": MemoryCategory.patterns.value,
    "relationship": None,
    "value": MemoryCategory.core_identity.value,
}

_INSTRUCTIONS = {
    "en": (
        "You extract memories about the user from a conversation.\n"
        "Aspect types:\n"
        "- identity: roles, traits, hobbies, likes and dislikes of the user\n"
        "- emotion: emotional patterns, triggers, ways of coping\n"
        "- relationship: other people in the user's life and how the user relates to them\n"
        "- value: core values, priorities and principles\n"
        '"I like bears" is identity, "My partner likes bears" is relationship.\n'
        'Write every memory in the user\'s first-person voice ("I ..."), never in third person.\n'
        "For each memory give aspect_type, key (a short heading), value (the memory itself), "
        "confidence (speculative, likely or certain) and person_name (the other person's name, "
        "or an empty string).\n"
        'If the user explicitly asks you to remember something ("remember that", "please remember", '
        '"don\'t forget"), extract it with confidence certain.\n'
        "Extract only meaningful memories. Return an empty list when there are none."
    ),
    "de": (
        "Du extrahierst Erinnerungen über die Nutzerin oder den Nutzer aus einem Gespräch.\n"
        "Aspekttypen:\n"
        "- identity: Rollen, Eigenschaften, Hobbys, Vorlieben und Abneigungen der Person\n"
        "- emotion: emotionale Muster, Auslöser, Bewältigungsstrategien\n"
        "- relationship: andere Personen im Leben der Person und die Beziehung zu ihnen\n"
        "- value: Grundwerte, Prioritäten und Prinzipien\n"
        "„Ich mag Bären“ ist identity, „Mein Partner mag Bären“ ist relationship.\n"
        "Formuliere jede Erinnerung in der Ich-Perspektive („Ich ...“), niemals in der dritten Person.\n"
        "Gib für jede Erinnerung aspect_type, key (kurze Überschrift), value (die Erinnerung selbst), "
        "confidence (speculative, likely oder certain) und person_name (Name der anderen Person "
        "oder eine leere Zeichenfolge) an.\n"
        "Wenn die Person ausdrücklich bittet, sich etwas zu merken („merke dir“, „vergiss nicht“, "
        "„bitte erinnere dich“), extrahiere es mit confidence certain.\n"
        "Extrahiere nur sinnvolle Erinnerungen. Gib eine leere Liste zurück, wenn es keine gibt."
    ),
}


def _parse_memories(raw) -> list:
    if isinstance(raw, str):
        raw = json.loads(strip_json_fences(raw))
    if isinstance(raw, dict):
        raw = raw.get("memories")
    if not isinstance(raw, list):
        raise ValueError("expected a list of memories")
    return raw


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def to_fact(item) -> Optional[dict]:
    """Map one extracted memory onto the fact shape `write_memories` accepts."""
    if not isinstance(item, dict):
        return None
    value = _text(item.get("value"))
    if not value:
        return None
    aspect = _text(item.get("aspect_type") or item.get("aspectType")).lower()
    confidence = _text(item.get("confidence")).lower()
    return {
        "text": value,
        "key": _text(item.get("key")) or None,
        "confidence": CONFIDENCE_TIERS.get(confidence, ConfidenceTier.medium.value),
        "category": ASPECT_CATEGORIES.get(aspect),
        "person_name": _text(item.get("person_name") or item.get("personName")) or None,
    }


class MemoryExtractor:
    def __init__(
        self,
        completion: CompletionProvider,
        max_facts: int = config.MEMORY_EXTRACTION_MAX_FACTS,
    ):
        self.completion = completion
        self.max_facts = max_facts

    async def extract(self, transcript: Sequence, locale: str = "en") -> list[dict]:
        """Facts found in the transcript; an unusable completion yields no facts."""
        turns = normalize_history(transcript)
        if not turns:
            return []
        instruction = _INSTRUCTIONS["de" if (locale or "").lower().startswith("de") else "en"]
        try:
            raw = await self.completion.complete(
                instruction,
                [HistoryTurn(role="user", content=f"The chat history is:\n{render_history(turns)}")],
                output_schema=MEMORY_EXTRACTION_SCHEMA,
                temperature=0.3,
            )
            items = _parse_memories(raw)
        except (CompletionProviderError, ValueError) as exc:
            logger.warning("memory_extraction_failed", extra={"error": str(exc)})
            return []

        facts = [fact for fact in (to_fact(item) for item in items) if fact is not None]
        if len(facts) > self.max_facts:
            logger.info("memory_extraction_truncated", extra={"found": len(facts), "kept": self.max_facts})
            facts = facts[: self.max_facts]
        return facts
