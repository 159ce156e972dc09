"""
Observation / feelings / needs / request extraction from a single message.
"""

from __future__ import annotations

from typing import Optional, Sequence

from coachcore.context import HistoryTurn
from coachcore.errors import CompletionProviderError
from coachcore.services.providers import CompletionProvider
from coachcore.services.shared import logger, parse_json_object
from coachcore.vocabulary import FEELINGS, NEEDS, VocabularyTerm, find_flexible_match

EXTRACTION_SCHEMA = {
    "type": "object",
    "properties": {
        "observation": {"type": "string"},
        "feelings": {"type": "array", "items": {"type": "string"}},
        "needs": {"type": "array", "items": {"type": "string"}},
        "request": {"type": "string"},
    },
    "required": ["observation", "feelings", "needs", "request"],
}


def empty_extraction() -> dict:
    return {"observation": None, "feelings": [], "needs": [], "request": None}


def _optional_text(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


class ConceptExtractor:
    def __init__(
        self,
        completion: CompletionProvider,
        feelings: Sequence[VocabularyTerm] = FEELINGS,
        needs: Sequence[VocabularyTerm] = NEEDS,
    ):
        self.completion = completion
        self.feelings = tuple(feelings)
        self.needs = tuple(needs)

    def _instruction(self, locale: str) -> str:
        feelings = ", ".join(term.name_for(locale) for term in self.feelings)
        needs = ", ".join(term.name_for(locale) for term in self.needs)
        return (
            "Extract the four components of nonviolent communication from the user's message.\n"
            "Only extract what the user stated explicitly. Do not guess or infer.\n"
            "- observation: a factual observation the user described, or an empty string.\n"
            f"- feelings: feelings the user named, taken from this list only: {feelings}.\n"
            f"- needs: needs the user named, taken from this list only: {needs}.\n"
            "- request: a concrete request the user formulated, or an empty string.\n"
            "Return empty arrays and empty strings when nothing was stated."
        )

    def _validated(self, values, terms: Sequence[VocabularyTerm], locale: str, kind: str) -> list[str]:
        accepted: list[str] = []
        if not isinstance(values, list):
            return accepted
        for value in values:
            if not isinstance(value, str):
                continue
            match = find_flexible_match(value, terms)
            if match is None:
                logger.info("concept_term_rejected", extra={"kind": kind})
                continue
            name = match.name_for(locale)
            if name not in accepted:
                accepted.append(name)
        return accepted

    async def extract(self, message: str, locale: str = "en") -> dict:
        if not message or not message.strip():
            return empty_extraction()
        try:
            raw = await self.completion.complete(
                self._instruction(locale),
                [HistoryTurn(role="user", content=message)],
                output_schema=EXTRACTION_SCHEMA,
                temperature=0.1,
            )
            parsed = parse_json_object(raw)
        except (CompletionProviderError, ValueError) as exc:
            logger.warning("concept_extraction_failed", extra={"error": str(exc)})
            return empty_extraction()

        return {
            "observation": _optional_text(parsed.get("observation")),
            "feelings": self._validated(parsed.get("feelings"), self.feelings, locale, "feeling"),
            "needs": self._validated(parsed.get("needs"), self.needs, locale, "need"),
            "request": _optional_text(parsed.get("request")),
        }
