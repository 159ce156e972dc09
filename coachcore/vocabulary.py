"""
Controlled vocabularies for feelings and needs.

Concept extraction only keeps terms that match one of these entries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence


@dataclass(frozen=True)
class VocabularyTerm:
    name_en: str
    name_de: str
    category: str

    def name_for(self, locale: str) -> str:
        return self.name_de if locale == "de" else self.name_en

    def names(self) -> tuple[str, str]:
        return self.name_en, self.name_de


FEELINGS: tuple[VocabularyTerm, ...] = (
    VocabularyTerm("happy", "glücklich", "met"),
    VocabularyTerm("grateful", "dankbar", "met"),
    VocabularyTerm("relieved", "erleichtert", "met"),
    VocabularyTerm("calm", "ruhig", "met"),
    VocabularyTerm("confident", "zuversichtlich", "met"),
    VocabularyTerm("hopeful", "hoffnungsvoll", "met"),
    VocabularyTerm("inspired", "inspiriert", "met"),
    VocabularyTerm("joyful", "freudig", "met"),
    VocabularyTerm("moved", "berührt", "met"),
    VocabularyTerm("curious", "neugierig", "met"),
    VocabularyTerm("content", "zufrieden", "met"),
    VocabularyTerm("sad", "traurig", "unmet"),
    VocabularyTerm("lonely, alone", "einsam, allein", "unmet"),
    VocabularyTerm("angry", "wütend", "unmet"),
    VocabularyTerm("frustrated", "frustriert", "unmet"),
    VocabularyTerm("anxious", "ängstlich", "unmet"),
    VocabularyTerm("afraid", "verängstigt", "unmet"),
    VocabularyTerm("overwhelmed", "überfordert", "unmet"),
    VocabularyTerm("exhausted, tired", "erschöpft, müde", "unmet"),
    VocabularyTerm("disappointed", "enttäuscht", "unmet"),
    VocabularyTerm("hurt", "verletzt", "unmet"),
    VocabularyTerm("confused", "verwirrt", "unmet"),
    VocabularyTerm("ashamed", "beschämt", "unmet"),
    VocabularyTerm("irritated", "gereizt", "unmet"),
    VocabularyTerm("helpless", "hilflos", "unmet"),
    VocabularyTerm("jealous", "eifersüchtig", "unmet"),
    VocabularyTerm("nervous", "nervös", "unmet"),
    VocabularyTerm("stressed", "gestresst", "unmet"),
    VocabularyTerm("worried", "besorgt", "unmet"),
)

NEEDS: tuple[VocabularyTerm, ...] = (
    VocabularyTerm("celebration", "Feiern", "celebration"),
    VocabularyTerm("mourning", "Trauern", "celebration"),
    VocabularyTerm("contribution", "Beitragen", "contribution"),
    VocabularyTerm("autonomy", "Autonomie", "autonomy"),
    VocabularyTerm("choice", "Wahlfreiheit", "autonomy"),
    VocabularyTerm("self-determination", "Selbstbestimmung", "autonomy"),
    VocabularyTerm("safety", "Sicherheit", "physical"),
    VocabularyTerm("rest", "Erholung, Ruhe", "physical"),
    VocabularyTerm("connection", "Verbindung", "connection"),
    VocabularyTerm("belonging", "Zugehörigkeit", "connection"),
    VocabularyTerm("closeness", "Nähe", "connection"),
    VocabularyTerm("community", "Gemeinschaft", "connection"),
    VocabularyTerm("empathy", "Empathie", "connection"),
    VocabularyTerm("understanding", "Verständnis", "connection"),
    VocabularyTerm("acceptance", "Akzeptanz", "connection"),
    VocabularyTerm("appreciation, recognition", "Wertschätzung, Würdigung", "connection"),
    VocabularyTerm("respect", "Respekt", "connection"),
    VocabularyTerm("support", "Unterstützung", "connection"),
    VocabularyTerm("trust", "Vertrauen", "connection"),
    VocabularyTerm("honesty", "Ehrlichkeit", "integrity"),
    VocabularyTerm("authenticity", "Authentizität", "integrity"),
    VocabularyTerm("meaning", "Sinn", "integrity"),
    VocabularyTerm("clarity", "Klarheit", "integrity"),
    VocabularyTerm("harmony", "Harmonie", "peace"),
    VocabularyTerm("ease", "Leichtigkeit", "peace"),
    VocabularyTerm("order", "Ordnung", "peace"),
    VocabularyTerm("play", "Spiel", "play"),
    VocabularyTerm("fun", "Spaß", "play"),
    VocabularyTerm("learning", "Lernen", "growth"),
    VocabularyTerm("growth", "Wachstum", "growth"),
)


def find_flexible_match(extracted: str, terms: Sequence[VocabularyTerm]) -> Optional[VocabularyTerm]:
    """
    Match a model-extracted label against a vocabulary.

    Tries, in order: exact match on either language, containment in either
    direction, then the comma-separated parts of multi-label entries.
    """
    needle = (extracted or "").strip().lower()
    if not needle:
        return None

    for term in terms:
        if any(name.lower() == needle for name in term.names()):
            return term

    for term in terms:
        for name in term.names():
            candidate = name.lower()
            if candidate in needle or needle in candidate:
                return term

    for term in terms:
        for name in term.names():
            parts = [part.strip() for part in name.lower().split(",")]
            if needle in parts:
                return term
    return None
