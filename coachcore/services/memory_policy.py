"""
Memory category policy: lexical classification, priority and expiry tables.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from coachcore.models import MemoryCategory

MemoryClassifier = Callable[[str], MemoryCategory]

CATEGORY_PRIORITY = {
    MemoryCategory.core_identity: 1.0,
    MemoryCategory.patterns: 0.8,
    MemoryCategory.preferences: 0.6,
    MemoryCategory.episodic: 0.4,
    MemoryCategory.contextual: 0.2,
}

# None means the memory never expires
CATEGORY_EXPIRY_DAYS = {
    MemoryCategory.core_identity: None,
    MemoryCategory.patterns: 365,
    MemoryCategory.preferences: 180,
    MemoryCategory.episodic: 90,
    MemoryCategory.contextual: 30,
}

# Checked in order; first hit wins.
CATEGORY_KEYWORDS: tuple[tuple[MemoryCategory, tuple[str, ...]], ...] = (
    (
        MemoryCategory.core_identity,
        (
            "personality", "character", "identity", "core belief", "value",
            "fundamental", "persönlichkeit", "identität", "charakter", "grundwert",
        ),
    ),
    (
        MemoryCategory.patterns,
        (
            "pattern", "tends to", "usually", "often", "repeatedly", "habit",
            "always", "muster", "gewohnheit", "meistens", "immer wieder",
        ),
    ),
    (
        MemoryCategory.preferences,
        (
            "prefers", "likes", "dislikes", "enjoys", "hates", "favorite",
            "favourite", "bevorzugt", "mag", "liebt", "hasst", "lieblings",
        ),
    ),
    (
        MemoryCategory.contextual,
        (
            "currently", "today", "recently", "right now", "this week",
            "derzeit", "heute", "kürzlich", "gerade", "diese woche",
        ),
    ),
)


def classify_memory_category(text: str) -> MemoryCategory:
    lowered = (text or "").lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return MemoryCategory.episodic


def priority_for(category: MemoryCategory) -> float:
    return CATEGORY_PRIORITY[MemoryCategory(category)]


def expiry_for(category: MemoryCategory, now: Optional[datetime] = None) -> Optional[datetime]:
    days = CATEGORY_EXPIRY_DAYS[MemoryCategory(category)]
    if days is None:
        return None
    return (now or datetime.utcnow()) + timedelta(days=days)


def bounded_merge(existing: str, addition: str, max_length: int, separator: str = ". ") -> str:
    """
    Append `addition` to `existing`, dropping the oldest segments until the
    result fits in `max_length`. A single oversized addition is truncated.
    """
    existing = (existing or "").strip()
    addition = (addition or "").strip()
    if not existing:
        return addition[:max_length]
    if not addition:
        return existing[:max_length]
    segments = [segment for segment in existing.split(separator) if segment]
    segments.append(addition)
    merged = separator.join(segments)
    while len(merged) > max_length and len(segments) > 1:
        segments.pop(0)
        merged = separator.join(segments)
    return merged[:max_length]
