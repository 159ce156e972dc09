"""
Turn-scoped context objects passed to tools and stage analysis.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional, Sequence

import coachcore.config as config
from coachcore.errors import ValidationIssue


@dataclass(frozen=True)
class HistoryTurn:
    role: str
    content: str

    @staticmethod
    def from_value(value) -> "HistoryTurn":
        if isinstance(value, HistoryTurn):
            return value
        if isinstance(value, dict):
            role = value.get("role") or "user"
            content = value.get("content") or ""
            # stored transcripts use "model" for assistant turns
            if role == "model":
                role = "assistant"
            return HistoryTurn(role=str(role), content=str(content))
        raise ValidationIssue(
            "history entries must be objects with role and content",
            field="recent_history",
            error_type="invalid_type",
        )


@dataclass(frozen=True)
class ToolContext:
    owner_id: str
    locale: str = config.KNOWLEDGE_DEFAULT_LANGUAGE
    current_stage: Optional[str] = None
    message: str = ""
    recent_history: tuple[HistoryTurn, ...] = ()
    previous_results: tuple = field(default_factory=tuple)

    def with_previous_results(self, results: Sequence) -> "ToolContext":
        return replace(self, previous_results=tuple(results))


def normalize_history(history: Optional[Sequence], window: Optional[int] = None) -> tuple[HistoryTurn, ...]:
    """Keep user/assistant turns with content, limited to the trailing window."""
    if not history:
        return ()
    turns = [HistoryTurn.from_value(item) for item in history]
    turns = [
        turn for turn in turns
        if turn.role in {"user", "assistant"} and turn.content.strip()
    ]
    if window is not None and window > 0:
        turns = turns[-window:]
    return tuple(turns)


def render_history(turns: Sequence[HistoryTurn]) -> str:
    if not turns:
        return "(no previous turns)"
    return "\n".join(f"{turn.role}: {turn.content}" for turn in turns)


__all__ = [
    "HistoryTurn",
    "ToolContext",
    "normalize_history",
    "render_history",
]
