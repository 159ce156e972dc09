"""
Conversation stages and the model-driven transition state machine.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Mapping, Optional, Sequence

import coachcore.config as config
from coachcore.context import HistoryTurn, normalize_history, render_history
from coachcore.db import open_session
from coachcore.errors import CompletionProviderError, ValidationIssue
from coachcore.models import ConversationSession
from coachcore.services.memory_store import format_memories_for_prompt
from coachcore.services.providers import CompletionProvider
from coachcore.services.shared import logger, parse_json_object

# =============================================================================
# Catalog
# =============================================================================

ORIENTATION = "orientation"
SELF_REFLECTION = "self-reflection"
OTHER_PERSPECTIVE = "other-perspective"
ACTION_PLANNING = "action-planning"
CONFLICT_RESOLUTION = "conflict-resolution"
MEMORY_RECALL = "memory-recall"
CLOSING_FEEDBACK = "closing-feedback"

INITIAL_STAGE = ORIENTATION
ROLE_HEADING = "Your role:"

MARKER_START = "path_start"
MARKER_SWITCH = "path_switch"
MARKER_END = "path_end"


@dataclass(frozen=True)
class StageDefinition:
    id: str
    name: str
    prompt_template: str
    entry_condition: str
    exit_condition: str
    suggested_next: tuple[str, ...] = ()


_STYLE_BLOCK = """Style:
[answerLengthPreference]
[toneOfVoicePreference]
[knowledgeLevelPreference]"""

STAGE_CATALOG: dict[str, StageDefinition] = {
    stage.id: stage
    for stage in (
        StageDefinition(
            id=ORIENTATION,
            name="Orientation",
            prompt_template=(
                "You are a coach for nonviolent communication. The conversation has just "
                "started or needs a new direction.\n\n"
                f"{ROLE_HEADING}\n"
                "- Find out what the person wants to talk about.\n"
                "- Offer the directions that fit: understanding their own feelings and needs, "
                "understanding someone else, planning a conversation, or working through a conflict.\n"
                "- Ask one question at a time.\n\n"
                "[styleGuidelines]"
            ),
            entry_condition="The conversation starts, the intent is unclear, or a new direction is needed",
            exit_condition="The person has chosen a specific direction",
            suggested_next=(SELF_REFLECTION, OTHER_PERSPECTIVE, ACTION_PLANNING, CONFLICT_RESOLUTION),
        ),
        StageDefinition(
            id=SELF_REFLECTION,
            name="Self-reflection",
            prompt_template=(
                "You are a coach for nonviolent communication guiding self-empathy.\n\n"
                f"{ROLE_HEADING}\n"
                "- Help the person separate what happened from how they judge it.\n"
                "- Help them name their feelings and the needs behind them.\n"
                "- Reflect back what you hear before moving on.\n\n"
                "[styleGuidelines]"
            ),
            entry_condition="The person wants to understand their own feelings and needs",
            exit_condition="The person shows clarity or relief about their situation",
            suggested_next=(OTHER_PERSPECTIVE, ACTION_PLANNING),
        ),
        StageDefinition(
            id=OTHER_PERSPECTIVE,
            name="Other perspective",
            prompt_template=(
                "You are a coach for nonviolent communication guiding empathy for another person.\n\n"
                f"{ROLE_HEADING}\n"
                "- Invite the person to guess what the other person might feel and need.\n"
                "- Keep guesses tentative and free of blame.\n\n"
                "[styleGuidelines]"
            ),
            entry_condition="The person is ready to explore empathy for someone else",
            exit_condition="The person shows understanding or compassion for the other person",
            suggested_next=(ACTION_PLANNING, CONFLICT_RESOLUTION),
        ),
        StageDefinition(
            id=ACTION_PLANNING,
            name="Action planning",
            prompt_template=(
                "You are a coach for nonviolent communication helping to plan a conversation.\n\n"
                f"{ROLE_HEADING}\n"
                "- Help the person phrase an observation, a feeling, a need and a concrete request.\n"
                "- Check that the request is doable and positively phrased.\n\n"
                "[styleGuidelines]"
            ),
            entry_condition="The person has developed self-understanding or empathy for others",
            exit_condition="The person has a clear plan they are ready to carry out",
            suggested_next=(SELF_REFLECTION, CONFLICT_RESOLUTION, ORIENTATION),
        ),
        StageDefinition(
            id=CONFLICT_RESOLUTION,
            name="Conflict resolution",
            prompt_template=(
                "You are a mediator trained in nonviolent communication.\n\n"
                f"{ROLE_HEADING}\n"
                "- Make the needs of every side visible.\n"
                "- Look for strategies that could meet the needs of both sides.\n\n"
                "[styleGuidelines]"
            ),
            entry_condition="The person is dealing with an interpersonal conflict",
            exit_condition="The person has a strategy to approach the conflict constructively",
            suggested_next=(ACTION_PLANNING, CLOSING_FEEDBACK),
        ),
        StageDefinition(
            id=CLOSING_FEEDBACK,
            name="Closing feedback",
            prompt_template=(
                "You are closing the coaching session.\n\n"
                f"{ROLE_HEADING}\n"
                "- Ask the feedback questions one at a time and in order: how helpful the "
                "session was, what was most valuable, and what could be better.\n"
                "- Thank the person when all questions are answered.\n\n"
                "[styleGuidelines]"
            ),
            entry_condition="The person wants to end the conversation or reached their goal",
            exit_condition="Feedback was collected and the session ended",
            suggested_next=(),
        ),
        StageDefinition(
            id=MEMORY_RECALL,
            name="Memory recall",
            prompt_template=(
                "You help the person see what you remember about them from earlier conversations.\n\n"
                f"{ROLE_HEADING}\n"
                "- Answer questions about the remembered facts listed above honestly.\n"
                "- Say so plainly when nothing relevant is remembered.\n\n"
                "[styleGuidelines]"
            ),
            entry_condition="The person asks what you remember about them",
            exit_condition="The person is satisfied with the recalled memories",
            suggested_next=(ORIENTATION, SELF_REFLECTION, OTHER_PERSPECTIVE, ACTION_PLANNING, CONFLICT_RESOLUTION),
        ),
    )
}


def get_stage(stage_id: str) -> StageDefinition:
    stage = STAGE_CATALOG.get(stage_id)
    if stage is None:
        raise ValidationIssue(f"Unknown stage: {stage_id}", field="stage_id", error_type="invalid_value")
    return stage


def is_known_stage(stage_id: Optional[str]) -> bool:
    return bool(stage_id) and stage_id in STAGE_CATALOG


# =============================================================================
# Prompt templates
# =============================================================================

PLACEHOLDER_RE = re.compile(r"\[([A-Za-z0-9_-]+)\]")

ANSWER_LENGTH_VALUES = {
    "very-short": "- Answer in at most 1-2 sentences.",
    "short": "- Answer in at most 1-2 sentences.",
    "medium": "- Answer in at most 3 sentences.",
    "long": "- Answer in at most 4 sentences.",
}
TONE_VALUES = {
    "analytical": "- Use a factual, structured style.\n- Focus on logical connections and concrete steps.",
    "heartfelt": "- Use an empathic, warm style.\n- Emphasize emotional support and understanding.",
    "direct": "- Use a direct, clear style.\n- Focus on clarity and precision.",
    "playful": "- Use a playful, light style.\n- Emphasize ease and joy.",
    "formal": "- Use a professional, respectful style.\n- Emphasize professionalism and respect.",
}
KNOWLEDGE_LEVEL_VALUES = {
    "beginner": "- Explain concepts and terms when needed.\n- Use simple language.",
    "intermediate": "- Assume basic knowledge and give occasional hints.\n- Explain terms briefly when needed.",
    "advanced": "- Use technical terms naturally.\n- Focus on subtle aspects and advanced techniques.",
    "expert": "- Use technical terms naturally.\n- Focus on subtle aspects and advanced techniques.",
}


class PlaceholderResolver:
    """
    Replace `[name]` placeholders from a name-to-value mapping.

    Values may contain further placeholders and are resolved recursively. A
    placeholder that refers back to one already being expanded resolves to
    an empty string, as do unknown placeholders.
    """

    def __init__(self, values: Mapping[str, str]):
        self.values = dict(values)

    def resolve(self, template: str) -> str:
        return self._resolve(template, frozenset())

    def _resolve(self, template: str, visiting: frozenset) -> str:
        def replace(match: re.Match) -> str:
            name = match.group(1)
            if name in visiting:
                logger.warning("placeholder_cycle", extra={"placeholder": name})
                return ""
            value = self.values.get(name)
            if value is None:
                logger.info("placeholder_unknown", extra={"placeholder": name})
                return ""
            return self._resolve(value, visiting | {name})
        return PLACEHOLDER_RE.sub(replace, template)


def preference_values(preferences: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    preferences = preferences or {}
    return {
        "styleGuidelines": _STYLE_BLOCK,
        "answerLengthPreference": ANSWER_LENGTH_VALUES.get(
            preferences.get("answer_length", ""), ANSWER_LENGTH_VALUES["medium"]
        ),
        "toneOfVoicePreference": TONE_VALUES.get(
            preferences.get("tone_of_voice", ""), TONE_VALUES["heartfelt"]
        ),
        "knowledgeLevelPreference": KNOWLEDGE_LEVEL_VALUES.get(
            preferences.get("knowledge_level", ""), KNOWLEDGE_LEVEL_VALUES["beginner"]
        ),
    }


def render_stage_prompt(
    stage_id: str,
    preferences: Optional[Mapping[str, str]] = None,
    first_name: Optional[str] = None,
    memory_context: Optional[str] = None,
) -> str:
    stage = get_stage(stage_id)
    prompt = PlaceholderResolver(preference_values(preferences)).resolve(stage.prompt_template)
    if stage.id == MEMORY_RECALL:
        block = memory_context or "- No memories found"
        prompt = prompt.replace(ROLE_HEADING, f"Available memories:\n{block}\n\n{ROLE_HEADING}", 1)
    if first_name:
        prompt = f"You are talking with {first_name}. {prompt}"
    return prompt


# =============================================================================
# Transition classifier
# =============================================================================

STAGE_SWITCH_SCHEMA = {
    "type": "object",
    "properties": {
        "should_switch": {"type": "boolean"},
        "confidence": {"type": "number"},
        "suggested_stage": {"type": ["string", "null"]},
        "reason": {"type": "string"},
        "current_stage_complete": {"type": "boolean"},
    },
    "required": ["should_switch", "confidence", "suggested_stage", "reason", "current_stage_complete"],
}


@dataclass(frozen=True)
class StageSwitchAnalysis:
    should_switch: bool
    confidence: int
    suggested_stage: Optional[str]
    reason: str
    current_stage_complete: bool = False

    @staticmethod
    def no_switch(reason: str) -> "StageSwitchAnalysis":
        return StageSwitchAnalysis(
            should_switch=False,
            confidence=0,
            suggested_stage=None,
            reason=reason,
            current_stage_complete=False,
        )

    @staticmethod
    def from_payload(payload: Mapping) -> "StageSwitchAnalysis":
        should_switch = payload.get("should_switch")
        confidence = payload.get("confidence")
        if not isinstance(should_switch, bool):
            raise ValueError("should_switch must be a boolean")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise ValueError("confidence must be a number")
        suggested = payload.get("suggested_stage")
        if not isinstance(suggested, str) or not is_known_stage(suggested):
            suggested = None
        reason = payload.get("reason")
        return StageSwitchAnalysis(
            should_switch=should_switch,
            confidence=int(max(0, min(100, round(confidence)))),
            suggested_stage=suggested,
            reason=reason if isinstance(reason, str) else "",
            current_stage_complete=bool(payload.get("current_stage_complete", False)),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class StageClassifier:
    def __init__(self, completion: CompletionProvider, history_window: int = config.STAGE_HISTORY_WINDOW):
        self.completion = completion
        self.history_window = history_window

    def _instruction(self, current_stage: str, history: Sequence[HistoryTurn]) -> str:
        stage_lines = "\n".join(
            f"- {stage.id}: {stage.name}. Enter when: {stage.entry_condition}. "
            f"Done when: {stage.exit_condition}."
            for stage in STAGE_CATALOG.values()
        )
        return (
            "You decide whether a coaching conversation should move to a different stage.\n\n"
            f"Stages:\n{stage_lines}\n\n"
            f"Current stage: {current_stage}\n\n"
            f"Recent conversation:\n{render_history(history)}\n\n"
            "Rules:\n"
            "- Only switch when the person clearly wants something another stage provides.\n"
            f"- Asking you to store something (\"remember that ...\") is not a reason to switch to {MEMORY_RECALL}.\n"
            f"- Asking what you remember (\"what do you remember about me?\") means {MEMORY_RECALL}.\n"
            f"- Wanting to stop or finish the conversation means {CLOSING_FEEDBACK}.\n"
            "- confidence is 0-100.\n"
            "- suggested_stage must be one of the stage ids above, or null."
        )

    async def analyze(
        self,
        message: str,
        current_stage: str,
        recent_history: Optional[Sequence] = None,
    ) -> StageSwitchAnalysis:
        """Never raises; failures come back as a no-switch analysis."""
        try:
            history = normalize_history(recent_history, self.history_window)
            raw = await self.completion.complete(
                self._instruction(current_stage, history),
                [HistoryTurn(role="user", content=message)],
                output_schema=STAGE_SWITCH_SCHEMA,
                temperature=0.1,
            )
            return StageSwitchAnalysis.from_payload(parse_json_object(raw))
        except (CompletionProviderError, ValidationIssue, ValueError) as exc:
            logger.warning("stage_analysis_failed", extra={"error": str(exc)})
            return StageSwitchAnalysis.no_switch("analysis_error")


# =============================================================================
# State machine
# =============================================================================

@dataclass
class StageTransition:
    previous_stage: str
    stage: str
    switched: bool
    analysis: Optional[StageSwitchAnalysis] = None
    rationale: str = ""
    memory_context: Optional[str] = None
    history: list[str] = field(default_factory=list)


def _marker(marker_type: str, stage: str, previous_stage: Optional[str] = None) -> dict:
    marker = {"type": marker_type, "stage": stage, "timestamp": datetime.utcnow().isoformat()}
    if previous_stage:
        marker["previous_stage"] = previous_stage
    return marker


class StageMachine:
    def __init__(
        self,
        classifier: StageClassifier,
        memory_store=None,
        min_confidence: int = config.STAGE_SWITCH_MIN_CONFIDENCE,
        explicit_switch_cues: Sequence[str] = config.STAGE_EXPLICIT_SWITCH_CUES,
    ):
        self.classifier = classifier
        self.memory_store = memory_store
        self.min_confidence = min_confidence
        self.explicit_switch_cues = tuple(cue.lower() for cue in explicit_switch_cues)

    # -- persistence ----------------------------------------------------------

    def _load_or_create(self, db, owner_id: str, initial_stage: Optional[str]) -> ConversationSession:
        session = db.query(ConversationSession).filter(ConversationSession.owner_id == owner_id).first()
        if session is not None:
            if initial_stage and initial_stage != session.current_stage:
                logger.warning(
                    "stage_mismatch",
                    extra={"owner_id": owner_id, "stored": session.current_stage, "given": initial_stage},
                )
            return session
        stage = initial_stage if is_known_stage(initial_stage) else INITIAL_STAGE
        now = datetime.utcnow()
        session = ConversationSession(
            owner_id=owner_id,
            current_stage=stage,
            stage_history=[stage],
            stage_markers=[_marker(MARKER_START, stage)],
            started_at=now,
        )
        db.add(session)
        db.commit()
        return session

    def get_or_create_session(self, owner_id: str, initial_stage: Optional[str] = None) -> dict:
        db = open_session()
        try:
            session = self._load_or_create(db, owner_id, initial_stage)
            return self._session_payload(session)
        finally:
            db.close()

    @staticmethod
    def _session_payload(session: ConversationSession) -> dict:
        return {
            "id": session.id,
            "owner_id": session.owner_id,
            "current_stage": session.current_stage,
            "stage_history": list(session.stage_history or []),
            "stage_markers": list(session.stage_markers or []),
            "started_at": session.started_at.isoformat() if session.started_at else None,
            "last_switch_at": session.last_switch_at.isoformat() if session.last_switch_at else None,
        }

    @staticmethod
    def apply_transition(session: ConversationSession, new_stage: str) -> None:
        """Mutate the session for one switch; the caller commits once."""
        previous = session.current_stage
        session.current_stage = new_stage
        session.stage_history = list(session.stage_history or []) + [new_stage]
        session.stage_markers = list(session.stage_markers or []) + [
            _marker(MARKER_SWITCH, new_stage, previous)
        ]
        session.last_switch_at = datetime.utcnow()

    def end_session(self, owner_id: str) -> Optional[dict]:
        db = open_session()
        try:
            session = db.query(ConversationSession).filter(ConversationSession.owner_id == owner_id).first()
            if session is None:
                return None
            session.stage_markers = list(session.stage_markers or []) + [
                _marker(MARKER_END, session.current_stage)
            ]
            db.commit()
            return self._session_payload(session)
        finally:
            db.close()

    # -- decisions ------------------------------------------------------------

    def should_evaluate(self, current_stage: str, message: str) -> bool:
        if current_stage != CLOSING_FEEDBACK:
            return True
        lowered = (message or "").lower()
        return any(cue in lowered for cue in self.explicit_switch_cues)

    def is_transition_allowed(self, analysis: StageSwitchAnalysis, current_stage: str) -> bool:
        return (
            analysis.should_switch
            and analysis.confidence >= self.min_confidence
            and is_known_stage(analysis.suggested_stage)
            and analysis.suggested_stage != current_stage
        )

    async def recall_context(self, owner_id: str) -> str:
        if self.memory_store is None:
            return ""
        try:
            memories = await self.memory_store.list_for_owner(owner_id, config.MEMORY_RECALL_LIMIT)
        except Exception as exc:
            logger.warning("memory_recall_failed", extra={"owner_id": owner_id, "error": str(exc)})
            return "- Memories could not be loaded"
        return format_memories_for_prompt(memories) or "- No memories found"

    async def apply_analysis(self, owner_id: str, analysis: StageSwitchAnalysis, message: str = "") -> StageTransition:
        """Gate an analysis and, if it passes, apply it atomically."""
        db = open_session()
        try:
            session = self._load_or_create(db, owner_id, None)
            current = session.current_stage
            if not self.should_evaluate(current, message):
                return StageTransition(current, current, False, analysis, "explicit_cue_required",
                                       history=list(session.stage_history or []))
            if not self.is_transition_allowed(analysis, current):
                return StageTransition(current, current, False, analysis, analysis.reason,
                                       history=list(session.stage_history or []))
            self.apply_transition(session, analysis.suggested_stage)
            db.commit()
            history = list(session.stage_history or [])
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "stage_switched",
            extra={
                "owner_id": owner_id,
                "from_stage": current,
                "to_stage": analysis.suggested_stage,
                "confidence": analysis.confidence,
            },
        )
        memory_context = None
        if analysis.suggested_stage == MEMORY_RECALL:
            memory_context = await self.recall_context(owner_id)
        return StageTransition(current, analysis.suggested_stage, True, analysis, analysis.reason,
                               memory_context=memory_context, history=history)

    async def evaluate_turn(
        self,
        owner_id: str,
        message: str,
        recent_history: Optional[Sequence] = None,
        current_stage: Optional[str] = None,
    ) -> StageTransition:
        """Classify the message and apply at most one transition. Never raises."""
        stage = current_stage if is_known_stage(current_stage) else INITIAL_STAGE
        try:
            state = self.get_or_create_session(owner_id, current_stage if is_known_stage(current_stage) else None)
            stage = state["current_stage"]
            if not self.should_evaluate(stage, message):
                logger.info("stage_evaluation_skipped", extra={"owner_id": owner_id, "stage": stage})
                return StageTransition(stage, stage, False, None, "explicit_cue_required",
                                       history=state["stage_history"])
            analysis = await self.classifier.analyze(message, stage, recent_history)
            return await self.apply_analysis(owner_id, analysis, message)
        except Exception as exc:
            logger.warning("stage_evaluation_failed", extra={"owner_id": owner_id, "error": str(exc)})
            return StageTransition(stage, stage, False, None, "evaluation_error")
