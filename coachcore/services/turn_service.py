"""
Per-turn entry point and the post-response memory write.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

import coachcore.config as config
from coachcore.context import ToolContext, normalize_history
from coachcore.errors import ValidationIssue
from coachcore.services.concepts import ConceptExtractor
from coachcore.services.knowledge_store import KnowledgeStore
from coachcore.services.memory_extraction import MemoryExtractor
from coachcore.services.memory_store import MemoryStore, format_memories_for_prompt
from coachcore.services.providers import build_completion_provider, build_embedding_provider
from coachcore.services.result_cache import ResultCache
from coachcore.services.shared import logger
from coachcore.services.stages import (
    INITIAL_STAGE,
    MEMORY_RECALL,
    StageClassifier,
    StageMachine,
    StageSwitchAnalysis,
    StageTransition,
    is_known_stage,
    render_stage_prompt,
)
from coachcore.services.tool_orchestrator import NO_RESULTS_TEXT, ToolOrchestrator, ToolResult, ToolRun
from coachcore.services.tool_registry import ANALYZE_STAGE_SWITCH, SEARCH_MEMORIES, build_default_registry

MEMORY_RECALL_SEARCH_LIMIT = 20


@dataclass
class TurnOutcome:
    composed_context: str
    new_stage_id: str
    tool_outcomes: list[dict] = field(default_factory=list)
    stage_transition_rationale: str = ""
    switched: bool = False
    tool_reasoning: str = ""

    def to_dict(self) -> dict:
        return {
            "composed_context": self.composed_context,
            "new_stage_id": self.new_stage_id,
            "tool_outcomes": self.tool_outcomes,
            "stage_transition_rationale": self.stage_transition_rationale,
            "switched": self.switched,
            "tool_reasoning": self.tool_reasoning,
        }


def _successful(results: Sequence[ToolResult], tool: str) -> Optional[ToolResult]:
    for result in results:
        if result.success and result.tool == tool:
            return result
    return None


class TurnService:
    def __init__(
        self,
        stage_machine: StageMachine,
        orchestrator: ToolOrchestrator,
        memory_store: MemoryStore,
        memory_extractor: Optional[MemoryExtractor] = None,
    ):
        self.stage_machine = stage_machine
        self.orchestrator = orchestrator
        self.memory_store = memory_store
        self.memory_extractor = memory_extractor

    async def _recall_search(self, owner_id: str, message: str) -> list[dict]:
        # search queries are capped; a long question still falls back to the full list
        query = message.strip()[: config.MAX_QUERY_LENGTH]
        try:
            return await self.memory_store.search(owner_id, query, limit=MEMORY_RECALL_SEARCH_LIMIT)
        except ValidationIssue as exc:
            logger.info("memory_recall_search_skipped", extra={"owner_id": owner_id, "reason": str(exc)})
            return []

    async def _memory_recall_context(self, owner_id: str, message: str) -> str:
        """Search when the message asks something specific, otherwise list everything."""
        try:
            if "?" in message:
                found = await self._recall_search(owner_id, message)
                if found:
                    return format_memories_for_prompt(found)
            memories = await self.memory_store.list_for_owner(owner_id, config.MEMORY_LIST_LIMIT)
        except Exception as exc:
            logger.warning("memory_recall_failed", extra={"owner_id": owner_id, "error": str(exc)})
            return "- Memories could not be loaded"
        return format_memories_for_prompt(memories) or "- No memories found"

    async def _apply_tool_analysis(
        self,
        owner_id: str,
        message: str,
        run: ToolRun,
        transition: StageTransition,
    ) -> StageTransition:
        """A stage analysis requested as a tool may switch only if the turn has not switched yet."""
        if transition.switched:
            return transition
        result = _successful(run.results, ANALYZE_STAGE_SWITCH)
        if result is None or not isinstance(result.value, dict):
            return transition
        try:
            analysis = StageSwitchAnalysis.from_payload(result.value)
            tool_transition = await self.stage_machine.apply_analysis(owner_id, analysis, message)
        except Exception as exc:
            logger.warning("tool_stage_switch_failed", extra={"owner_id": owner_id, "error": str(exc)})
            return transition
        if tool_transition.switched:
            logger.info("stage_switched_by_tool", extra={"owner_id": owner_id, "to_stage": tool_transition.stage})
            return tool_transition
        return transition

    def _compose(
        self,
        stage_id: str,
        preferences: Optional[Mapping[str, str]],
        first_name: Optional[str],
        memory_context: Optional[str],
        run: ToolRun,
    ) -> str:
        if stage_id == MEMORY_RECALL:
            return render_stage_prompt(stage_id, preferences, first_name, memory_context)
        parts = [render_stage_prompt(stage_id, preferences, first_name)]
        if memory_context:
            parts.append(memory_context)
        if run.formatted and run.formatted != NO_RESULTS_TEXT:
            parts.append(f"Tool results:\n{run.formatted}")
        return "\n\n".join(parts)

    async def process_turn(
        self,
        owner_id: str,
        message: str,
        current_stage_id: Optional[str] = None,
        recent_history: Optional[Sequence] = None,
        preferences: Optional[Mapping[str, str]] = None,
        first_name: Optional[str] = None,
        locale: str = config.KNOWLEDGE_DEFAULT_LANGUAGE,
    ) -> TurnOutcome:
        """Stage evaluation, then tools, then context composition. Never raises."""
        stage = current_stage_id if is_known_stage(current_stage_id) else INITIAL_STAGE
        try:
            transition = await self.stage_machine.evaluate_turn(owner_id, message, recent_history, current_stage_id)
            stage = transition.stage

            if stage == MEMORY_RECALL:
                run = ToolRun([], [], NO_RESULTS_TEXT, "tools skipped during memory recall")
            else:
                context = ToolContext(
                    owner_id=owner_id,
                    locale=locale,
                    current_stage=stage,
                    message=message,
                    recent_history=normalize_history(recent_history, config.TOOL_HISTORY_WINDOW),
                )
                run = await self.orchestrator.run_turn_tools(message, context, recent_history)
                transition = await self._apply_tool_analysis(owner_id, message, run, transition)
                stage = transition.stage

            if stage == MEMORY_RECALL:
                memory_context = transition.memory_context or await self._memory_recall_context(owner_id, message)
            else:
                found = _successful(run.results, SEARCH_MEMORIES)
                memory_context = format_memories_for_prompt(found.value) if found and found.value else None

            outcome = TurnOutcome(
                composed_context=self._compose(stage, preferences, first_name, memory_context, run),
                new_stage_id=stage,
                tool_outcomes=[result.to_dict() for result in run.results],
                stage_transition_rationale=transition.rationale,
                switched=transition.switched,
                tool_reasoning=run.reasoning,
            )
        except Exception as exc:
            logger.error("turn_processing_failed", extra={"owner_id": owner_id, "error": str(exc)})
            try:
                prompt = render_stage_prompt(stage, preferences, first_name)
            except ValidationIssue:
                prompt = ""
            return TurnOutcome(prompt, stage, [], "turn_error", False)

        logger.info(
            "turn_processed",
            extra={
                "owner_id": owner_id,
                "stage": outcome.new_stage_id,
                "switched": outcome.switched,
                "tool_count": len(outcome.tool_outcomes),
            },
        )
        return outcome

    async def write_memories(
        self,
        owner_id: str,
        extracted_facts: Sequence,
        source_ref: Optional[str] = None,
    ) -> list[dict]:
        """Store facts after the response went out; each fact is written independently."""
        results: list[dict] = []
        for fact in extracted_facts or []:
            if isinstance(fact, str):
                fact = {"text": fact}
            if not isinstance(fact, dict):
                results.append({"status": "error", "error_type": "validation_error", "message": "fact must be text or object"})
                continue
            try:
                result = await self.memory_store.create(
                    owner_id,
                    fact.get("text") or fact.get("value"),
                    source_ref=fact.get("source_ref", source_ref),
                    confidence=fact.get("confidence") or "medium",
                    category=fact.get("category"),
                    title=fact.get("title") or fact.get("key"),
                    person_name=fact.get("person_name"),
                )
            except Exception as exc:
                logger.warning("memory_write_failed", extra={"owner_id": owner_id, "error": str(exc)})
                result = {"status": "error", "error_type": "write_failed", "message": str(exc)}
            results.append(result)
        logger.info(
            "memories_written",
            extra={
                "owner_id": owner_id,
                "created_count": sum(1 for r in results if r.get("status") == "created"),
                "merged_count": sum(1 for r in results if r.get("status") == "merged"),
            },
        )
        return results

    async def extract_and_write_memories(
        self,
        owner_id: str,
        transcript: Sequence,
        locale: str = config.KNOWLEDGE_DEFAULT_LANGUAGE,
        source_ref: Optional[str] = None,
    ) -> dict:
        """Extract facts from a finished conversation and store them."""
        if self.memory_extractor is None:
            raise ValidationIssue("memory extraction is not configured", field="transcript", error_type="unavailable")
        facts = await self.memory_extractor.extract(transcript, locale)
        results = await self.write_memories(owner_id, facts, source_ref=source_ref) if facts else []
        logger.info("memories_extracted", extra={"owner_id": owner_id, "fact_count": len(facts)})
        return {"facts": facts, "results": results}


def build_turn_service(
    cache: Optional[ResultCache] = None,
    knowledge_store: Optional[KnowledgeStore] = None,
) -> TurnService:
    """Wire the production providers and stores together."""
    cache = cache if cache is not None else ResultCache(enabled=config.RESULT_CACHE_ENABLED)
    embedder = build_embedding_provider()
    completion = build_completion_provider()
    light = build_completion_provider(light=True)

    memory_store = MemoryStore(embedder, cache=cache)
    if knowledge_store is None:
        knowledge_store = KnowledgeStore(embedder, completion=light, cache=cache)
    classifier = StageClassifier(light)
    registry = build_default_registry(
        memory_store,
        knowledge_store,
        ConceptExtractor(light),
        classifier,
        cache=cache,
    )
    return TurnService(
        stage_machine=StageMachine(classifier, memory_store=memory_store),
        orchestrator=ToolOrchestrator(completion, registry),
        memory_store=memory_store,
        memory_extractor=MemoryExtractor(light),
    )
