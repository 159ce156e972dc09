"""
Per-turn tool selection and execution.

A completion pass picks tools from the registry menu. Unknown tools and
requests with invalid parameters are dropped before dispatch, the rest is
capped at MAX_TOOL_CALLS. Independent tools run concurrently and settle
individually; dependent tools run one at a time and see earlier results.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import coachcore.config as config
from coachcore.context import HistoryTurn, ToolContext, normalize_history, render_history
from coachcore.errors import CompletionProviderError
from coachcore.services.providers import CompletionProvider
from coachcore.services.shared import logger, parse_json_object
from coachcore.services.tool_registry import (
    ANALYZE_STAGE_SWITCH,
    EXTRACT_CONCEPTS,
    RETRIEVE_KNOWLEDGE,
    SEARCH_MEMORIES,
    ToolRegistry,
)

NO_RESULTS_TEXT = "No tool results available."
PARSE_FAILURE_REASON = "Failed to parse tool selection response"
INVALID_FORMAT_REASON = "Invalid response format"

TOOL_SELECTION_SCHEMA = {
    "type": "object",
    "properties": {
        "tool_calls": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "tool": {"type": "string"},
                    "params": {"type": "object"},
                },
                "required": ["tool", "params"],
            },
        },
        "reasoning": {"type": "string"},
    },
    "required": ["tool_calls"],
}


@dataclass(frozen=True)
class ToolCallRequest:
    tool: str
    params: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    tool: str
    success: bool
    value: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        payload = {"tool": self.tool, "success": self.success}
        if self.success:
            payload["result"] = self.value
        else:
            payload["error"] = self.error
        return payload


@dataclass
class ToolRun:
    requests: list[ToolCallRequest]
    results: list[ToolResult]
    formatted: str
    reasoning: str = ""


class ToolOrchestrator:
    def __init__(
        self,
        completion: CompletionProvider,
        registry: ToolRegistry,
        max_calls: int = config.MAX_TOOL_CALLS,
        tool_timeout: float = config.TOOL_TIMEOUT_SECONDS,
        phase_timeout: float = config.TOOL_PHASE_TIMEOUT_SECONDS,
        history_window: int = config.TOOL_HISTORY_WINDOW,
    ):
        self.completion = completion
        self.registry = registry
        self.max_calls = max_calls
        self.tool_timeout = tool_timeout
        self.phase_timeout = phase_timeout
        self.history_window = history_window

    # -- selection ------------------------------------------------------------

    def _instruction(self) -> str:
        return (
            "You decide which tools are needed to answer a message in a coaching conversation.\n\n"
            f"Available tools:\n{self.registry.describe()}\n\n"
            "Rules:\n"
            "- Call only the tools that are actually needed.\n"
            "- Several tools may be called at once when the message covers several needs.\n"
            "- Return an empty tool_calls array when no tool is needed.\n"
            "- Give a brief reasoning for the choice.\n\n"
            "Examples:\n"
            f"- \"I feel sad\" -> {EXTRACT_CONCEPTS}, plus {RETRIEVE_KNOWLEDGE} if background knowledge helps\n"
            f"- \"What do you remember about my partner?\" -> {SEARCH_MEMORIES}\n"
            f"- \"Can we switch to self-reflection?\" -> {ANALYZE_STAGE_SWITCH}"
        )

    def _prompt(self, message: str, history: Sequence[HistoryTurn], context: ToolContext) -> str:
        parts = [f"User message: \"{message}\""]
        if context.current_stage:
            parts.append(f"Current conversation stage: {context.current_stage}")
        if history:
            parts.append(f"Recent conversation:\n{render_history(history)}")
        parts.append("Decide which tools to call and return tool_calls with a reasoning.")
        return "\n\n".join(parts)

    async def select_tools(
        self,
        message: str,
        history: Optional[Sequence] = None,
        context: Optional[ToolContext] = None,
    ) -> tuple[list, str]:
        """Ask the model for raw tool calls. Returns (raw_calls, reasoning); never raises."""
        context = context or ToolContext(owner_id="")
        try:
            turns = normalize_history(history, self.history_window)
            raw = await self.completion.complete(
                self._instruction(),
                [HistoryTurn(role="user", content=self._prompt(message, turns, context))],
                output_schema=TOOL_SELECTION_SCHEMA,
                temperature=0.3,
            )
        except CompletionProviderError as exc:
            logger.warning("tool_selection_failed", extra={"error": str(exc)})
            return [], f"Tool selection unavailable: {exc}"
        except ValueError as exc:
            logger.warning("tool_selection_failed", extra={"error": str(exc)})
            return [], PARSE_FAILURE_REASON

        try:
            parsed = parse_json_object(raw)
        except ValueError:
            logger.warning("tool_selection_unparseable")
            return [], PARSE_FAILURE_REASON

        reasoning = parsed.get("reasoning") if isinstance(parsed.get("reasoning"), str) else ""
        calls = parsed.get("tool_calls")
        if not isinstance(calls, list):
            logger.warning("tool_selection_invalid_format")
            return [], reasoning or INVALID_FORMAT_REASON
        return calls, reasoning

    def validate_requests(self, raw_calls: Sequence) -> list[ToolCallRequest]:
        """Drop unknown tools and invalid parameters, then cap the count."""
        accepted: list[ToolCallRequest] = []
        for call in raw_calls or []:
            if not isinstance(call, dict):
                logger.info("tool_dropped", extra={"reason": "malformed_call"})
                continue
            name = call.get("tool")
            if not self.registry.is_valid_tool(name):
                logger.info("tool_dropped", extra={"tool": str(name), "reason": "unknown_tool"})
                continue
            params = call.get("params")
            if params is None:
                params = {}
            errors = self.registry.validate_params(name, params)
            if errors:
                logger.info("tool_dropped", extra={"tool": name, "reason": "invalid_params", "detail": errors[0]})
                continue
            accepted.append(ToolCallRequest(tool=name, params=dict(params)))

        if len(accepted) > self.max_calls:
            logger.info(
                "tool_calls_capped",
                extra={"requested": len(accepted), "max_calls": self.max_calls},
            )
            accepted = accepted[: self.max_calls]
        return accepted

    # -- execution ------------------------------------------------------------

    async def _run_one(self, request: ToolCallRequest, context: ToolContext) -> ToolResult:
        tool = self.registry.get(request.tool)
        if tool is None:
            return ToolResult(request.tool, False, error=f"Tool {request.tool} not found")
        try:
            value = await asyncio.wait_for(tool.execute(dict(request.params), context), self.tool_timeout)
        except asyncio.TimeoutError:
            logger.warning("tool_timeout", extra={"tool": request.tool, "timeout_seconds": self.tool_timeout})
            return ToolResult(request.tool, False, error=f"timed out after {self.tool_timeout}s")
        except Exception as exc:
            logger.warning("tool_failed", extra={"tool": request.tool, "error": str(exc)})
            return ToolResult(request.tool, False, error=str(exc) or exc.__class__.__name__)
        return ToolResult(request.tool, True, value)

    async def _execute_into(
        self,
        requests: Sequence[ToolCallRequest],
        context: ToolContext,
        slots: list[Optional[ToolResult]],
    ) -> None:
        independent = [idx for idx, req in enumerate(requests) if self.registry.is_independent(req.tool)]
        dependent = [idx for idx, req in enumerate(requests) if not self.registry.is_independent(req.tool)]

        async def fill(idx: int, ctx: ToolContext) -> None:
            slots[idx] = await self._run_one(requests[idx], ctx)

        settled = await asyncio.gather(*(fill(idx, context) for idx in independent), return_exceptions=True)
        for idx, outcome in zip(independent, settled):
            if isinstance(outcome, BaseException) and slots[idx] is None:
                slots[idx] = ToolResult(requests[idx].tool, False, error=str(outcome) or outcome.__class__.__name__)

        for idx in dependent:
            previous = [result for result in slots if result is not None]
            await fill(idx, context.with_previous_results(previous))

    async def execute(self, requests: Sequence[ToolCallRequest], context: ToolContext) -> list[ToolResult]:
        """Run validated requests; results keep request order. Never raises."""
        if not requests:
            return []
        slots: list[Optional[ToolResult]] = [None] * len(requests)
        try:
            await asyncio.wait_for(self._execute_into(requests, context, slots), self.phase_timeout)
        except asyncio.TimeoutError:
            logger.warning("tool_phase_timeout", extra={"timeout_seconds": self.phase_timeout})

        results = [
            slot if slot is not None else ToolResult(req.tool, False, error="tool phase timed out")
            for req, slot in zip(requests, slots)
        ]
        logger.info(
            "tools_executed",
            extra={
                "requested": len(results),
                "succeeded": sum(1 for result in results if result.success),
            },
        )
        return results

    async def run_turn_tools(
        self,
        message: str,
        context: ToolContext,
        history: Optional[Sequence] = None,
    ) -> ToolRun:
        try:
            raw_calls, reasoning = await self.select_tools(message, history, context)
            requests = self.validate_requests(raw_calls)
            results = await self.execute(requests, context)
        except Exception as exc:
            logger.warning("tool_orchestration_failed", extra={"error": str(exc)})
            return ToolRun([], [], NO_RESULTS_TEXT, "tool orchestration failed")
        return ToolRun(requests, results, format_results(results), reasoning)


# =============================================================================
# Formatting
# =============================================================================

def _percent(value) -> int:
    try:
        return round(float(value or 0) * 100)
    except (TypeError, ValueError):
        return 0


def _format_memories(value) -> str:
    if not value:
        return "No relevant memories found."
    return "\n".join(
        f"{idx}. {item.get('content', '')} (similarity: {_percent(item.get('similarity'))}%)"
        for idx, item in enumerate(value, start=1)
    )


def _format_concepts(value: dict) -> str:
    feelings = value.get("feelings") or []
    needs = value.get("needs") or []
    return "\n".join(
        [
            f"Observation: {value.get('observation') or 'None'}",
            f"Feelings: {', '.join(feelings) if feelings else 'None'}",
            f"Needs: {', '.join(needs) if needs else 'None'}",
            f"Request: {value.get('request') or 'None'}",
        ]
    )


def _format_knowledge(value: dict) -> str:
    entries = value.get("entries")
    if not isinstance(entries, list):
        return json.dumps(value, indent=2, default=str)
    if not entries:
        return "No relevant knowledge found."
    return "\n\n".join(
        f"{idx}. **{entry.get('title', '')}** ({_percent(entry.get('similarity'))}% match)\n"
        f"   {(entry.get('content') or '')[:200]}..."
        for idx, entry in enumerate(entries, start=1)
    )


def _format_stage_analysis(value: dict) -> str:
    return "\n".join(
        [
            f"Should switch: {value.get('should_switch')}",
            f"Confidence: {value.get('confidence')}%",
            f"Suggested stage: {value.get('suggested_stage') or 'None'}",
            f"Reason: {value.get('reason') or ''}",
        ]
    )


def format_result(result: ToolResult) -> str:
    value = result.value
    if result.tool == SEARCH_MEMORIES and isinstance(value, list):
        body = _format_memories(value)
    elif result.tool == EXTRACT_CONCEPTS and isinstance(value, dict):
        body = _format_concepts(value)
    elif result.tool == RETRIEVE_KNOWLEDGE and isinstance(value, dict):
        body = _format_knowledge(value)
    elif result.tool == ANALYZE_STAGE_SWITCH and isinstance(value, dict):
        body = _format_stage_analysis(value)
    else:
        body = json.dumps(value, indent=2, default=str)
    return f"**{result.tool}** results:\n{body}"


def format_results(results: Sequence[ToolResult]) -> str:
    """One prompt-ready block of successful results; failures are left out."""
    sections = [format_result(result) for result in results if result.success]
    if not sections:
        return NO_RESULTS_TEXT
    return "\n\n".join(sections)
