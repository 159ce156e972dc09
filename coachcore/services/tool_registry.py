"""
Catalog of tools the orchestrator may call during a turn.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

import coachcore.config as config
from coachcore.context import ToolContext
from coachcore.errors import ValidationIssue
from coachcore.services.result_cache import ResultCache, cache_key
from coachcore.services.memory_store import MEMORY_CACHE_NAMESPACE

ToolExecutor = Callable[[dict, ToolContext], Awaitable[Any]]

SEARCH_MEMORIES = "search_memories"
EXTRACT_CONCEPTS = "extract_concepts"
RETRIEVE_KNOWLEDGE = "retrieve_knowledge"
ANALYZE_STAGE_SWITCH = "analyze_stage_switch"


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict
    execute: ToolExecutor
    is_independent: bool = True


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}
        self._validators: dict[str, Draft7Validator] = {}

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            raise ValidationIssue(f"Tool already registered: {tool.name}", field="name", error_type="duplicate")
        try:
            Draft7Validator.check_schema(tool.parameters)
        except SchemaError as exc:
            raise ValidationIssue(
                f"Invalid parameter schema for {tool.name}: {exc.message}",
                field="parameters",
                error_type="invalid_schema",
            ) from exc
        self._tools[tool.name] = tool
        self._validators[tool.name] = Draft7Validator(tool.parameters)

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def is_valid_tool(self, name) -> bool:
        return isinstance(name, str) and name in self._tools

    def is_independent(self, name: str) -> bool:
        tool = self._tools.get(name)
        return True if tool is None else tool.is_independent

    def validate_params(self, name: str, params) -> list[str]:
        """Return schema violations for a tool's parameters (empty when valid)."""
        if not isinstance(params, dict):
            return ["params must be an object"]
        validator = self._validators.get(name)
        if validator is None:
            return [f"unknown tool {name}"]
        return [error.message for error in validator.iter_errors(params)]

    def describe(self) -> str:
        """Menu of tools for the selection prompt."""
        blocks = []
        for tool in self._tools.values():
            properties = tool.parameters.get("properties", {})
            required = set(tool.parameters.get("required", []))
            params = []
            for name, schema in properties.items():
                marker = "required" if name in required else "optional"
                params.append(f"    - {name} ({schema.get('type', 'any')}, {marker}): {schema.get('description', '')}")
            params_text = "\n".join(params) if params else "    (no parameters)"
            blocks.append(f"- {tool.name}: {tool.description}\n  Parameters:\n{params_text}")
        return "\n".join(blocks)


# =============================================================================
# Canonical tools
# =============================================================================

def _param_int(params: dict, name: str, default: int) -> int:
    value = params.get(name)
    return default if value is None else int(value)


def _param_float(params: dict, name: str, default: float) -> float:
    value = params.get(name)
    return default if value is None else float(value)


def _search_memories_tool(memory_store, cache: Optional[ResultCache]) -> ToolDefinition:
    async def execute(params: dict, context: ToolContext) -> list[dict]:
        query = params["query"]
        limit = _param_int(params, "limit", 3)
        min_similarity = _param_float(params, "min_similarity", config.MEMORY_SEARCH_MIN_SIMILARITY)
        key = cache_key(MEMORY_CACHE_NAMESPACE, context.owner_id, query, limit, min_similarity)
        if cache is not None:
            cached = await cache.get(key)
            if cached is not None:
                # A cached hit still counts as an access for the rows it returns.
                counts = await memory_store.touch(context.owner_id, [item["id"] for item in cached])
                return [dict(item, access_count=counts[item["id"]]) for item in cached if item["id"] in counts]
        rows = await memory_store.search(context.owner_id, query, limit=limit, min_similarity=min_similarity)
        results = [
            {
                "id": row["id"],
                "content": row["value"],
                "category": row["category"],
                "similarity": row.get("similarity"),
                "access_count": row["access_count"],
            }
            for row in rows
        ]
        if cache is not None:
            await cache.set(key, results, config.MEMORY_CACHE_TTL_SECONDS)
        return results

    return ToolDefinition(
        name=SEARCH_MEMORIES,
        description=(
            "Search the person's remembered facts for relevant context. Use when they "
            "mention past experiences, relationships or personal history."
        ),
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "minLength": 1, "description": "What to look for"},
                "limit": {"type": "number", "minimum": 1, "maximum": 20, "description": "Maximum results (default 3)"},
                "min_similarity": {
                    "type": "number",
                    "minimum": 0,
                    "maximum": 1,
                    "description": "Minimum similarity (default 0.7)",
                },
            },
            "required": ["query"],
        },
        execute=execute,
    )


def _extract_concepts_tool(extractor) -> ToolDefinition:
    async def execute(params: dict, context: ToolContext) -> dict:
        return await extractor.extract(params.get("message") or context.message, context.locale)

    return ToolDefinition(
        name=EXTRACT_CONCEPTS,
        description=(
            "Extract the observation, feelings, needs and request the person stated in "
            "their message. Use when they describe a situation or how they feel."
        ),
        parameters={
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "Message to analyze (defaults to the current message)"},
            },
        },
        execute=execute,
    )


def _retrieve_knowledge_tool(knowledge_store) -> ToolDefinition:
    async def execute(params: dict, context: ToolContext) -> dict:
        return await knowledge_store.retrieve(
            params["query"],
            language=context.locale,
            limit=_param_int(params, "limit", 3),
            min_similarity=_param_float(params, "min_similarity", config.KNOWLEDGE_MIN_SIMILARITY),
            category=params.get("category"),
            tags=params.get("tags"),
        )

    return ToolDefinition(
        name=RETRIEVE_KNOWLEDGE,
        description=(
            "Retrieve reference knowledge about nonviolent communication. Use when the "
            "person asks about concepts, needs guidance, or a teaching moment comes up."
        ),
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "minLength": 1, "description": "Search query"},
                "limit": {"type": "number", "minimum": 1, "maximum": 20, "description": "Maximum results (default 3)"},
                "min_similarity": {
                    "type": "number",
                    "minimum": 0,
                    "maximum": 1,
                    "description": "Minimum similarity (default 0.7)",
                },
                "category": {"type": "string", "description": "Category filter"},
                "tags": {"type": "array", "items": {"type": "string"}, "description": "Tag filter"},
            },
            "required": ["query"],
        },
        execute=execute,
    )


def _analyze_stage_switch_tool(classifier) -> ToolDefinition:
    async def execute(params: dict, context: ToolContext) -> dict:
        analysis = await classifier.analyze(
            params.get("message") or context.message,
            params.get("current_stage") or context.current_stage,
            context.recent_history,
        )
        return analysis.to_dict()

    return ToolDefinition(
        name=ANALYZE_STAGE_SWITCH,
        description=(
            "Decide whether the conversation should move to a different stage. Use when "
            "the person mentions switching topics or the current stage seems complete."
        ),
        parameters={
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "Message to analyze (defaults to the current message)"},
                "current_stage": {"type": "string", "description": "Current stage id"},
            },
        },
        execute=execute,
    )


def build_default_registry(
    memory_store,
    knowledge_store,
    extractor,
    classifier,
    cache: Optional[ResultCache] = None,
) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(_search_memories_tool(memory_store, cache))
    registry.register(_extract_concepts_tool(extractor))
    registry.register(_retrieve_knowledge_tool(knowledge_store))
    registry.register(_analyze_stage_switch_tool(classifier))
    return registry
