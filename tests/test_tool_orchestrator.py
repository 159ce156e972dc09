import asyncio
import json

import pytest

from conftest import FakeCompletion, FakeEmbedder, unit
from coachcore.context import ToolContext
from coachcore.errors import CompletionProviderError, ValidationIssue
from coachcore.models import Memory
from coachcore.services.memory_store import MemoryStore
from coachcore.services.result_cache import ResultCache
from coachcore.services.stages import StageSwitchAnalysis
from coachcore.services.tool_orchestrator import (
    INVALID_FORMAT_REASON,
    NO_RESULTS_TEXT,
    PARSE_FAILURE_REASON,
    ToolCallRequest,
    ToolOrchestrator,
    ToolResult,
    format_results,
)
from coachcore.services.tool_registry import (
    ANALYZE_STAGE_SWITCH,
    EXTRACT_CONCEPTS,
    RETRIEVE_KNOWLEDGE,
    SEARCH_MEMORIES,
    ToolDefinition,
    ToolRegistry,
    build_default_registry,
)

QUERY_SCHEMA = {
    "type": "object",
    "properties": {"query": {"type": "string"}},
    "required": ["query"],
}
EMPTY_SCHEMA = {"type": "object", "properties": {}}


def _context(**kwargs):
    values = {"owner_id": "owner-1", "locale": "en", "current_stage": "orientation", "message": "hello"}
    values.update(kwargs)
    return ToolContext(**values)


def _tool(name, execute, schema=EMPTY_SCHEMA, independent=True):
    return ToolDefinition(
        name=name,
        description=f"{name} tool",
        parameters=schema,
        execute=execute,
        is_independent=independent,
    )


def _recording_registry(names, calls):
    registry = ToolRegistry()
    for name in names:
        async def execute(params, context, name=name):
            calls.append(name)
            return {"tool": name, "params": params}
        registry.register(_tool(name, execute))
    return registry


# =============================================================================
# Registry
# =============================================================================

def test_registry_rejects_duplicates_and_bad_schemas():
    registry = ToolRegistry()

    async def execute(params, context):
        return None

    registry.register(_tool("alpha", execute))
    with pytest.raises(ValidationIssue):
        registry.register(_tool("alpha", execute))
    with pytest.raises(ValidationIssue):
        registry.register(_tool("broken", execute, schema={"type": "not-a-type"}))


def test_registry_validates_params_and_describes_tools():
    registry = ToolRegistry()

    async def execute(params, context):
        return None

    registry.register(_tool("search", execute, schema=QUERY_SCHEMA))
    assert registry.validate_params("search", {"query": "dogs"}) == []
    assert registry.validate_params("search", {}) != []
    assert registry.validate_params("search", {"query": 3}) != []
    assert registry.validate_params("search", "query=dogs") == ["params must be an object"]
    assert registry.is_valid_tool("search")
    assert not registry.is_valid_tool("missing")
    assert not registry.is_valid_tool(None)
    assert registry.is_independent("missing")

    menu = registry.describe()
    assert "- search: search tool" in menu
    assert "query (string, required)" in menu


# =============================================================================
# Validation and capping
# =============================================================================

def test_unknown_tool_is_dropped_silently():
    calls = []
    registry = _recording_registry(["alpha", "beta"], calls)
    orchestrator = ToolOrchestrator(FakeCompletion(), registry)

    requests = orchestrator.validate_requests([
        {"tool": "alpha", "params": {}},
        {"tool": "does_not_exist", "params": {}},
        {"tool": "beta", "params": {}},
    ])
    results = asyncio.run(orchestrator.execute(requests, _context()))

    assert [request.tool for request in requests] == ["alpha", "beta"]
    assert sorted(calls) == ["alpha", "beta"]
    assert [result.tool for result in results] == ["alpha", "beta"]
    assert all(result.success for result in results)


def test_invalid_params_are_dropped_before_dispatch():
    calls = []
    registry = ToolRegistry()

    async def execute(params, context):
        calls.append(params)
        return params

    registry.register(_tool("search", execute, schema=QUERY_SCHEMA))
    orchestrator = ToolOrchestrator(FakeCompletion(), registry)

    requests = orchestrator.validate_requests([
        {"tool": "search", "params": {"limit": 3}},
        {"tool": "search", "params": "query"},
        "search",
        {"tool": "search", "params": {"query": "dogs"}},
    ])
    asyncio.run(orchestrator.execute(requests, _context()))

    assert requests == [ToolCallRequest(tool="search", params={"query": "dogs"})]
    assert calls == [{"query": "dogs"}]


def test_batch_over_cap_executes_only_first_five():
    calls = []
    names = [f"tool_{idx}" for idx in range(6)]
    registry = _recording_registry(names, calls)
    orchestrator = ToolOrchestrator(FakeCompletion(), registry, max_calls=5)

    requests = orchestrator.validate_requests([{"tool": name, "params": {}} for name in names])
    results = asyncio.run(orchestrator.execute(requests, _context()))

    assert [request.tool for request in requests] == names[:5]
    assert sorted(calls) == names[:5]
    assert "tool_5" not in calls
    assert len(results) == 5


def test_cap_applies_after_dropping_unknown_tools():
    calls = []
    names = [f"tool_{idx}" for idx in range(5)]
    registry = _recording_registry(names, calls)
    orchestrator = ToolOrchestrator(FakeCompletion(), registry, max_calls=5)

    raw = [{"tool": "unknown", "params": {}}] + [{"tool": name, "params": {}} for name in names]
    requests = orchestrator.validate_requests(raw)
    assert [request.tool for request in requests] == names


# =============================================================================
# Execution
# =============================================================================

def test_failing_tool_does_not_cancel_sibling():
    registry = ToolRegistry()
    finished = []

    async def boom(params, context):
        raise RuntimeError("tool exploded")

    async def slow_ok(params, context):
        await asyncio.sleep(0.05)
        finished.append("ok")
        return ["value"]

    registry.register(_tool("boom", boom))
    registry.register(_tool("ok", slow_ok))
    orchestrator = ToolOrchestrator(FakeCompletion(), registry)

    results = asyncio.run(orchestrator.execute(
        [ToolCallRequest("boom"), ToolCallRequest("ok")],
        _context(),
    ))

    assert results[0] == ToolResult("boom", False, error="tool exploded")
    assert results[1] == ToolResult("ok", True, ["value"])
    assert finished == ["ok"]
    assert "boom" not in format_results(results)


def test_independent_tools_run_concurrently():
    registry = ToolRegistry()

    async def scenario():
        ready = asyncio.Event()

        async def waiter(params, context):
            await asyncio.wait_for(ready.wait(), 1.0)
            return "waited"

        async def setter(params, context):
            ready.set()
            return "set"

        registry.register(_tool("waiter", waiter))
        registry.register(_tool("setter", setter))
        orchestrator = ToolOrchestrator(FakeCompletion(), registry, tool_timeout=2.0)
        return await orchestrator.execute(
            [ToolCallRequest("waiter"), ToolCallRequest("setter")],
            _context(),
        )

    results = asyncio.run(scenario())
    assert [result.success for result in results] == [True, True]
    assert results[0].value == "waited"


def test_tool_timeout_becomes_failed_result():
    registry = ToolRegistry()

    async def hang(params, context):
        await asyncio.sleep(1.0)
        return "late"

    async def quick(params, context):
        return "quick"

    registry.register(_tool("hang", hang))
    registry.register(_tool("quick", quick))
    orchestrator = ToolOrchestrator(FakeCompletion(), registry, tool_timeout=0.05)

    results = asyncio.run(orchestrator.execute(
        [ToolCallRequest("hang"), ToolCallRequest("quick")],
        _context(),
    ))

    assert results[0].success is False
    assert "timed out" in results[0].error
    assert results[1] == ToolResult("quick", True, "quick")


def test_phase_timeout_keeps_finished_results():
    registry = ToolRegistry()

    async def quick(params, context):
        return "quick"

    async def slow_dependent(params, context):
        await asyncio.sleep(1.0)
        return "late"

    registry.register(_tool("quick", quick))
    registry.register(_tool("slow", slow_dependent, independent=False))
    orchestrator = ToolOrchestrator(FakeCompletion(), registry, tool_timeout=5.0, phase_timeout=0.1)

    results = asyncio.run(orchestrator.execute(
        [ToolCallRequest("quick"), ToolCallRequest("slow")],
        _context(),
    ))

    assert results[0] == ToolResult("quick", True, "quick")
    assert results[1] == ToolResult("slow", False, error="tool phase timed out")


def test_dependent_tools_run_in_order_with_previous_results():
    registry = ToolRegistry()
    seen = []

    async def base(params, context):
        return "base-value"

    async def first(params, context):
        seen.append(("first", [result.tool for result in context.previous_results]))
        return "first-value"

    async def second(params, context):
        seen.append(("second", [result.tool for result in context.previous_results]))
        return [result.value for result in context.previous_results]

    registry.register(_tool("base", base))
    registry.register(_tool("first", first, independent=False))
    registry.register(_tool("second", second, independent=False))
    orchestrator = ToolOrchestrator(FakeCompletion(), registry)

    results = asyncio.run(orchestrator.execute(
        [ToolCallRequest("first"), ToolCallRequest("base"), ToolCallRequest("second")],
        _context(),
    ))

    assert seen == [("first", ["base"]), ("second", ["first", "base"])]
    assert [result.tool for result in results] == ["first", "base", "second"]
    assert results[2].value == ["first-value", "base-value"]


def test_execute_with_no_requests():
    orchestrator = ToolOrchestrator(FakeCompletion(), ToolRegistry())
    assert asyncio.run(orchestrator.execute([], _context())) == []


# =============================================================================
# Selection
# =============================================================================

def test_select_tools_parses_fenced_json():
    calls = []
    registry = _recording_registry(["alpha"], calls)
    payload = json.dumps({"tool_calls": [{"tool": "alpha", "params": {}}], "reasoning": "needs alpha"})
    completion = FakeCompletion([f"```json\n{payload}\n```"])
    orchestrator = ToolOrchestrator(completion, registry)

    raw, reasoning = asyncio.run(orchestrator.select_tools("hi", [], _context()))

    assert raw == [{"tool": "alpha", "params": {}}]
    assert reasoning == "needs alpha"
    assert "alpha: alpha tool" in completion.calls[0]["system_instruction"]
    assert completion.calls[0]["output_schema"]["required"] == ["tool_calls"]


def test_select_tools_unparseable_response():
    orchestrator = ToolOrchestrator(FakeCompletion(["this is not json"]), ToolRegistry())
    raw, reasoning = asyncio.run(orchestrator.select_tools("hi", [], _context()))
    assert raw == []
    assert reasoning == PARSE_FAILURE_REASON


def test_select_tools_wrong_shape():
    orchestrator = ToolOrchestrator(FakeCompletion([{"tool_calls": "alpha"}]), ToolRegistry())
    raw, reasoning = asyncio.run(orchestrator.select_tools("hi", [], _context()))
    assert raw == []
    assert reasoning == INVALID_FORMAT_REASON


def test_select_tools_completion_failure():
    completion = FakeCompletion([CompletionProviderError("quota exceeded")])
    orchestrator = ToolOrchestrator(completion, ToolRegistry())
    raw, reasoning = asyncio.run(orchestrator.select_tools("hi", [], _context()))
    assert raw == []
    assert "quota exceeded" in reasoning


def test_select_tools_includes_stage_and_history():
    completion = FakeCompletion([{"tool_calls": []}])
    orchestrator = ToolOrchestrator(completion, ToolRegistry(), history_window=2)
    history = [
        {"role": "user", "content": "old"},
        {"role": "model", "content": "older reply"},
        {"role": "user", "content": "recent"},
    ]
    asyncio.run(orchestrator.select_tools("hi", history, _context(current_stage="self-reflection")))

    prompt = completion.calls[0]["turns"][0].content
    assert "Current conversation stage: self-reflection" in prompt
    assert "assistant: older reply" in prompt
    assert "user: old\n" not in prompt


def test_run_turn_tools_degrades_to_empty_set():
    orchestrator = ToolOrchestrator(FakeCompletion(["{not json"]), ToolRegistry())
    run = asyncio.run(orchestrator.run_turn_tools("hi", _context()))

    assert run.requests == []
    assert run.results == []
    assert run.formatted == NO_RESULTS_TEXT
    assert run.reasoning == PARSE_FAILURE_REASON


# =============================================================================
# Default registry
# =============================================================================

class StubMemoryStore:
    def __init__(self):
        self.calls = []
        self.touched = []

    async def touch(self, owner_id, memory_ids):
        self.touched.append((owner_id, list(memory_ids)))
        return {memory_id: 3 for memory_id in memory_ids}

    async def search(self, owner_id, query, limit=5, min_similarity=None):
        self.calls.append((owner_id, query, limit, min_similarity))
        return [{
            "id": "m1",
            "value": "Likes hiking",
            "category": "preferences",
            "similarity": 0.91,
            "access_count": 2,
            "owner_id": owner_id,
        }]


class StubKnowledgeStore:
    def __init__(self):
        self.calls = []

    async def retrieve(self, message, language="en", limit=3, min_similarity=0.7, category=None, tags=None):
        self.calls.append({"message": message, "language": language, "limit": limit, "tags": tags})
        return {
            "entries": [{"title": "Needs", "content": "Needs are universal.", "similarity": 0.8}],
            "extracted_concepts": ["needs"],
            "search_query": message,
        }


class StubExtractor:
    async def extract(self, message, locale="en"):
        return {"observation": None, "feelings": ["sad"], "needs": ["connection"], "request": None}


class StubClassifier:
    def __init__(self):
        self.calls = []

    async def analyze(self, message, current_stage, recent_history=None):
        self.calls.append((message, current_stage))
        return StageSwitchAnalysis(True, 88, "self-reflection", "wants to reflect", False)


def _default_registry(cache=None):
    memory = StubMemoryStore()
    knowledge = StubKnowledgeStore()
    classifier = StubClassifier()
    registry = build_default_registry(memory, knowledge, StubExtractor(), classifier, cache=cache)
    return registry, memory, knowledge, classifier


def test_default_tools_are_all_independent():
    registry, *_ = _default_registry()
    assert registry.names() == [SEARCH_MEMORIES, EXTRACT_CONCEPTS, RETRIEVE_KNOWLEDGE, ANALYZE_STAGE_SWITCH]
    assert all(registry.is_independent(name) for name in registry.names())


def test_default_tools_end_to_end():
    registry, memory, knowledge, classifier = _default_registry()
    selection = {
        "tool_calls": [
            {"tool": SEARCH_MEMORIES, "params": {"query": "hobbies"}},
            {"tool": EXTRACT_CONCEPTS, "params": {}},
            {"tool": RETRIEVE_KNOWLEDGE, "params": {"query": "needs", "limit": 2, "tags": ["basics"]}},
            {"tool": ANALYZE_STAGE_SWITCH, "params": {}},
            {"tool": "send_email", "params": {}},
        ],
        "reasoning": "feelings and memories",
    }
    orchestrator = ToolOrchestrator(FakeCompletion([selection]), registry)

    run = asyncio.run(orchestrator.run_turn_tools("I feel sad", _context(message="I feel sad", locale="de")))

    assert [result.tool for result in run.results] == [
        SEARCH_MEMORIES, EXTRACT_CONCEPTS, RETRIEVE_KNOWLEDGE, ANALYZE_STAGE_SWITCH,
    ]
    assert all(result.success for result in run.results)
    assert memory.calls == [("owner-1", "hobbies", 3, 0.7)]
    assert knowledge.calls[0]["language"] == "de"
    assert knowledge.calls[0]["limit"] == 2
    assert classifier.calls == [("I feel sad", "orientation")]
    assert run.results[0].value == [{
        "id": "m1",
        "content": "Likes hiking",
        "category": "preferences",
        "similarity": 0.91,
        "access_count": 2,
    }]

    text = run.formatted
    assert "1. Likes hiking (similarity: 91%)" in text
    assert "Feelings: sad" in text
    assert "Needs: connection" in text
    assert "Observation: None" in text
    assert "1. **Needs** (80% match)" in text
    assert "Should switch: True" in text
    assert "Suggested stage: self-reflection" in text
    assert "send_email" not in text


def test_memory_search_tool_uses_cache():
    cache = ResultCache()
    registry, memory, *_ = _default_registry(cache=cache)
    tool = registry.get(SEARCH_MEMORIES)

    async def scenario():
        first = await tool.execute({"query": "hobbies"}, _context())
        second = await tool.execute({"query": "hobbies"}, _context())
        other_owner = await tool.execute({"query": "hobbies"}, _context(owner_id="owner-2"))
        return first, second, other_owner

    first, second, _ = asyncio.run(scenario())
    assert [item["id"] for item in second] == [item["id"] for item in first]
    assert second[0]["content"] == first[0]["content"]
    assert second[0]["access_count"] == 3
    assert [call[0] for call in memory.calls] == ["owner-1", "owner-2"]
    assert memory.touched == [("owner-1", ["m1"])]


def test_cached_memory_search_still_counts_access(server_db):
    embedder = FakeEmbedder({"I like hiking": unit(1, 0), "hobbies": unit(0.9, 0.3)})
    cache = ResultCache()
    store = MemoryStore(embedder, cache=cache)
    registry = build_default_registry(store, StubKnowledgeStore(), StubExtractor(), StubClassifier(), cache=cache)
    tool = registry.get(SEARCH_MEMORIES)

    async def scenario():
        await store.create("owner-1", "I like hiking", category="core_identity")
        first = await tool.execute({"query": "hobbies"}, _context())
        second = await tool.execute({"query": "hobbies"}, _context())
        listed = await store.list_for_owner("owner-1")
        return first, second, listed

    first, second, listed = asyncio.run(scenario())
    assert first[0]["access_count"] == 1
    assert second[0]["access_count"] == 2
    assert listed[0]["access_count"] == 2
    assert embedder.calls.count("hobbies") == 1


def test_cached_memory_search_drops_deleted_rows(server_db):
    embedder = FakeEmbedder({"I like hiking": unit(1, 0), "hobbies": unit(0.9, 0.3)})
    cache = ResultCache()
    store = MemoryStore(embedder, cache=cache)
    registry = build_default_registry(store, StubKnowledgeStore(), StubExtractor(), StubClassifier(), cache=cache)
    tool = registry.get(SEARCH_MEMORIES)

    async def scenario():
        created = await store.create("owner-1", "I like hiking", category="core_identity")
        await tool.execute({"query": "hobbies"}, _context())
        # removed behind the store's back, so the cached entry is stale
        db = server_db()
        try:
            db.query(Memory).filter(Memory.id == created["memory"]["id"]).delete()
            db.commit()
        finally:
            db.close()
        return await tool.execute({"query": "hobbies"}, _context())

    assert asyncio.run(scenario()) == []


# =============================================================================
# Formatting
# =============================================================================

def test_format_results_generic_and_empty():
    assert format_results([]) == NO_RESULTS_TEXT
    assert format_results([ToolResult("x", False, error="nope")]) == NO_RESULTS_TEXT

    text = format_results([ToolResult("custom", True, {"a": 1})])
    assert text.startswith("**custom** results:\n")
    assert json.loads(text.split("\n", 1)[1]) == {"a": 1}


def test_format_results_empty_collections():
    text = format_results([
        ToolResult(SEARCH_MEMORIES, True, []),
        ToolResult(RETRIEVE_KNOWLEDGE, True, {"entries": [], "extracted_concepts": [], "search_query": "q"}),
    ])
    assert "No relevant memories found." in text
    assert "No relevant knowledge found." in text


def test_format_knowledge_truncates_content():
    content = "x" * 300
    text = format_results([
        ToolResult(RETRIEVE_KNOWLEDGE, True, {"entries": [{"title": "Long", "content": content, "similarity": 0.75}]}),
    ])
    assert f"   {'x' * 200}..." in text
    assert "x" * 201 not in text
