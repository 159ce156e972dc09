import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import FakeCompletion, FakeEmbedder, unit
from app.main import app
from coachcore.services.knowledge_store import KnowledgeStore, embedding_text
from coachcore.services.memory_extraction import MemoryExtractor
from coachcore.services.memory_store import MemoryStore
from coachcore.services.result_cache import ResultCache
from coachcore.services.stages import ORIENTATION, SELF_REFLECTION, StageClassifier, StageMachine
from coachcore.services.tool_orchestrator import ToolOrchestrator
from coachcore.services.tool_registry import build_default_registry
from coachcore.services.turn_service import TurnService

NO_SWITCH = {
    "should_switch": False,
    "confidence": 5,
    "suggested_stage": None,
    "reason": "stay",
    "current_stage_complete": False,
}


class StubExtractor:
    async def extract(self, message, locale="en"):
        return {"observation": None, "feelings": [], "needs": [], "request": None}


@pytest.fixture
def components(server_db):
    embedder = FakeEmbedder({
        "I like hiking": unit(1, 0),
        embedding_text("en", "Needs", "Needs are universal."): unit(1, 0),
        embedding_text("en", "Feelings", "Feelings point to needs."): unit(0.6, 0.8),
    })
    cache = ResultCache()
    memory_store = MemoryStore(embedder, cache=cache)
    knowledge_store = KnowledgeStore(embedder, cache=cache)
    stage_completion = FakeCompletion(default=NO_SWITCH)
    tool_completion = FakeCompletion(default={"tool_calls": [], "reasoning": "nothing needed"})
    classifier = StageClassifier(stage_completion)
    registry = build_default_registry(memory_store, knowledge_store, StubExtractor(), classifier, cache=cache)
    turn_service = TurnService(
        stage_machine=StageMachine(classifier, memory_store=memory_store),
        orchestrator=ToolOrchestrator(tool_completion, registry),
        memory_store=memory_store,
    )
    app.state.cache = cache
    app.state.knowledge_store = knowledge_store
    app.state.turn_service = turn_service
    try:
        yield {
            "embedder": embedder,
            "knowledge_store": knowledge_store,
            "stage_completion": stage_completion,
            "turn_service": turn_service,
        }
    finally:
        app.state.cache = None
        app.state.knowledge_store = None
        app.state.turn_service = None


@pytest.fixture
def client(components):
    return TestClient(app)


def test_health_reports_components(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"]["ok"] is True
    assert body["embedding_provider"]["status"] == "disabled"
    assert body["result_cache"]["total_keys"] == 0


def test_turn_endpoint_returns_outcome(client, components):
    components["stage_completion"].responses.append({
        "should_switch": True,
        "confidence": 88,
        "suggested_stage": SELF_REFLECTION,
        "reason": "the person talks about feelings",
        "current_stage_complete": True,
    })

    response = client.post(
        "/turns",
        json={
            "owner_id": "owner-1",
            "message": "I feel sad and alone",
            "current_stage_id": ORIENTATION,
            "recent_history": [{"role": "assistant", "content": "How are you?"}],
            "preferences": {"answer_length": "short"},
            "first_name": "Alex",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["new_stage_id"] == SELF_REFLECTION
    assert body["switched"] is True
    assert body["tool_outcomes"] == []
    assert body["tool_reasoning"] == "nothing needed"
    assert body["composed_context"].startswith("You are talking with Alex. ")


def test_turn_endpoint_validates_payload(client):
    missing = client.post("/turns", json={"owner_id": "owner-1"})
    assert missing.status_code == 400
    assert missing.json()["detail"]["field"] == "message"

    bad_locale = client.post("/turns", json={"owner_id": "owner-1", "message": "hi", "locale": "fr"})
    assert bad_locale.status_code == 400
    assert bad_locale.json()["detail"]["field"] == "locale"

    bad_history = client.post("/turns", json={"owner_id": "owner-1", "message": "hi", "recent_history": "hello"})
    assert bad_history.status_code == 400


def test_memory_write_list_and_delete(client):
    written = client.post(
        "/memories/facts",
        json={"owner_id": "owner-1", "facts": ["I like hiking", {"text": ""}], "source_ref": "turn-1"},
    )
    assert written.status_code == 200
    body = written.json()
    assert body["count"] == 2
    assert body["results"][0]["status"] == "created"
    assert body["results"][1]["error_type"] == "validation_error"

    listed = client.get("/memories/owner-1")
    assert listed.json()["count"] == 1
    memory_id = listed.json()["memories"][0]["id"]

    assert client.get("/memories/owner-2").json()["count"] == 0
    assert client.delete(f"/memories/owner-2/{memory_id}").status_code == 404
    assert client.delete(f"/memories/owner-1/{memory_id}").json()["status"] == "deleted"
    assert client.get("/memories/owner-1").json()["count"] == 0


def test_memory_endpoints_reject_bad_input(client):
    assert client.post("/memories/facts", json={"owner_id": "owner-1", "facts": "I like hiking"}).status_code == 400
    assert client.get("/memories/owner-1", params={"limit": 0}).status_code == 400


def test_memory_write_reports_embedding_outage(client, components):
    components["embedder"].fail = True
    response = client.post("/memories/facts", json={"owner_id": "owner-1", "facts": ["I like hiking"]})
    assert response.status_code == 503


def test_related_knowledge_and_translation_groups(client, components):
    store = components["knowledge_store"]

    async def seed():
        needs = await store.create_entry("Needs", "Needs are universal.", category="basics", language="en")
        feelings = await store.create_entry("Feelings", "Feelings point to needs.", category="basics", language="en")
        return needs["entry"], feelings["entry"]

    needs, feelings = asyncio.run(seed())

    related = client.get(f"/knowledge/{needs['id']}/related")
    assert related.status_code == 200
    body = related.json()
    assert [entry["id"] for entry in body["entries"]] == [feelings["id"]]
    assert body["entries"][0]["similarity"] == pytest.approx(0.6)

    assert client.get("/knowledge/missing/related").status_code == 404

    group = client.get(f"/knowledge/groups/{needs['knowledge_id']}")
    assert group.json()["count"] == 1


def test_routes_unavailable_before_startup(server_db):
    app.state.turn_service = None
    client = TestClient(app)
    response = client.post("/turns", json={"owner_id": "owner-1", "message": "hi"})
    assert response.status_code == 503


def test_memory_extract_endpoint_writes_facts(client, components):
    components["turn_service"].memory_extractor = MemoryExtractor(FakeCompletion([{
        "memories": [{
            "aspect_type": "identity",
            "key": "Hobby",
            "value": "I like hiking",
            "confidence": "likely",
            "person_name": "",
        }],
    }]))

    response = client.post(
        "/memories/extract",
        json={
            "owner_id": "owner-1",
            "transcript": [{"role": "user", "content": "I went hiking again, I love it"}],
            "source_ref": "chat-3",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["facts"][0]["category"] == "preferences"
    assert body["results"][0]["status"] == "created"
    assert client.get("/memories/owner-1").json()["memories"][0]["source_ref"] == "chat-3"


def test_memory_extract_endpoint_rejects_bad_input(client):
    assert client.post("/memories/extract", json={"owner_id": "owner-1"}).status_code == 400
    bad_locale = client.post("/memories/extract", json={"owner_id": "owner-1", "transcript": [], "locale": "fr"})
    assert bad_locale.json()["detail"]["field"] == "locale"
    bad_turn = client.post("/memories/extract", json={"owner_id": "owner-1", "transcript": ["hello"]})
    assert bad_turn.status_code == 400
    unconfigured = client.post("/memories/extract", json={"owner_id": "owner-1", "transcript": []})
    assert unconfigured.status_code == 503
