"""
Memory write, listing and deletion endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Query

import coachcore.config as config
from coachcore.context import normalize_history
from coachcore.errors import ValidationIssue
from coachcore.services.memory_store import MemoryStore
from coachcore.services.turn_service import TurnService
from coachcore.validators import validate_choice, validate_optional_text, validate_required_text
from app.deps import get_memory_store, get_turn_service, payload_http_error, validation_http_error


router = APIRouter()


@router.post("/memories/facts")
async def write_facts(
    payload: dict = Body(...),
    service: TurnService = Depends(get_turn_service),
):
    """Store facts extracted from a turn after its response was produced."""
    facts = payload.get("facts")
    try:
        validate_required_text(payload.get("owner_id"), "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(payload.get("source_ref"), "source_ref", config.MAX_SHORT_TEXT_LENGTH)
        if not isinstance(facts, list):
            raise ValidationIssue("facts must be a list", field="facts", error_type="invalid_type")
    except ValidationIssue as exc:
        raise validation_http_error(exc) from exc

    results = await service.write_memories(payload["owner_id"], facts, source_ref=payload.get("source_ref"))
    if results and all(result.get("error_type") == "embedding_unavailable" for result in results):
        raise HTTPException(status_code=503, detail={"results": results})
    return {"results": results, "count": len(results)}


@router.post("/memories/extract")
async def extract_facts(
    payload: dict = Body(...),
    service: TurnService = Depends(get_turn_service),
):
    """Extract facts from a finished conversation transcript and store them."""
    transcript = payload.get("transcript")
    locale = payload.get("locale") or config.KNOWLEDGE_DEFAULT_LANGUAGE
    try:
        validate_required_text(payload.get("owner_id"), "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(payload.get("source_ref"), "source_ref", config.MAX_SHORT_TEXT_LENGTH)
        validate_choice(locale, "locale", {"de", "en"})
        if not isinstance(transcript, list):
            raise ValidationIssue("transcript must be a list", field="transcript", error_type="invalid_type")
        normalize_history(transcript)
    except ValidationIssue as exc:
        raise validation_http_error(exc) from exc
    if service.memory_extractor is None:
        raise HTTPException(status_code=503, detail={"error": "service_not_initialized", "component": "memory_extractor"})

    outcome = await service.extract_and_write_memories(
        payload["owner_id"], transcript, locale=locale, source_ref=payload.get("source_ref")
    )
    return {**outcome, "count": len(outcome["results"])}


@router.get("/memories/{owner_id}")
async def list_memories(
    owner_id: str,
    limit: int = Query(config.MEMORY_LIST_LIMIT),
    store: MemoryStore = Depends(get_memory_store),
):
    try:
        memories = await store.list_for_owner(owner_id, limit)
    except ValidationIssue as exc:
        raise validation_http_error(exc) from exc
    return {"memories": memories, "count": len(memories)}


@router.delete("/memories/{owner_id}/{memory_id}")
async def delete_memory(
    owner_id: str,
    memory_id: str,
    store: MemoryStore = Depends(get_memory_store),
):
    result = await store.delete(owner_id, memory_id)
    if result.get("status") != "deleted":
        raise payload_http_error(result)
    return result
