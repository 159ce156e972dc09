"""
Dependency helpers for the standalone FastAPI app.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from coachcore.errors import ValidationIssue
from coachcore.services.knowledge_store import KnowledgeStore
from coachcore.services.memory_store import MemoryStore
from coachcore.services.turn_service import TurnService


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail={"error": "service_not_initialized", "component": name})
    return value


def get_turn_service(request: Request) -> TurnService:
    return _state(request, "turn_service")


def get_memory_store(request: Request) -> MemoryStore:
    return _state(request, "turn_service").memory_store


def get_knowledge_store(request: Request) -> KnowledgeStore:
    return _state(request, "knowledge_store")


def validation_http_error(exc: ValidationIssue) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={
            "status": "error",
            "error_type": "validation_error",
            "field": exc.field,
            "message": str(exc),
        },
    )


def payload_http_error(payload: dict) -> HTTPException:
    """Map a service_tool error payload onto an HTTP status."""
    if payload.get("status") == "not_found":
        return HTTPException(status_code=404, detail=payload)
    if payload.get("error_type") == "embedding_unavailable":
        return HTTPException(status_code=503, detail=payload)
    return HTTPException(status_code=400, detail=payload)
