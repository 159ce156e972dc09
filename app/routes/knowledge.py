"""
Knowledge lookup endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from coachcore.errors import NotFoundError, ValidationIssue
from coachcore.services.knowledge_store import KnowledgeStore
from app.deps import get_knowledge_store, validation_http_error


router = APIRouter()


@router.get("/knowledge/{entry_id}/related")
async def related_entries(
    entry_id: str,
    limit: int = Query(5),
    store: KnowledgeStore = Depends(get_knowledge_store),
):
    """Entries near this one by its own embedding; never includes the entry itself."""
    try:
        entries = await store.related(entry_id, limit=limit)
    except NotFoundError as exc:
        raise HTTPException(
            status_code=404,
            detail={"status": "not_found", "resource": exc.resource, "message": str(exc)},
        ) from exc
    except ValidationIssue as exc:
        raise validation_http_error(exc) from exc
    return {"entry_id": entry_id, "entries": entries, "count": len(entries)}


@router.get("/knowledge/groups/{knowledge_id}")
async def translations(
    knowledge_id: str,
    store: KnowledgeStore = Depends(get_knowledge_store),
):
    """All active language variants of one knowledge entry."""
    try:
        entries = await store.translations(knowledge_id)
    except ValidationIssue as exc:
        raise validation_http_error(exc) from exc
    return {"knowledge_id": knowledge_id, "entries": entries, "count": len(entries)}
