"""
Health endpoint.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import text

import coachcore.config as config
from coachcore.db import DB
from coachcore.services.providers import completion_circuit_breaker, embedding_circuit_breaker


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            ext_version = None
            pgvector_installed = True
            if config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
                ext_version = conn.execute(
                    text("SELECT extversion FROM pg_extension WHERE extname = 'vector'")
                ).scalar()
                pgvector_installed = bool(ext_version)
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    return {
        "ok": True,
        "backend": config.DB_BACKEND,
        "vector_backend": config.VECTOR_BACKEND_EFFECTIVE,
        "pgvector_installed": pgvector_installed,
        "pgvector_version": ext_version,
    }


def _provider_status(name: str, breaker) -> dict:
    status = breaker.status()
    if name == "embedding" and config.EMBEDDING_PROVIDER == "none":
        state = "disabled"
    elif status.get("open"):
        state = "cooldown"
    else:
        state = "ready"
    return {"status": state, "circuit_breaker": status}


@router.get("/health")
async def health(request: Request):
    """Health check endpoint."""
    db_health = _check_db_health()
    embedding_status = _provider_status("embedding", embedding_circuit_breaker)
    embedding_status["provider"] = config.EMBEDDING_PROVIDER
    completion_status = _provider_status("completion", completion_circuit_breaker)
    vector_required = config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"
    if not db_health.get("ok") or (vector_required and not db_health.get("pgvector_installed")):
        raise HTTPException(
            status_code=503,
            detail={"database": db_health, "embedding_provider": embedding_status},
        )

    payload = {
        "status": "healthy",
        "service": "coachcore",
        "version": "0.1.0",
        "database": db_health,
        "embedding_provider": embedding_status,
        "completion_provider": completion_status,
    }
    cache = getattr(request.app.state, "cache", None)
    if cache is not None:
        payload["result_cache"] = await cache.stats()
    return payload
