"""
Standalone FastAPI app wiring for the coaching core.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

import coachcore.config as config
from coachcore.db import dispose_db, init_db
from coachcore.services.knowledge_store import KnowledgeStore
from coachcore.services.providers import build_completion_provider, build_embedding_provider
from coachcore.services.result_cache import ResultCache
from coachcore.services.turn_service import build_turn_service
from app.routes.health import router as health_router
from app.routes.knowledge import router as knowledge_router
from app.routes.memories import router as memories_router
from app.routes.turns import router as turns_router


purge_task = None
cache_sweep_task = None


async def _purge_loop(memory_store) -> None:
    if config.MEMORY_PURGE_INTERVAL_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.MEMORY_PURGE_INTERVAL_SECONDS)
        try:
            await memory_store.purge_expired()
        except Exception as exc:
            config.logger.warning(f"Memory purge task error: {exc}")


async def _cache_sweep_loop(cache: ResultCache) -> None:
    if config.CACHE_SWEEP_INTERVAL_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.CACHE_SWEEP_INTERVAL_SECONDS)
        await cache.clear_expired()


async def _cancel(task) -> None:
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    global purge_task, cache_sweep_task
    init_db()
    cache = ResultCache(enabled=config.RESULT_CACHE_ENABLED)
    knowledge_store = KnowledgeStore(
        build_embedding_provider(),
        completion=build_completion_provider(light=True),
        cache=cache,
    )
    turn_service = build_turn_service(cache=cache, knowledge_store=knowledge_store)
    app.state.cache = cache
    app.state.knowledge_store = knowledge_store
    app.state.turn_service = turn_service

    if config.MEMORY_PURGE_INTERVAL_SECONDS > 0:
        purge_task = asyncio.create_task(_purge_loop(turn_service.memory_store))
    if config.RESULT_CACHE_ENABLED and config.CACHE_SWEEP_INTERVAL_SECONDS > 0:
        cache_sweep_task = asyncio.create_task(_cache_sweep_loop(cache))
    try:
        yield
    finally:
        await _cancel(purge_task)
        await _cancel(cache_sweep_task)
        dispose_db()


app = FastAPI(title="Coaching Core", redirect_slashes=False, lifespan=lifespan)

app.include_router(health_router)
app.include_router(turns_router)
app.include_router(memories_router)
app.include_router(knowledge_router)
