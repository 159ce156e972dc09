"""
Owner-scoped durable memories.

Writes deduplicate by embedding similarity: a new fact that is at least
MEMORY_MERGE_THRESHOLD similar to an existing, unexpired memory of the same
owner is appended to that memory instead of being stored separately.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import or_

import coachcore.config as config
from coachcore.db import open_session
from coachcore.errors import NotFoundError
from coachcore.models import ConfidenceTier, Memory, MemoryCategory, serialize_memory
from coachcore.services.memory_policy import (
    CATEGORY_PRIORITY,
    MemoryClassifier,
    bounded_merge,
    classify_memory_category,
    expiry_for,
    priority_for,
)
from coachcore.services.providers import EmbeddingProvider
from coachcore.services.result_cache import ResultCache, scope_prefix
from coachcore.services.shared import apply_access_bump, logger, service_tool
from coachcore.services.vector_store import VectorStore
from coachcore.validators import (
    validate_choice,
    validate_limit,
    validate_optional_text,
    validate_required_text,
    validate_similarity,
)

MEMORY_CACHE_NAMESPACE = "memory"

CATEGORY_LABELS = {
    MemoryCategory.core_identity.value: "Core identity",
    MemoryCategory.patterns.value: "Patterns",
    MemoryCategory.preferences.value: "Preferences",
    MemoryCategory.episodic.value: "Experiences",
    MemoryCategory.contextual.value: "Current context",
}


def _not_expired(now: datetime):
    return or_(Memory.expires_at.is_(None), Memory.expires_at > now)


def _validate_owner(owner_id: str) -> None:
    validate_required_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)


class MemoryStore:
    def __init__(
        self,
        embedder: EmbeddingProvider,
        vectors: Optional[VectorStore] = None,
        classifier: MemoryClassifier = classify_memory_category,
        cache: Optional[ResultCache] = None,
        merge_threshold: float = config.MEMORY_MERGE_THRESHOLD,
        merge_max_length: int = config.MEMORY_MERGE_MAX_LENGTH,
    ):
        self.embedder = embedder
        self.vectors = vectors or VectorStore()
        self.classifier = classifier
        self.cache = cache
        self.merge_threshold = merge_threshold
        self.merge_max_length = merge_max_length

    async def _invalidate(self, owner_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate_prefix(scope_prefix(MEMORY_CACHE_NAMESPACE, owner_id))

    def find_similar(
        self,
        db,
        owner_id: str,
        embedding: Sequence[float],
        exclude_ids: Sequence[str] = (),
    ) -> Optional[tuple[Memory, float]]:
        """Closest unexpired memory of the owner at or above the merge threshold."""
        filters = [Memory.owner_id == owner_id, _not_expired(datetime.utcnow())]
        if exclude_ids:
            filters.append(Memory.id.notin_(list(exclude_ids)))
        matches = self.vectors.nearest(
            db,
            Memory,
            embedding,
            filters=filters,
            limit=1,
            min_similarity=self.merge_threshold,
        )
        return matches[0] if matches else None

    async def absorb_neighbors(self, db, memory: Memory) -> list[str]:
        """
        Fold other memories that the merged text now resembles into `memory`.

        A merge re-embeds the combined text, which can move it within the
        threshold of another row; those rows are merged in and deleted until
        no neighbor is left.
        """
        absorbed: list[str] = []
        while True:
            match = self.find_similar(db, memory.owner_id, memory.embedding, exclude_ids=[memory.id])
            if match is None:
                return absorbed
            neighbor, similarity = match
            await self.merge(memory, neighbor.value)
            memory.access_count += neighbor.access_count or 0
            absorbed.append(neighbor.id)
            db.delete(neighbor)
            db.flush()
            logger.info(
                "memory_absorbed",
                extra={"memory_id": memory.id, "absorbed_id": neighbor.id, "similarity": round(similarity, 4)},
            )

    async def merge(self, memory: Memory, text: str) -> Memory:
        merged = bounded_merge(memory.value, text, self.merge_max_length)
        memory.embedding = await self.embedder.embed(merged)
        memory.value = merged
        memory.access_count = (memory.access_count or 0) + 1
        memory.updated_at = datetime.utcnow()
        return memory

    @service_tool
    async def create(
        self,
        owner_id: str,
        text: str,
        source_ref: Optional[str] = None,
        confidence: str = ConfidenceTier.medium.value,
        category: Optional[str] = None,
        title: Optional[str] = None,
        person_name: Optional[str] = None,
    ) -> dict:
        _validate_owner(owner_id)
        validate_required_text(text, "text", config.MAX_TEXT_LENGTH)
        validate_choice(confidence, "confidence", [tier.value for tier in ConfidenceTier])
        if category is not None:
            validate_choice(category, "category", [item.value for item in MemoryCategory])
        validate_optional_text(source_ref, "source_ref", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(title, "title", config.MAX_TITLE_LENGTH)
        validate_optional_text(person_name, "person_name", config.MAX_SHORT_TEXT_LENGTH)

        text = text.strip()
        embedding = await self.embedder.embed(text)

        db = open_session()
        try:
            match = self.find_similar(db, owner_id, embedding)
            if match is not None:
                memory, similarity = match
                await self.merge(memory, text)
                absorbed = await self.absorb_neighbors(db, memory)
                db.commit()
                logger.info(
                    "memory_merged",
                    extra={
                        "owner_id": owner_id,
                        "memory_id": memory.id,
                        "similarity": round(similarity, 4),
                        "absorbed_count": len(absorbed),
                    },
                )
                result = {
                    "status": "merged",
                    "similarity": similarity,
                    "absorbed_ids": absorbed,
                    "memory": serialize_memory(memory),
                }
            else:
                resolved = MemoryCategory(category) if category else MemoryCategory(self.classifier(text))
                now = datetime.utcnow()
                memory = Memory(
                    owner_id=owner_id,
                    category=resolved.value,
                    confidence=confidence,
                    priority=priority_for(resolved),
                    title=title,
                    value=text,
                    person_name=person_name,
                    embedding=embedding,
                    source_ref=source_ref,
                    relevance_score=1.0,
                    access_count=0,
                    expires_at=expiry_for(resolved, now),
                    created_at=now,
                    updated_at=now,
                )
                db.add(memory)
                db.commit()
                logger.info(
                    "memory_created",
                    extra={"owner_id": owner_id, "memory_id": memory.id, "category": resolved.value},
                )
                result = {"status": "created", "memory": serialize_memory(memory)}
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        await self._invalidate(owner_id)
        return result

    async def search(
        self,
        owner_id: str,
        query: str,
        limit: int = 5,
        min_similarity: Optional[float] = None,
    ) -> list[dict]:
        """
        Semantic top-k over the owner's unexpired memories.

        Every returned row has its access count incremented and its last
        access time stamped.
        """
        _validate_owner(owner_id)
        validate_required_text(query, "query", config.MAX_QUERY_LENGTH)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        if min_similarity is not None:
            validate_similarity(min_similarity, "min_similarity")

        embedding = await self.embedder.embed(query)
        db = open_session()
        try:
            matches = self.vectors.nearest(
                db,
                Memory,
                embedding,
                filters=(Memory.owner_id == owner_id, _not_expired(datetime.utcnow())),
                limit=limit,
                min_similarity=min_similarity,
            )
            for memory, _ in matches:
                apply_access_bump(memory)
            db.commit()
            return [serialize_memory(memory, similarity) for memory, similarity in matches]
        finally:
            db.close()

    async def touch(self, owner_id: str, memory_ids: Sequence[str]) -> dict[str, int]:
        """Apply the search access bump to already-known rows; returns id -> new access count."""
        _validate_owner(owner_id)
        ids = [memory_id for memory_id in (memory_ids or []) if memory_id]
        if not ids:
            return {}
        db = open_session()
        try:
            rows = (
                db.query(Memory)
                .filter(Memory.owner_id == owner_id, Memory.id.in_(ids))
                .filter(_not_expired(datetime.utcnow()))
                .all()
            )
            for memory in rows:
                apply_access_bump(memory)
            db.commit()
            return {memory.id: memory.access_count for memory in rows}
        finally:
            db.close()

    async def list_for_owner(self, owner_id: str, limit: int = config.MEMORY_LIST_LIMIT) -> list[dict]:
        _validate_owner(owner_id)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        db = open_session()
        try:
            rows = (
                db.query(Memory)
                .filter(Memory.owner_id == owner_id)
                .filter(_not_expired(datetime.utcnow()))
                .order_by(Memory.priority.desc(), Memory.access_count.desc(), Memory.created_at.desc())
                .limit(limit)
                .all()
            )
            return [serialize_memory(row) for row in rows]
        finally:
            db.close()

    @service_tool
    async def get(self, owner_id: str, memory_id: str) -> dict:
        _validate_owner(owner_id)
        validate_required_text(memory_id, "memory_id", config.MAX_SHORT_TEXT_LENGTH)
        db = open_session()
        try:
            memory = (
                db.query(Memory)
                .filter(Memory.owner_id == owner_id, Memory.id == memory_id)
                .first()
            )
            if memory is None:
                raise NotFoundError(f"memory {memory_id} not found", resource="memory")
            return {"status": "found", "memory": serialize_memory(memory)}
        finally:
            db.close()

    @service_tool
    async def delete(self, owner_id: str, memory_id: str) -> dict:
        _validate_owner(owner_id)
        validate_required_text(memory_id, "memory_id", config.MAX_SHORT_TEXT_LENGTH)
        db = open_session()
        try:
            deleted = (
                db.query(Memory)
                .filter(Memory.owner_id == owner_id, Memory.id == memory_id)
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
        if not deleted:
            raise NotFoundError(f"memory {memory_id} not found", resource="memory")
        await self._invalidate(owner_id)
        return {"status": "deleted", "id": memory_id}

    @service_tool
    async def delete_many(self, owner_id: str, memory_ids: Sequence[str]) -> dict:
        _validate_owner(owner_id)
        ids = [memory_id for memory_id in (memory_ids or []) if memory_id]
        if not ids:
            return {"status": "deleted", "deleted_count": 0, "ids": []}
        db = open_session()
        try:
            owned = [
                row[0]
                for row in db.query(Memory.id)
                .filter(Memory.owner_id == owner_id, Memory.id.in_(ids))
                .all()
            ]
            if owned:
                db.query(Memory).filter(Memory.id.in_(owned)).delete(synchronize_session=False)
                db.commit()
        finally:
            db.close()
        await self._invalidate(owner_id)
        return {"status": "deleted", "deleted_count": len(owned), "ids": owned}

    async def purge_expired(self, owner_id: Optional[str] = None) -> int:
        db = open_session()
        try:
            query = db.query(Memory).filter(Memory.expires_at.isnot(None), Memory.expires_at <= datetime.utcnow())
            if owner_id is not None:
                query = query.filter(Memory.owner_id == owner_id)
            purged = query.delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()
        if purged:
            logger.info("memories_purged", extra={"count": purged})
        return purged


def format_memories_for_prompt(memories: Sequence[dict]) -> str:
    """Group memories by category (highest priority first) as a bulleted block."""
    if not memories:
        return ""
    grouped: dict[str, list[dict]] = {}
    for memory in memories:
        grouped.setdefault(memory.get("category") or MemoryCategory.episodic.value, []).append(memory)

    ordered = sorted(
        grouped,
        key=lambda value: CATEGORY_PRIORITY.get(MemoryCategory(value), 0.0) if value in CATEGORY_LABELS else 0.0,
        reverse=True,
    )
    lines = ["Relevant memories about this user:"]
    for category in ordered:
        lines.append(f"{CATEGORY_LABELS.get(category, category)}:")
        for memory in grouped[category]:
            line = f"- {memory.get('value') or memory.get('content', '')}"
            access_count = memory.get("access_count") or 0
            if access_count > 1:
                line += f" (mentioned {access_count}×)"
            lines.append(line)
    return "\n".join(lines)
