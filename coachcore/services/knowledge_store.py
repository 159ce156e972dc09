"""
Curated, bilingual knowledge entries retrieved by meaning.

Entries that share a knowledge_id are translations of one concept. Deletes
are soft by default so curated content can be restored.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import func

import coachcore.config as config
from coachcore.context import HistoryTurn
from coachcore.db import open_session
from coachcore.errors import CompletionProviderError, EmbeddingProviderError, NotFoundError, ValidationIssue
from coachcore.models import KnowledgeEntry, Language, serialize_knowledge
from coachcore.services.providers import CompletionProvider, EmbeddingProvider
from coachcore.services.result_cache import ResultCache, cache_key
from coachcore.services.shared import logger, parse_json_object, service_tool
from coachcore.services.vector_store import VectorStore
from coachcore.validators import (
    validate_choice,
    validate_limit,
    validate_optional_text,
    validate_priority,
    validate_required_text,
    validate_similarity,
    validate_string_list,
)

KNOWLEDGE_CACHE_NAMESPACE = "knowledge"

QUERY_OPTIMIZER_SCHEMA = {
    "type": "object",
    "properties": {
        "search_query": {"type": "string"},
        "concepts": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["search_query", "concepts"],
}

_EDITABLE_FIELDS = {
    "title",
    "content",
    "category",
    "subcategory",
    "source",
    "tags",
    "priority",
    "is_active",
}


def embedding_text(language: str, title: str, content: str) -> str:
    return f"[Knowledge {language.upper()}] {title}: {content}"


def _tags_overlap(tags: Optional[Sequence[str]]):
    if not tags:
        return None
    wanted = {tag.lower() for tag in tags}

    def predicate(entry: KnowledgeEntry) -> bool:
        return bool(wanted.intersection(str(tag).lower() for tag in (entry.tags or [])))
    return predicate


def _validate_language(language: str) -> None:
    validate_choice(language, "language", [item.value for item in Language])


def _validate_entry_fields(fields: dict) -> None:
    if "title" in fields:
        validate_required_text(fields["title"], "title", config.MAX_TITLE_LENGTH)
    if "content" in fields:
        validate_required_text(fields["content"], "content", config.MAX_TEXT_LENGTH)
    if "category" in fields:
        validate_required_text(fields["category"], "category", config.MAX_SHORT_TEXT_LENGTH)
    if "subcategory" in fields:
        validate_optional_text(fields["subcategory"], "subcategory", config.MAX_SHORT_TEXT_LENGTH)
    if "source" in fields:
        validate_optional_text(fields["source"], "source", config.MAX_TITLE_LENGTH)
    if "tags" in fields:
        validate_string_list(fields["tags"], "tags", config.MAX_TAG_ITEMS, config.MAX_LIST_ITEM_LENGTH)
    if "priority" in fields:
        validate_priority(fields["priority"])
    if "is_active" in fields and not isinstance(fields["is_active"], bool):
        raise ValidationIssue("is_active must be a boolean", field="is_active", error_type="invalid_type")


class KnowledgeStore:
    def __init__(
        self,
        embedder: EmbeddingProvider,
        completion: Optional[CompletionProvider] = None,
        vectors: Optional[VectorStore] = None,
        cache: Optional[ResultCache] = None,
    ):
        self.embedder = embedder
        self.completion = completion
        self.vectors = vectors or VectorStore()
        self.cache = cache

    # -------------------------------------------------------------------------
    # Curation
    # -------------------------------------------------------------------------

    @service_tool
    async def create_entry(
        self,
        title: str,
        content: str,
        category: str,
        language: str = config.KNOWLEDGE_DEFAULT_LANGUAGE,
        knowledge_id: Optional[str] = None,
        subcategory: Optional[str] = None,
        source: Optional[str] = None,
        tags: Optional[list[str]] = None,
        priority: int = 3,
        created_by: Optional[str] = None,
    ) -> dict:
        _validate_language(language)
        _validate_entry_fields({
            "title": title,
            "content": content,
            "category": category,
            "subcategory": subcategory,
            "source": source,
            "tags": tags,
            "priority": priority,
        })
        validate_optional_text(knowledge_id, "knowledge_id", 36)
        validate_optional_text(created_by, "created_by", config.MAX_SHORT_TEXT_LENGTH)

        vector = await self.embedder.embed(embedding_text(language, title, content))
        db = open_session()
        try:
            entry = KnowledgeEntry(
                language=language,
                title=title,
                content=content,
                embedding=vector,
                category=category,
                subcategory=subcategory,
                source=source,
                tags=list(tags or []),
                priority=priority,
                is_active=True,
                created_by=created_by,
            )
            if knowledge_id:
                entry.knowledge_id = knowledge_id
            db.add(entry)
            db.commit()
            logger.info("knowledge_created", extra={"entry_id": entry.id, "language": language})
            return {"status": "created", "entry": serialize_knowledge(entry)}
        finally:
            db.close()

    @service_tool
    async def update_entry(self, entry_id: str, **fields) -> dict:
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationIssue(
                f"unknown fields: {', '.join(sorted(unknown))}",
                field="fields",
                error_type="invalid_value",
            )
        _validate_entry_fields(fields)
        db = open_session()
        try:
            entry = db.get(KnowledgeEntry, entry_id)
            if entry is None:
                raise NotFoundError(f"knowledge entry {entry_id} not found", resource="knowledge_entry")
            text_changed = any(
                key in fields and fields[key] != getattr(entry, key)
                for key in ("title", "content")
            )
            for key, value in fields.items():
                setattr(entry, key, list(value) if key == "tags" else value)
            if text_changed:
                entry.embedding = await self.embedder.embed(
                    embedding_text(entry.language, entry.title, entry.content)
                )
            entry.updated_at = datetime.utcnow()
            db.commit()
            return {"status": "updated", "reembedded": text_changed, "entry": serialize_knowledge(entry)}
        finally:
            db.close()

    @service_tool
    async def get_entry(self, entry_id: str) -> dict:
        db = open_session()
        try:
            entry = db.get(KnowledgeEntry, entry_id)
            if entry is None:
                raise NotFoundError(f"knowledge entry {entry_id} not found", resource="knowledge_entry")
            return {"status": "found", "entry": serialize_knowledge(entry)}
        finally:
            db.close()

    @service_tool
    async def delete_entry(self, entry_id: str, hard: bool = False) -> dict:
        db = open_session()
        try:
            entry = db.get(KnowledgeEntry, entry_id)
            if entry is None:
                raise NotFoundError(f"knowledge entry {entry_id} not found", resource="knowledge_entry")
            if hard:
                db.delete(entry)
            else:
                entry.is_active = False
                entry.updated_at = datetime.utcnow()
            db.commit()
        finally:
            db.close()
        return {"status": "deleted" if hard else "deactivated", "id": entry_id}

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    async def list_entries(
        self,
        language: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = True,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        if language is not None:
            _validate_language(language)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        if offset < 0:
            raise ValidationIssue("offset must be >= 0", field="offset", error_type="out_of_range")
        db = open_session()
        try:
            query = db.query(KnowledgeEntry)
            if language is not None:
                query = query.filter(KnowledgeEntry.language == language)
            if category is not None:
                query = query.filter(KnowledgeEntry.category == category)
            if is_active is not None:
                query = query.filter(KnowledgeEntry.is_active.is_(is_active))
            total = query.with_entities(func.count(KnowledgeEntry.id)).scalar() or 0
            rows = (
                query.order_by(KnowledgeEntry.priority.desc(), KnowledgeEntry.created_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return {"entries": [serialize_knowledge(row) for row in rows], "total": total}
        finally:
            db.close()

    async def categories(self, language: Optional[str] = None) -> list[str]:
        db = open_session()
        try:
            query = db.query(KnowledgeEntry.category).filter(KnowledgeEntry.is_active.is_(True))
            if language is not None:
                query = query.filter(KnowledgeEntry.language == language)
            return sorted({row[0] for row in query.distinct().all() if row[0]})
        finally:
            db.close()

    async def tags(self, language: Optional[str] = None) -> list[str]:
        db = open_session()
        try:
            query = db.query(KnowledgeEntry.tags).filter(KnowledgeEntry.is_active.is_(True))
            if language is not None:
                query = query.filter(KnowledgeEntry.language == language)
            found: set[str] = set()
            for (tags,) in query.all():
                found.update(str(tag) for tag in (tags or []))
            return sorted(found)
        finally:
            db.close()

    async def translations(self, knowledge_id: str) -> list[dict]:
        """All active language variants of one translation group, newest first."""
        validate_required_text(knowledge_id, "knowledge_id", 36)
        db = open_session()
        try:
            rows = (
                db.query(KnowledgeEntry)
                .filter(KnowledgeEntry.knowledge_id == knowledge_id)
                .filter(KnowledgeEntry.is_active.is_(True))
                .order_by(KnowledgeEntry.created_at.desc())
                .all()
            )
            return [serialize_knowledge(row) for row in rows]
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Semantic retrieval
    # -------------------------------------------------------------------------

    def _search_with_vector(
        self,
        vector: Sequence[float],
        language: str,
        category: Optional[str],
        tags: Optional[Sequence[str]],
        limit: int,
        min_similarity: Optional[float],
        exclude_id: Optional[str] = None,
    ) -> list[dict]:
        filters = [
            KnowledgeEntry.is_active.is_(True),
            KnowledgeEntry.language == language,
        ]
        if category:
            filters.append(KnowledgeEntry.category == category)
        if exclude_id:
            filters.append(KnowledgeEntry.id != exclude_id)
        db = open_session()
        try:
            matches = self.vectors.nearest(
                db,
                KnowledgeEntry,
                vector,
                filters=filters,
                limit=limit,
                min_similarity=min_similarity,
                predicate=_tags_overlap(tags),
            )
            return [serialize_knowledge(entry, similarity) for entry, similarity in matches]
        finally:
            db.close()

    async def search(
        self,
        query: str,
        language: str = config.KNOWLEDGE_DEFAULT_LANGUAGE,
        category: Optional[str] = None,
        tags: Optional[list[str]] = None,
        limit: int = 10,
        min_similarity: float = config.KNOWLEDGE_MIN_SIMILARITY,
    ) -> list[dict]:
        validate_required_text(query, "query", config.MAX_QUERY_LENGTH)
        _validate_language(language)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        validate_similarity(min_similarity, "min_similarity")
        validate_string_list(tags, "tags", config.MAX_TAG_ITEMS, config.MAX_LIST_ITEM_LENGTH)
        vector = await self.embedder.embed(query)
        return self._search_with_vector(vector, language, category, tags, limit, min_similarity)

    async def optimize_query(self, message: str, language: str) -> dict:
        """
        Compress a raw user message into a search query plus concept labels.

        Falls back to the raw message when no completion capability is
        configured or the call fails.
        """
        fallback = {"search_query": message, "concepts": [], "optimized": False}
        if self.completion is None:
            return fallback
        instruction = (
            "You turn a user's message from a coaching conversation into a short search "
            "query for a knowledge base about nonviolent communication. "
            f"Write the query in language '{language}'. Also list up to five concept "
            "labels the message touches on."
        )
        try:
            raw = await self.completion.complete(
                instruction,
                [HistoryTurn(role="user", content=message)],
                output_schema=QUERY_OPTIMIZER_SCHEMA,
                temperature=0.2,
            )
            parsed = parse_json_object(raw)
        except (CompletionProviderError, ValueError) as exc:
            logger.warning("knowledge_query_optimization_failed", extra={"error": str(exc)})
            return fallback
        search_query = parsed.get("search_query")
        if not isinstance(search_query, str) or not search_query.strip():
            return fallback
        concepts = [
            str(item).strip() for item in (parsed.get("concepts") or [])
            if isinstance(item, str) and item.strip()
        ]
        return {"search_query": search_query.strip(), "concepts": concepts[:5], "optimized": True}

    async def retrieve(
        self,
        message: str,
        language: str = config.KNOWLEDGE_DEFAULT_LANGUAGE,
        limit: int = 3,
        min_similarity: float = config.KNOWLEDGE_MIN_SIMILARITY,
        category: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> dict:
        """
        Optimize the message into a query, embed it and search.

        If the optimized query cannot be embedded the raw message is tried
        instead; if that fails too the result has no entries.
        """
        validate_required_text(message, "message", config.MAX_QUERY_LENGTH)
        _validate_language(language)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        validate_similarity(min_similarity, "min_similarity")
        validate_string_list(tags, "tags", config.MAX_TAG_ITEMS, config.MAX_LIST_ITEM_LENGTH)

        key = cache_key(KNOWLEDGE_CACHE_NAMESPACE, language, message, limit, min_similarity, category, tags)
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached

        optimized = await self.optimize_query(message, language)
        candidates = [optimized["search_query"]]
        if optimized["search_query"] != message:
            candidates.append(message)

        for query in candidates:
            try:
                vector = await self.embedder.embed(query)
            except (EmbeddingProviderError, ValidationIssue) as exc:
                logger.warning("knowledge_query_embedding_failed", extra={"error": str(exc)})
                continue
            entries = self._search_with_vector(vector, language, category, tags, limit, min_similarity)
            result = {
                "entries": entries,
                "extracted_concepts": optimized["concepts"],
                "search_query": query,
            }
            if self.cache is not None:
                await self.cache.set(key, result, config.KNOWLEDGE_CACHE_TTL_SECONDS)
            return result

        return {
            "entries": [],
            "extracted_concepts": optimized["concepts"],
            "search_query": message,
        }

    async def related(self, entry_id: str, limit: int = 5, min_similarity: Optional[float] = None) -> list[dict]:
        """Other active entries of the same language, ranked by this entry's own embedding."""
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        db = open_session()
        try:
            entry = db.get(KnowledgeEntry, entry_id)
            if entry is None:
                raise NotFoundError(f"knowledge entry {entry_id} not found", resource="knowledge_entry")
            if entry.embedding is None:
                return []
            vector = list(entry.embedding)
            language = entry.language
        finally:
            db.close()
        return self._search_with_vector(
            vector,
            language,
            category=None,
            tags=None,
            limit=limit,
            min_similarity=min_similarity,
            exclude_id=entry_id,
        )
