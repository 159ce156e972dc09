"""
Coaching core database models
PostgreSQL + pgvector schema, with a JSON embedding fallback for SQLite
"""

from datetime import datetime
from enum import Enum as PyEnum
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean,
    DateTime, CheckConstraint, Index, UniqueConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

import coachcore.config as config

DB_BACKEND = config.DB_BACKEND
VECTOR_BACKEND_EFFECTIVE = config.VECTOR_BACKEND_EFFECTIVE

try:
    from pgvector.sqlalchemy import Vector as PgVector
    PGVECTOR_AVAILABLE = True
except Exception:
    PgVector = None
    PGVECTOR_AVAILABLE = False

if VECTOR_BACKEND_EFFECTIVE == "pgvector" and PGVECTOR_AVAILABLE:
    EMBEDDING_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
    PGVECTOR_COLUMNS = True
else:
    EMBEDDING_COLUMN_TYPE = JSON(none_as_null=True)
    PGVECTOR_COLUMNS = False

JSON_TYPE = JSONB if DB_BACKEND == "postgres" else JSON


def _uuid_default() -> str:
    return str(uuid.uuid4())


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class MemoryCategory(str, PyEnum):
    core_identity = "core_identity"
    patterns = "patterns"
    preferences = "preferences"
    episodic = "episodic"
    contextual = "contextual"


class ConfidenceTier(str, PyEnum):
    low = "low"
    medium = "medium"
    high = "high"


class Language(str, PyEnum):
    de = "de"
    en = "en"


# =============================================================================
# Conversation state
# =============================================================================

class ConversationSession(Base):
    __tablename__ = "conversation_sessions"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    owner_id = Column(String(100), nullable=False)
    current_stage = Column(String(50), nullable=False)
    stage_history = Column(JSON_TYPE, nullable=False, default=list)
    stage_markers = Column(JSON_TYPE, nullable=False, default=list)
    started_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    last_switch_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", name="uq_conversation_sessions_owner"),
    )


# =============================================================================
# Owner memories
# =============================================================================

class Memory(Base):
    __tablename__ = "memories"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    owner_id = Column(String(100), nullable=False)
    category = Column(String(20), nullable=False, default=MemoryCategory.episodic.value)
    confidence = Column(String(10), nullable=False, default=ConfidenceTier.medium.value)
    priority = Column(Float, nullable=False, default=0.4)
    title = Column(String(500))
    value = Column(Text, nullable=False)
    person_name = Column(String(255))
    embedding = Column(EMBEDDING_COLUMN_TYPE)
    source_ref = Column(String(100))
    relevance_score = Column(Float, nullable=False, default=1.0)
    access_count = Column(Integer, nullable=False, default=0)
    last_accessed_at = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("access_count >= 0", name="ck_memories_access_count"),
        Index("ix_memories_owner", "owner_id"),
        Index("ix_memories_owner_priority", "owner_id", "priority", "access_count"),
        Index("ix_memories_expires_at", "expires_at"),
    )


# =============================================================================
# Curated knowledge
# =============================================================================

class KnowledgeEntry(Base):
    __tablename__ = "knowledge_entries"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    knowledge_id = Column(String(36), nullable=False, default=_uuid_default)
    language = Column(String(5), nullable=False, default=Language.en.value)
    title = Column(String(500), nullable=False)
    content = Column(Text, nullable=False)
    embedding = Column(EMBEDDING_COLUMN_TYPE)
    category = Column(String(100), nullable=False)
    subcategory = Column(String(100))
    source = Column(String(500))
    tags = Column(JSON_TYPE, nullable=False, default=list)
    priority = Column(Integer, nullable=False, default=3)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("priority >= 1 AND priority <= 5", name="ck_knowledge_priority"),
        UniqueConstraint("knowledge_id", "language", name="uq_knowledge_group_language"),
        Index("ix_knowledge_group", "knowledge_id"),
        Index("ix_knowledge_language_active", "language", "is_active"),
        Index("ix_knowledge_category", "category"),
    )


def serialize_memory(memory: Memory, similarity: float | None = None) -> dict:
    payload = {
        "id": memory.id,
        "owner_id": memory.owner_id,
        "category": memory.category,
        "confidence": memory.confidence,
        "priority": memory.priority,
        "title": memory.title,
        "value": memory.value,
        "person_name": memory.person_name,
        "source_ref": memory.source_ref,
        "access_count": memory.access_count or 0,
        "last_accessed_at": memory.last_accessed_at.isoformat() if memory.last_accessed_at else None,
        "expires_at": memory.expires_at.isoformat() if memory.expires_at else None,
        "created_at": memory.created_at.isoformat() if memory.created_at else None,
        "updated_at": memory.updated_at.isoformat() if memory.updated_at else None,
    }
    if similarity is not None:
        payload["similarity"] = similarity
    return payload


def serialize_knowledge(entry: KnowledgeEntry, similarity: float | None = None) -> dict:
    payload = {
        "id": entry.id,
        "knowledge_id": entry.knowledge_id,
        "language": entry.language,
        "title": entry.title,
        "content": entry.content,
        "category": entry.category,
        "subcategory": entry.subcategory,
        "source": entry.source,
        "tags": list(entry.tags or []),
        "priority": entry.priority,
        "is_active": entry.is_active,
        "created_by": entry.created_by,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "updated_at": entry.updated_at.isoformat() if entry.updated_at else None,
    }
    if similarity is not None:
        payload["similarity"] = similarity
    return payload
