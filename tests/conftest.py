import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")
os.environ.setdefault("RESULT_CACHE_ENABLED", "true")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from coachcore.db import DB
from coachcore.errors import CompletionProviderError, EmbeddingProviderError
from coachcore.models import Base
from coachcore.services.providers import CompletionProvider, EmbeddingProvider


class FakeEmbedder(EmbeddingProvider):
    """
    Deterministic embeddings for tests.

    Texts registered in `vectors` map to fixed vectors; anything else gets
    its own orthogonal axis so unrelated texts never look similar.
    """

    def __init__(self, vectors=None, dim=8):
        self.vectors = {key: list(value) for key, value in (vectors or {}).items()}
        self.dim = dim
        self.fail = False
        self.failing_texts = set()
        self.calls = []
        self._axes = {}

    def _axis_vector(self, text):
        if text not in self._axes:
            self._axes[text] = len(self._axes)
        idx = self._axes[text]
        vector = [0.0] * (self.dim + idx + 1)
        vector[self.dim + idx] = 1.0
        return vector

    async def embed(self, text):
        self.calls.append(text)
        if self.fail or text in self.failing_texts:
            raise EmbeddingProviderError("embedding provider unavailable")
        if text in self.vectors:
            return list(self.vectors[text])
        return self._axis_vector(text)


class FakeCompletion(CompletionProvider):
    """Returns scripted responses in order; exceptions in the script are raised."""

    def __init__(self, responses=None, default=None):
        self.responses = list(responses or [])
        self.default = default
        self.calls = []

    async def complete(self, system_instruction, turns, output_schema=None, temperature=None):
        self.calls.append(
            {
                "system_instruction": system_instruction,
                "turns": list(turns),
                "output_schema": output_schema,
                "temperature": temperature,
            }
        )
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, BaseException):
            raise response
        if response is None:
            raise CompletionProviderError("no scripted response")
        return response


def unit(*values):
    """Pad a short vector to the fake embedder's dimension."""
    vector = list(values) + [0.0] * (8 - len(values))
    return vector


@pytest.fixture
def server_db(tmp_path):
    db_path = tmp_path / "coachcore.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = SessionLocal
    try:
        yield SessionLocal
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()
