"""
Embedding and completion capabilities.

Components receive one of these objects in their constructor instead of
reaching for a module-level client, so tests can pass in fakes.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Sequence

import httpx

import coachcore.config as config
from coachcore.context import HistoryTurn
from coachcore.errors import CompletionProviderError, EmbeddingProviderError
from coachcore.services.shared import CircuitBreaker, async_sleep_backoff, logger, strip_json_fences
from coachcore.validators import validate_embedding_text

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

embedding_circuit_breaker = CircuitBreaker(
    failure_threshold=config.PROVIDER_FAILURE_THRESHOLD,
    cooldown_seconds=config.PROVIDER_COOLDOWN_SECONDS,
)
completion_circuit_breaker = CircuitBreaker(
    failure_threshold=config.PROVIDER_FAILURE_THRESHOLD,
    cooldown_seconds=config.PROVIDER_COOLDOWN_SECONDS,
)


async def _post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    payload: dict,
    breaker: CircuitBreaker,
    error_cls: type[RuntimeError],
    label: str,
) -> dict:
    if breaker.is_open():
        logger.warning(f"{label} provider circuit open")
        raise error_cls(f"{label} provider unavailable")
    for attempt in range(config.PROVIDER_RETRY_MAX + 1):
        try:
            response = await client.post(url, json=payload)
        except httpx.RequestError as exc:
            if attempt >= config.PROVIDER_RETRY_MAX:
                breaker.record_failure(str(exc))
                logger.warning(f"{label} provider unavailable")
                raise error_cls(f"{label} provider unavailable") from exc
            await async_sleep_backoff(attempt)
            continue

        if response.status_code in RETRYABLE_STATUS:
            if attempt >= config.PROVIDER_RETRY_MAX:
                breaker.record_failure(f"status {response.status_code}")
                logger.warning(f"{label} provider unavailable")
                raise error_cls(f"{label} provider unavailable")
            await async_sleep_backoff(attempt)
            continue
        if response.status_code >= 400:
            breaker.record_failure(f"status {response.status_code}")
            raise error_cls(f"{label} provider returned status {response.status_code}")

        breaker.record_success()
        return response.json()
    raise error_cls(f"{label} provider unavailable")


def _auth_headers() -> dict:
    headers = {"Content-Type": "application/json"}
    if config.OPENAI_API_KEY:
        headers["Authorization"] = f"Bearer {config.OPENAI_API_KEY}"
    return headers


# =============================================================================
# Embeddings
# =============================================================================

class EmbeddingProvider:
    """text -> fixed-dimension vector"""

    async def embed(self, text: str) -> list[float]:
        raise NotImplementedError


class OpenAIEmbeddingProvider(EmbeddingProvider):
    def __init__(
        self,
        model: str = config.EMBEDDING_MODEL,
        dimensions: int = config.EMBEDDING_DIM,
        base_url: str = config.OPENAI_BASE_URL,
        timeout_seconds: float = config.EMBEDDING_TIMEOUT_SECONDS,
        breaker: CircuitBreaker = embedding_circuit_breaker,
    ):
        self.model = model
        self.dimensions = dimensions
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker

    async def embed(self, text: str) -> list[float]:
        validate_embedding_text(text)
        timeout = httpx.Timeout(self.timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, headers=_auth_headers()) as client:
            data = await _post_with_retry(
                client,
                f"{self.base_url}/embeddings",
                {"model": self.model, "input": text, "dimensions": self.dimensions},
                self.breaker,
                EmbeddingProviderError,
                "embedding",
            )
        try:
            return data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise EmbeddingProviderError("embedding provider returned no vector") from exc


class LocalEmbeddingProvider(EmbeddingProvider):
    """CPU embeddings via sentence-transformers, loaded on first use."""

    def __init__(self, model_name: str = config.LOCAL_EMBEDDING_MODEL):
        self.model_name = model_name
        self._model = None

    def _encode(self, text: str) -> list[float]:
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading local embedding model {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model.encode([text], normalize_embeddings=True)[0].tolist()

    async def embed(self, text: str) -> list[float]:
        validate_embedding_text(text)
        try:
            return await asyncio.to_thread(self._encode, text)
        except (ImportError, OSError, RuntimeError) as exc:
            raise EmbeddingProviderError("local embedding model unavailable") from exc


class DisabledEmbeddingProvider(EmbeddingProvider):
    async def embed(self, text: str) -> list[float]:
        raise EmbeddingProviderError("embedding provider disabled")


def build_embedding_provider(provider: Optional[str] = None) -> EmbeddingProvider:
    name = (provider or config.EMBEDDING_PROVIDER).strip().lower()
    if name == "openai":
        return OpenAIEmbeddingProvider()
    if name == "local":
        return LocalEmbeddingProvider()
    return DisabledEmbeddingProvider()


# =============================================================================
# Completions
# =============================================================================

class CompletionProvider:
    """
    {system instruction, prior turns, optional output schema} -> text or object.

    When output_schema is given the result is a dict; otherwise a string.
    """

    async def complete(
        self,
        system_instruction: str,
        turns: Sequence[HistoryTurn],
        output_schema: Optional[dict] = None,
        temperature: Optional[float] = None,
    ) -> Any:
        raise NotImplementedError


class OpenAICompletionProvider(CompletionProvider):
    def __init__(
        self,
        model: str = config.COMPLETION_MODEL,
        base_url: str = config.OPENAI_BASE_URL,
        timeout_seconds: float = config.COMPLETION_TIMEOUT_SECONDS,
        breaker: CircuitBreaker = completion_circuit_breaker,
    ):
        self.model = model
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker

    def _payload(
        self,
        system_instruction: str,
        turns: Sequence[HistoryTurn],
        output_schema: Optional[dict],
        temperature: Optional[float],
    ) -> dict:
        messages = [{"role": "system", "content": system_instruction}]
        messages.extend({"role": turn.role, "content": turn.content} for turn in turns)
        payload: dict = {"model": self.model, "messages": messages}
        if temperature is not None:
            payload["temperature"] = temperature
        if output_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "structured_output", "schema": output_schema},
            }
        return payload

    async def complete(
        self,
        system_instruction: str,
        turns: Sequence[HistoryTurn],
        output_schema: Optional[dict] = None,
        temperature: Optional[float] = None,
    ) -> Any:
        timeout = httpx.Timeout(self.timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, headers=_auth_headers()) as client:
            data = await _post_with_retry(
                client,
                f"{self.base_url}/chat/completions",
                self._payload(system_instruction, turns, output_schema, temperature),
                self.breaker,
                CompletionProviderError,
                "completion",
            )
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionProviderError("completion provider returned no content") from exc
        if output_schema is None:
            return content
        try:
            parsed = json.loads(strip_json_fences(content))
        except json.JSONDecodeError as exc:
            raise CompletionProviderError("completion output was not valid JSON") from exc
        if not isinstance(parsed, dict):
            raise CompletionProviderError("completion output was not a JSON object")
        return parsed


def build_completion_provider(light: bool = False) -> CompletionProvider:
    model = config.COMPLETION_LIGHT_MODEL if light else config.COMPLETION_MODEL
    return OpenAICompletionProvider(model=model)
