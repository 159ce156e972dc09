"""
Shared helpers for coaching core services.
"""

from __future__ import annotations

import asyncio
import json
import random
import re
import threading
import time
from datetime import datetime
from functools import wraps
from typing import Callable, Optional

import coachcore.config as config
from coachcore.errors import EmbeddingProviderError, NotFoundError, ValidationIssue

logger = config.logger

_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


# =============================================================================
# Tool payload helpers
# =============================================================================

def _tool_error_payload(tool_name: str, exc: ValidationIssue) -> dict:
    return {
        "status": "error",
        "error_type": "validation_error",
        "tool": tool_name,
        "field": exc.field,
        "message": str(exc),
    }


def _log_validation_issue(tool_name: str, exc: ValidationIssue, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def service_tool(fn: Callable) -> Callable:
    """Convert validation and lookup failures of an async service call into payloads."""

    @wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except NotFoundError as exc:
            return {
                "status": "not_found",
                "tool": fn.__name__,
                "resource": exc.resource,
                "message": str(exc),
            }
        except EmbeddingProviderError:
            logger.warning("tool_embedding_unavailable", extra={"tool": fn.__name__})
            return {
                "status": "error",
                "error_type": "embedding_unavailable",
                "tool": fn.__name__,
                "message": "embedding provider unavailable",
            }
    return wrapper


# =============================================================================
# Provider resilience
# =============================================================================

class CircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


async def async_sleep_backoff(attempt: int) -> None:
    base = config.PROVIDER_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, config.PROVIDER_RETRY_JITTER_SECONDS)
    await asyncio.sleep(base + jitter)


# =============================================================================
# Record helpers
# =============================================================================

def apply_access_bump(record) -> None:
    record.access_count = (record.access_count or 0) + 1
    record.last_accessed_at = datetime.utcnow()


def strip_json_fences(raw: str) -> str:
    return _JSON_FENCE_RE.sub("", raw.strip()).strip()


def parse_json_object(raw) -> dict:
    """Accept a dict or a JSON string (optionally fenced) and return a dict."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise ValueError("expected JSON object text")
    data = json.loads(strip_json_fences(raw))
    if not isinstance(data, dict):
        raise ValueError("expected JSON object")
    return data
