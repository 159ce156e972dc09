"""
Short-lived in-process cache for tool results.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Optional


def scope_prefix(namespace: str, scope: str) -> str:
    return f"{namespace}:{scope}:"


def cache_key(namespace: str, scope: str, *parts: Any) -> str:
    return scope_prefix(namespace, scope) + json.dumps(parts, sort_keys=True, default=str)


class ResultCache:
    """In-memory cache with per-entry TTL."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._entries: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if datetime.utcnow() > entry["expires_at"]:
                del self._entries[key]
                return None
            return entry["value"]

    async def set(self, key: str, value: Any, ttl: int) -> None:
        if not self.enabled or ttl <= 0:
            return
        async with self._lock:
            self._entries[key] = {
                "value": value,
                "expires_at": datetime.utcnow() + timedelta(seconds=ttl),
            }

    async def invalidate_prefix(self, prefix: str) -> int:
        async with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    async def clear_expired(self) -> int:
        async with self._lock:
            now = datetime.utcnow()
            expired = [key for key, entry in self._entries.items() if now > entry["expires_at"]]
            for key in expired:
                del self._entries[key]
            return len(expired)

    async def stats(self) -> dict:
        async with self._lock:
            now = datetime.utcnow()
            active = sum(1 for entry in self._entries.values() if now <= entry["expires_at"])
            return {
                "total_keys": len(self._entries),
                "active_keys": active,
                "expired_keys": len(self._entries) - active,
            }
