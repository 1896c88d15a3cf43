"""Pluggable store for short-lived one-time codes (login OTPs, email links).

The Redis store is safe across API instances. The in-memory store only works
for a single process and is meant for local development and tests.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis

from config import settings


logger = logging.getLogger(__name__)

CODE_KEY_PREFIX = "code"


def _hash_code(code: str) -> str:
    return hashlib.sha256(code.strip().encode("utf-8")).hexdigest()


def _subject_key(purpose: str, subject: str) -> str:
    return f"{CODE_KEY_PREFIX}:{purpose}:{subject.strip().lower()}"


class ShortLivedCodeStore(Protocol):
    async def put(self, purpose: str, subject: str, code: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def consume(self, purpose: str, subject: str, code: str) -> bool: ...

    async def discard(self, purpose: str, subject: str) -> None: ...


class InMemoryShortLivedCodeStore:
    """Single-process code store."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._codes: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def put(self, purpose: str, subject: str, code: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = max(int(ttl_seconds or settings.SHORT_CODE_TTL_SECONDS), 1)
        async with self._lock:
            self._codes[_subject_key(purpose, subject)] = (_hash_code(code), self._clock() + ttl)

    async def consume(self, purpose: str, subject: str, code: str) -> bool:
        key = _subject_key(purpose, subject)
        async with self._lock:
            entry = self._codes.get(key)
            if entry is None:
                return False
            stored_hash, expires_at = entry
            if self._clock() >= expires_at:
                self._codes.pop(key, None)
                return False
            if not hmac.compare_digest(stored_hash, _hash_code(code)):
                return False
            self._codes.pop(key, None)
            return True

    async def discard(self, purpose: str, subject: str) -> None:
        async with self._lock:
            self._codes.pop(_subject_key(purpose, subject), None)


class RedisShortLivedCodeStore:
    """Redis-backed store. Only code hashes are stored and consumption is atomic."""

    def __init__(self, redis_url: Optional[str] = None, *, client_factory: Optional[Callable[[], Any]] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._client_factory = client_factory

    def _client(self):
        if self._client_factory is not None:
            return self._client_factory()
        return redis.from_url(self.redis_url, decode_responses=True)

    async def put(self, purpose: str, subject: str, code: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = max(int(ttl_seconds or settings.SHORT_CODE_TTL_SECONDS), 1)
        client = self._client()
        try:
            await client.setex(_subject_key(purpose, subject), ttl, _hash_code(code))
        finally:
            await client.aclose()

    async def consume(self, purpose: str, subject: str, code: str) -> bool:
        key = _subject_key(purpose, subject)
        client = self._client()
        try:
            stored_hash = await client.get(key)
            if not stored_hash or not hmac.compare_digest(stored_hash, _hash_code(code)):
                return False
            # GETDEL makes a concurrent second consume of the same code lose.
            claimed = await client.getdel(key)
            return bool(claimed) and hmac.compare_digest(claimed, stored_hash)
        finally:
            await client.aclose()

    async def discard(self, purpose: str, subject: str) -> None:
        client = self._client()
        try:
            await client.delete(_subject_key(purpose, subject))
        finally:
            await client.aclose()


def build_short_code_store() -> ShortLivedCodeStore:
    backend = (settings.SHORT_CODE_BACKEND or "redis").strip().lower()
    if backend == "memory":
        logger.warning("Using in-memory short-lived code store; codes are not shared across instances.")
        return InMemoryShortLivedCodeStore()
    return RedisShortLivedCodeStore()
