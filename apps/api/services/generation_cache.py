"""Advisory read-through cache for generation records and list pages.

Entries are hints only. Lifecycle transitions and visibility decisions always
read the authoritative store, and every mutation invalidates the owner's keys.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Callable, Dict, Optional, Protocol

import redis.asyncio as redis

from config import settings


logger = logging.getLogger(__name__)

ITEM_KEY_PREFIX = "gen:item"
LIST_KEY_PREFIX = "gen:list"


def item_cache_key(uid: str, history_id: str) -> str:
    return f"{ITEM_KEY_PREFIX}:{uid}:{history_id}"


def list_cache_key(uid: str, params: Dict[str, Any]) -> str:
    digest = hashlib.sha1(
        json.dumps(params, sort_keys=True, default=str, separators=(",", ":")).encode("utf-8")
    ).hexdigest()
    return f"{LIST_KEY_PREFIX}:{uid}:{digest}"


class GenerationCache(Protocol):
    async def get_item(self, uid: str, history_id: str) -> Optional[Dict[str, Any]]: ...

    async def set_item(self, uid: str, history_id: str, value: Dict[str, Any]) -> None: ...

    async def get_list(self, uid: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def set_list(self, uid: str, params: Dict[str, Any], value: Dict[str, Any]) -> None: ...

    async def invalidate(self, uid: str, history_id: Optional[str] = None) -> None: ...


class NullGenerationCache:
    """Cache that never stores anything."""

    async def get_item(self, uid: str, history_id: str) -> Optional[Dict[str, Any]]:
        return None

    async def set_item(self, uid: str, history_id: str, value: Dict[str, Any]) -> None:
        return None

    async def get_list(self, uid: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return None

    async def set_list(self, uid: str, params: Dict[str, Any], value: Dict[str, Any]) -> None:
        return None

    async def invalidate(self, uid: str, history_id: Optional[str] = None) -> None:
        return None


class RedisGenerationCache:
    """Redis-backed cache. Every failure degrades to a miss and is logged."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        item_ttl_seconds: Optional[int] = None,
        list_ttl_seconds: Optional[int] = None,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        self.redis_url = redis_url or settings.REDIS_URL
        self.item_ttl_seconds = max(int(item_ttl_seconds or settings.GENERATION_CACHE_TTL_SECONDS), 1)
        self.list_ttl_seconds = max(int(list_ttl_seconds or settings.GENERATION_LIST_CACHE_TTL_SECONDS), 1)
        self._client_factory = client_factory

    def _client(self):
        if self._client_factory is not None:
            return self._client_factory()
        return redis.from_url(self.redis_url, decode_responses=True)

    async def _get(self, key: str) -> Optional[Dict[str, Any]]:
        client = self._client()
        try:
            raw = await client.get(key)
            if not raw:
                return None
            payload = json.loads(raw)
            return payload if isinstance(payload, dict) else None
        except Exception as exc:
            logger.warning("Generation cache read failed for %s: %s", key, exc)
            return None
        finally:
            await client.aclose()

    async def _set(self, key: str, ttl: int, value: Dict[str, Any]) -> None:
        client = self._client()
        try:
            await client.setex(key, ttl, json.dumps(value, separators=(",", ":"), default=str))
        except Exception as exc:
            logger.warning("Generation cache write failed for %s: %s", key, exc)
        finally:
            await client.aclose()

    async def get_item(self, uid: str, history_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(item_cache_key(uid, history_id))

    async def set_item(self, uid: str, history_id: str, value: Dict[str, Any]) -> None:
        await self._set(item_cache_key(uid, history_id), self.item_ttl_seconds, value)

    async def get_list(self, uid: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self._get(list_cache_key(uid, params))

    async def set_list(self, uid: str, params: Dict[str, Any], value: Dict[str, Any]) -> None:
        await self._set(list_cache_key(uid, params), self.list_ttl_seconds, value)

    async def invalidate(self, uid: str, history_id: Optional[str] = None) -> None:
        client = self._client()
        try:
            keys = []
            if history_id:
                keys.append(item_cache_key(uid, history_id))
            async for key in client.scan_iter(match=f"{LIST_KEY_PREFIX}:{uid}:*", count=200):
                keys.append(key)
            if keys:
                await client.delete(*keys)
        except Exception as exc:
            logger.warning("Generation cache invalidation failed for %s: %s", uid, exc)
        finally:
            await client.aclose()


def build_generation_cache() -> GenerationCache:
    if settings.GENERATION_CACHE_ENABLED:
        return RedisGenerationCache()
    return NullGenerationCache()
