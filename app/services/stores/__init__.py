from __future__ import annotations

from typing import Tuple

from app.config import Settings
from app.services.stores.base import (
    AuditPage,
    AuditQuery,
    AuditStore,
    StyleStore,
)
from app.services.stores.memory import MemoryAuditStore, MemoryStyleStore


def build_stores(settings: Settings) -> Tuple[AuditStore, StyleStore]:
    """Select store backends from settings (``STORE_BACKEND``)."""
    if settings.STORE_BACKEND == "redis":
        from redis.asyncio import Redis

        from app.services.stores.redis_backend import RedisAuditStore, RedisStyleStore

        url = settings.REDIS_URL or "redis://localhost:6379/0"
        redis = Redis.from_url(url, encoding="utf-8", decode_responses=True)
        ns = settings.REDIS_NAMESPACE
        return RedisAuditStore(redis, ns=ns), RedisStyleStore(redis, ns=ns)
    return MemoryAuditStore(), MemoryStyleStore()


__all__ = [
    "AuditPage",
    "AuditQuery",
    "AuditStore",
    "StyleStore",
    "MemoryAuditStore",
    "MemoryStyleStore",
    "build_stores",
]
