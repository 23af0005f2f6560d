"""Redis-backed audit and style stores.

Audit layout (``ns`` = namespace):
  {ns}:audit:rec:{intervention_id}   JSON record, written with SET NX
  {ns}:audit:idx:{field}:{value}     ZSET of intervention ids scored by ts_ms

Style layout:
  {ns}:style:{style_id}              JSON style
  {ns}:styles:active                 SET of active style ids
"""

from __future__ import annotations

import functools
import json
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from app.models.audit import AuditRecord
from app.models.style import ProtectedStyle, StyleStatus
from app.services.errors import StoreUnavailable, StyleNotFound
from app.services.stores.base import AuditPage, AuditQuery
from app.utils.cursor import after_cursor, decode_cursor, encode_cursor


def _ns(ns: str, *parts: str) -> str:
    return ":".join((ns, *parts))


def _text(v: object) -> str:
    return v.decode("utf-8") if isinstance(v, bytes) else str(v)


T = TypeVar("T")


def _store_op(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Surface redis client errors as StoreUnavailable."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await fn(*args, **kwargs)
        except RedisError as exc:
            raise StoreUnavailable(f"redis: {type(exc).__name__}: {exc}") from exc

    return wrapper


class RedisAuditStore:
    def __init__(self, redis: Redis, ns: str = "guardrail") -> None:
        self._redis = redis
        self._ns = ns

    def _rec_key(self, intervention_id: str) -> str:
        return _ns(self._ns, "audit", "rec", intervention_id)

    def _idx_key(self, field: str, value: str) -> str:
        return _ns(self._ns, "audit", "idx", field, value)

    @_store_op
    async def put(self, record: AuditRecord) -> bool:
        body = json.dumps(record.to_dict(), separators=(",", ":"), sort_keys=True)
        created = await self._redis.set(self._rec_key(record.intervention_id), body, nx=True)
        # Index even when the record already existed: a previous put may have
        # stored the body and failed before indexing. ZADD is idempotent.
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self._idx_key("user", record.user_id), {record.intervention_id: record.ts_ms})
            pipe.zadd(self._idx_key("category", record.category), {record.intervention_id: record.ts_ms})
            if record.matched_style_id:
                pipe.zadd(
                    self._idx_key("style", record.matched_style_id),
                    {record.intervention_id: record.ts_ms},
                )
            await pipe.execute()
        return bool(created)

    @_store_op
    async def get(self, intervention_id: str) -> Optional[AuditRecord]:
        raw = await self._redis.get(self._rec_key(intervention_id))
        if raw is None:
            return None
        return AuditRecord.from_dict(json.loads(_text(raw)))

    @_store_op
    async def query(self, q: AuditQuery) -> AuditPage:
        field, value = q.index
        cursor = decode_cursor(q.cursor) if q.cursor else None
        lo: float | str = q.start_ms if q.start_ms is not None else "-inf"
        if cursor is not None:
            lo = max(cursor[0], q.start_ms) if q.start_ms is not None else cursor[0]
        hi: float | str = q.end_ms if q.end_ms is not None else "+inf"
        rows = await self._redis.zrangebyscore(self._idx_key(field, value), lo, hi, withscores=True)
        ids: List[str] = []
        last: Optional[tuple[int, str]] = None
        has_more = False
        for member, score in rows:
            rid, ts = _text(member), int(score)
            if not after_cursor(ts, rid, cursor):
                continue
            if len(ids) == q.limit:
                has_more = True
                break
            ids.append(rid)
            last = (ts, rid)
        if not ids:
            return AuditPage()
        raws = await self._redis.mget([self._rec_key(i) for i in ids])
        records = tuple(AuditRecord.from_dict(json.loads(_text(r))) for r in raws if r is not None)
        next_cursor = encode_cursor(*last) if has_more and last else None
        return AuditPage(records=records, next_cursor=next_cursor)


class RedisStyleStore:
    def __init__(self, redis: Redis, ns: str = "guardrail") -> None:
        self._redis = redis
        self._ns = ns

    def _key(self, style_id: str) -> str:
        return _ns(self._ns, "style", style_id)

    @property
    def _active_key(self) -> str:
        return _ns(self._ns, "styles", "active")

    @_store_op
    async def list_active(self) -> List[ProtectedStyle]:
        ids = sorted(_text(m) for m in await self._redis.smembers(self._active_key))
        if not ids:
            return []
        raws = await self._redis.mget([self._key(i) for i in ids])
        out: List[ProtectedStyle] = []
        for raw in raws:
            if raw is None:
                continue
            style = ProtectedStyle.from_dict(json.loads(_text(raw)))
            if style.active:
                out.append(style)
        return out

    @_store_op
    async def get(self, style_id: str) -> Optional[ProtectedStyle]:
        raw = await self._redis.get(self._key(style_id))
        if raw is None:
            return None
        return ProtectedStyle.from_dict(json.loads(_text(raw)))

    @_store_op
    async def create(self, style: ProtectedStyle) -> bool:
        key = self._key(style.style_id)
        doc = json.dumps(style.to_dict(), separators=(",", ":"))
        if not await self._redis.set(key, doc, nx=True):
            return False
        if style.active:
            await self._redis.sadd(self._active_key, style.style_id)
        return True

    @_store_op
    async def put(self, style: ProtectedStyle) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key(style.style_id), json.dumps(style.to_dict(), separators=(",", ":")))
            if style.active:
                pipe.sadd(self._active_key, style.style_id)
            else:
                pipe.srem(self._active_key, style.style_id)
            await pipe.execute()

    async def _update(
        self, style_id: str, mutate: Callable[[ProtectedStyle], ProtectedStyle]
    ) -> ProtectedStyle:
        key = self._key(style_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        raise StyleNotFound(style_id)
                    updated: ProtectedStyle = mutate(ProtectedStyle.from_dict(json.loads(_text(raw))))
                    pipe.multi()
                    pipe.set(key, json.dumps(updated.to_dict(), separators=(",", ":")))
                    if updated.active:
                        pipe.sadd(self._active_key, style_id)
                    else:
                        pipe.srem(self._active_key, style_id)
                    await pipe.execute()
                    return updated
                except WatchError:
                    continue

    @_store_op
    async def add_samples(
        self,
        style_id: str,
        hashes: Iterable[str] = (),
        embeddings: Iterable[Sequence[float]] = (),
    ) -> ProtectedStyle:
        hs = list(hashes)
        es = [list(e) for e in embeddings]
        return await self._update(style_id, lambda s: s.with_samples(hs, es))

    @_store_op
    async def set_status(self, style_id: str, status: StyleStatus) -> ProtectedStyle:
        return await self._update(style_id, lambda s: s.with_status(status))
