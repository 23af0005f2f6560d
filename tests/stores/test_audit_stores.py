from __future__ import annotations

import dataclasses

import pytest
from fakeredis.aioredis import FakeRedis

from app.models.audit import AuditRecord
from app.services.stores.base import AuditQuery
from app.services.stores.memory import MemoryAuditStore
from app.services.stores.redis_backend import RedisAuditStore
from app.utils.cursor import CursorError

BACKENDS = ["memory", "redis"]


def _store(kind: str):
    if kind == "memory":
        return MemoryAuditStore()
    return RedisAuditStore(FakeRedis(decode_responses=True), ns="t")


def _rec(iid: str, ts_ms: int, user: str = "u1", category: str = "jailbreak", style=None) -> AuditRecord:
    return AuditRecord(
        intervention_id=iid,
        ts_ms=ts_ms,
        user_id=user,
        request_id=f"req-{iid}",
        gate=1 if category == "jailbreak" else 2,
        category=category,
        action="blocked",
        score=0.9,
        threshold=0.75,
        prompt_sha256="ab" * 32,
        content_sha256=None,
        rationale="r",
        matched_style_id=style,
        method="semantic",
        retain_until_ms=ts_ms + 1000,
    )


@pytest.mark.parametrize("kind", BACKENDS)
async def test_put_is_idempotent_and_never_overwrites(kind: str) -> None:
    store = _store(kind)
    original = _rec("i-1", 1000)
    assert await store.put(original) is True
    tampered = dataclasses.replace(original, action="allowed", score=0.0)
    assert await store.put(tampered) is False
    assert await store.get("i-1") == original


@pytest.mark.parametrize("kind", BACKENDS)
async def test_get_missing_returns_none(kind: str) -> None:
    assert await _store(kind).get("nope") is None


@pytest.mark.parametrize("kind", BACKENDS)
async def test_query_by_selector_time_range_and_cursor(kind: str) -> None:
    store = _store(kind)
    for i in range(5):
        await store.put(_rec(f"a{i}", 1000 + i, user="alice"))
    await store.put(_rec("b0", 1002, user="bob"))
    await store.put(_rec("s0", 1003, user="carol", category="ip_mimicry", style="style-1"))

    page1 = await store.query(AuditQuery(user_id="alice", limit=2))
    assert [r.intervention_id for r in page1.records] == ["a0", "a1"]
    assert page1.next_cursor

    page2 = await store.query(AuditQuery(user_id="alice", limit=2, cursor=page1.next_cursor))
    assert [r.intervention_id for r in page2.records] == ["a2", "a3"]
    page3 = await store.query(AuditQuery(user_id="alice", limit=2, cursor=page2.next_cursor))
    assert [r.intervention_id for r in page3.records] == ["a4"]
    assert page3.next_cursor is None

    ranged = await store.query(AuditQuery(user_id="alice", start_ms=1001, end_ms=1003))
    assert [r.intervention_id for r in ranged.records] == ["a1", "a2", "a3"]

    by_style = await store.query(AuditQuery(matched_style_id="style-1"))
    assert [r.intervention_id for r in by_style.records] == ["s0"]

    by_cat = await store.query(AuditQuery(category="ip_mimicry"))
    assert [r.intervention_id for r in by_cat.records] == ["s0"]


@pytest.mark.parametrize("kind", BACKENDS)
async def test_equal_timestamps_page_without_gaps(kind: str) -> None:
    store = _store(kind)
    for iid in ("x1", "x2", "x3"):
        await store.put(_rec(iid, 5000, user="dup"))
    first = await store.query(AuditQuery(user_id="dup", limit=2))
    rest = await store.query(AuditQuery(user_id="dup", limit=2, cursor=first.next_cursor))
    ids = [r.intervention_id for r in first.records] + [r.intervention_id for r in rest.records]
    assert ids == ["x1", "x2", "x3"]


@pytest.mark.parametrize("kind", BACKENDS)
async def test_bad_cursor_rejected(kind: str) -> None:
    with pytest.raises(CursorError):
        await _store(kind).query(AuditQuery(user_id="u1", cursor="%%%"))


def test_query_requires_exactly_one_selector() -> None:
    with pytest.raises(ValueError):
        AuditQuery()
    with pytest.raises(ValueError):
        AuditQuery(user_id="u", category="jailbreak")
    with pytest.raises(ValueError):
        AuditQuery(user_id="u", limit=0)
