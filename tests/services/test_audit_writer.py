from __future__ import annotations

import asyncio
import logging
from typing import List

import pytest

from app.models.audit import AuditRecord
from app.models.guardrail import (
    DetectionMethod,
    GeneratedContent,
    Transaction,
    ValidationResult,
    ViolationCategory,
)
from app.services.audit_writer import AuditOutcome, AuditWriter, sha256_hex
from app.services.stores.memory import MemoryAuditStore


class FlakyAuditStore(MemoryAuditStore):
    """Fails the first ``failures`` puts, then behaves normally."""

    def __init__(self, failures: int = 0, delay_s: float = 0.0) -> None:
        super().__init__()
        self.failures = failures
        self.delay_s = delay_s
        self.calls: List[str] = []

    async def put(self, record: AuditRecord) -> bool:
        self.calls.append(record.intervention_id)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("store unreachable")
        return await super().put(record)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _outcome(iid: str, *, prompt: str = "draw a cat", content: bytes | None = None) -> AuditOutcome:
    txn = Transaction(request_id=f"req-{iid}", user_id="user-1", api_key="k", prompt=prompt)
    if content is not None:
        txn.content = GeneratedContent(body=content, content_type="image/png")
    result = ValidationResult(
        violation=True,
        score=0.9,
        category=ViolationCategory.JAILBREAK,
        rationale="override attempt",
        method=DetectionMethod.SEMANTIC,
        threshold=0.75,
    )
    return AuditOutcome(intervention_id=iid, transaction=txn, gate=1, result=result, action="blocked")


def _writer(store, **kw) -> AuditWriter:
    kw.setdefault("sleep", RecordingSleep())
    kw.setdefault("clock", lambda: 1_700_000_000.0)
    return AuditWriter(store, **kw)


async def test_direct_write_builds_full_record() -> None:
    store = FlakyAuditStore()
    writer = _writer(store, retention_days=30)
    rec = await writer.record(_outcome("i-1", content=b"\x89PNG"))
    assert await store.get("i-1") == rec
    assert rec.ts_ms == 1_700_000_000_000
    assert rec.user_id == "user-1"
    assert rec.request_id == "req-i-1"
    assert rec.gate == 1
    assert rec.category == "jailbreak"
    assert rec.action == "blocked"
    assert rec.method == "semantic"
    assert rec.prompt_sha256 == sha256_hex("draw a cat")
    assert rec.content_sha256 == sha256_hex(b"\x89PNG")
    assert rec.retain_until_ms == rec.ts_ms + 30 * 86_400_000
    assert writer.depth == 0


async def test_three_failures_then_recovery_stores_exactly_once() -> None:
    store = FlakyAuditStore(failures=3)
    sleep = RecordingSleep()
    writer = _writer(store, sleep=sleep, backoff_base_s=0.5, backoff_cap_s=30.0)

    await writer.record(_outcome("i-1"))
    assert writer.depth == 1
    await writer.drain()

    assert sleep.delays == [0.5, 1.0, 2.0]
    assert store.calls == ["i-1"] * 4
    assert len(store) == 1
    assert writer.depth == 0
    assert writer.dead_letters() == []


def test_backoff_is_capped() -> None:
    writer = _writer(MemoryAuditStore(), backoff_base_s=0.5, backoff_cap_s=4.0)
    assert [writer.backoff_delay(a) for a in range(6)] == [0.5, 1.0, 2.0, 4.0, 4.0, 4.0]


async def test_record_never_raises_on_store_failure(caplog) -> None:
    writer = _writer(FlakyAuditStore(failures=100))
    with caplog.at_level(logging.WARNING, logger="app.services.audit_writer"):
        rec = await writer.record(_outcome("i-1"))
    assert rec.intervention_id == "i-1"
    assert writer.pending() == [rec]
    assert any("buffered" in r.getMessage() for r in caplog.records)


async def test_slow_store_write_times_out_into_buffer() -> None:
    writer = _writer(FlakyAuditStore(delay_s=1.0), write_timeout_s=0.05)
    await writer.record(_outcome("i-1"))
    assert writer.depth == 1


async def test_flush_preserves_order_and_stops_at_first_failure() -> None:
    store = FlakyAuditStore(failures=4)
    writer = _writer(store)
    for iid in ("a", "b", "c"):
        await writer.record(_outcome(iid))
    assert [r.intervention_id for r in writer.pending()] == ["a", "b", "c"]

    # Head still failing: nothing behind it is attempted.
    assert await writer.flush_once() == 0
    assert [r.intervention_id for r in writer.pending()] == ["a", "b", "c"]

    assert await writer.flush_once() == 3
    assert writer.depth == 0
    assert store.calls == ["a", "b", "c", "a", "a", "b", "c"]


async def test_full_buffer_evicts_oldest_to_dead_letters(caplog) -> None:
    writer = _writer(FlakyAuditStore(failures=100), capacity=2)
    with caplog.at_level(logging.ERROR, logger="app.services.audit_writer"):
        for iid in ("a", "b", "c"):
            await writer.record(_outcome(iid))
    assert [r.intervention_id for r in writer.pending()] == ["b", "c"]
    dead = writer.dead_letters()
    assert [(d.record.intervention_id, d.reason) for d in dead] == [("a", "evicted")]
    assert any("evicted" in r.getMessage() for r in caplog.records)


async def test_exhausted_record_moves_to_dead_letters_and_can_be_requeued() -> None:
    store = FlakyAuditStore(failures=2)
    writer = _writer(store, max_attempts=2)
    await writer.record(_outcome("i-1"))
    await writer.drain()

    assert writer.depth == 0
    dead = writer.dead_letters()
    assert len(dead) == 1
    assert dead[0].reason == "exhausted"
    assert dead[0].attempts == 2
    assert len(store) == 0

    assert writer.requeue_dead_letters() == 1
    assert writer.dead_letters() == []
    await writer.drain()
    assert await store.get("i-1") is not None
    assert writer.depth == 0


async def test_background_loop_flushes_buffered_records() -> None:
    store = FlakyAuditStore(failures=1)
    writer = AuditWriter(store, backoff_base_s=0.01, backoff_cap_s=0.01)
    writer.start()
    try:
        await writer.record(_outcome("i-1"))
        for _ in range(100):
            if len(store):
                break
            await asyncio.sleep(0.01)
        assert len(store) == 1
        assert writer.depth == 0
    finally:
        await writer.stop()


async def test_stop_does_a_final_flush() -> None:
    store = FlakyAuditStore(failures=1)
    writer = _writer(store)
    await writer.record(_outcome("i-1"))
    await writer.stop(final_flush=True)
    assert len(store) == 1


async def test_cancelled_write_is_buffered_then_reraised() -> None:
    store = FlakyAuditStore(delay_s=5.0)
    writer = _writer(store, write_timeout_s=10.0)
    task = asyncio.ensure_future(writer.record(_outcome("i-1")))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert [r.intervention_id for r in writer.pending()] == ["i-1"]
