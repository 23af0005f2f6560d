"""
Audit trail writer.

Every terminal decision produces exactly one AuditRecord. ``record()`` makes a
single bounded write attempt and never raises; on failure the record joins an
in-process FIFO buffer that a background task flushes in original order with
capped exponential backoff (``min(base * 2**attempt, cap)``).

Nothing is dropped silently:
- a record that exhausts ``max_attempts`` moves to the dead-letter list;
- when the buffer is full the oldest record is evicted to the dead-letter list;
both are logged at ERROR and counted (``guardrail_audit_*`` metrics).

The buffer and dead letters live in process memory and are lost on restart.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional

from app.models.audit import AuditRecord
from app.models.guardrail import Transaction, ValidationResult
from app.observability.metrics import (
    inc_audit_dead_letter,
    inc_audit_eviction,
    inc_audit_write,
    set_audit_buffer_depth,
)
from app.services.stores.base import AuditStore

log = logging.getLogger(__name__)

_DAY_MS = 86_400_000

SleepFn = Callable[[float], Awaitable[None]]


def sha256_hex(data: bytes | str | None) -> Optional[str]:
    if data is None:
        return None
    raw = data.encode("utf-8") if isinstance(data, str) else data
    return hashlib.sha256(raw).hexdigest()


@dataclass(frozen=True)
class AuditOutcome:
    """What the orchestrator hands over at a terminal state."""

    intervention_id: str
    transaction: Transaction
    gate: int
    result: ValidationResult
    action: str  # "blocked" | "allowed"


@dataclass
class _Pending:
    record: AuditRecord
    attempts: int
    last_error: str


@dataclass(frozen=True)
class DeadLetter:
    record: AuditRecord
    reason: str  # "exhausted" | "evicted"
    attempts: int
    last_error: str


class AuditWriter:
    def __init__(
        self,
        store: AuditStore,
        *,
        capacity: int = 1000,
        dead_letter_capacity: int = 1000,
        write_timeout_s: float = 1.0,
        backoff_base_s: float = 0.5,
        backoff_cap_s: float = 30.0,
        max_attempts: int = 8,
        retention_days: int = 365,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.capacity = max(1, int(capacity))
        self.write_timeout_s = float(write_timeout_s)
        self.backoff_base_s = float(backoff_base_s)
        self.backoff_cap_s = float(backoff_cap_s)
        self.max_attempts = max(1, int(max_attempts))
        self.retention_days = int(retention_days)
        self._sleep = sleep
        self._clock = clock

        self._lock = threading.Lock()
        self._buffer: Deque[_Pending] = deque()
        self._dead: Deque[DeadLetter] = deque(maxlen=max(1, int(dead_letter_capacity)))
        self._flush_lock = asyncio.Lock()
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task[None]] = None

    # ---------------------- record construction ----------------------

    def build_record(self, outcome: AuditOutcome) -> AuditRecord:
        txn = outcome.transaction
        res = outcome.result
        ts_ms = int(self._clock() * 1000)
        return AuditRecord(
            intervention_id=outcome.intervention_id,
            ts_ms=ts_ms,
            user_id=txn.user_id,
            request_id=txn.request_id,
            gate=outcome.gate,
            category=res.category.value,
            action=outcome.action,
            score=res.score,
            threshold=res.threshold,
            prompt_sha256=sha256_hex(txn.prompt) or "",
            content_sha256=sha256_hex(txn.content.body) if txn.content is not None else None,
            rationale=res.rationale,
            matched_style_id=res.matched_style_id,
            method=res.method.value,
            retain_until_ms=ts_ms + self.retention_days * _DAY_MS,
        )

    # ---------------------- write path ----------------------

    async def _write(self, record: AuditRecord) -> None:
        await asyncio.wait_for(self._store.put(record), timeout=self.write_timeout_s)

    async def record(self, outcome: AuditOutcome) -> AuditRecord:
        """Persist the outcome's record, or buffer it for retry. Never raises."""
        rec = self.build_record(outcome)
        try:
            await self._write(rec)
        except asyncio.CancelledError:
            self._enqueue(_Pending(rec, attempts=1, last_error="cancelled"))
            raise
        except Exception as exc:
            self._enqueue(_Pending(rec, attempts=1, last_error=_describe(exc)))
            inc_audit_write("buffered")
            log.warning(
                "audit write failed; buffered for retry",
                extra={
                    "intervention_id": rec.intervention_id,
                    "error": _describe(exc),
                    "buffer_depth": self.depth,
                },
            )
        else:
            inc_audit_write("direct")
        return rec

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base_s * (2 ** max(0, int(attempt))), self.backoff_cap_s)

    # ---------------------- buffer ----------------------

    def _enqueue(self, pending: _Pending) -> None:
        evicted: Optional[_Pending] = None
        with self._lock:
            if len(self._buffer) >= self.capacity:
                evicted = self._buffer.popleft()
                self._bury(evicted, "evicted")
            self._buffer.append(pending)
            depth = len(self._buffer)
        set_audit_buffer_depth(depth)
        if evicted is not None:
            inc_audit_eviction()
            log.error(
                "audit buffer full; evicted oldest unflushed record",
                extra={
                    "intervention_id": evicted.record.intervention_id,
                    "capacity": self.capacity,
                },
            )
        if self._wakeup is not None:
            self._wakeup.set()

    def _bury(self, pending: _Pending, reason: str) -> None:
        # Caller holds self._lock.
        if len(self._dead) == self._dead.maxlen:
            log.critical(
                "audit dead-letter list full; oldest dead letter discarded",
                extra={"intervention_id": self._dead[0].record.intervention_id},
            )
        self._dead.append(
            DeadLetter(
                record=pending.record,
                reason=reason,
                attempts=pending.attempts,
                last_error=pending.last_error,
            )
        )
        inc_audit_dead_letter(reason)

    def _peek(self) -> Optional[_Pending]:
        with self._lock:
            return self._buffer[0] if self._buffer else None

    def _settle(self, pending: _Pending) -> None:
        """Drop a successfully written entry from wherever it now lives."""
        with self._lock:
            if self._buffer and self._buffer[0] is pending:
                self._buffer.popleft()
            else:
                # Evicted while its write was in flight; it is durable now.
                for dl in list(self._dead):
                    if dl.record is pending.record:
                        self._dead.remove(dl)
                        break
            depth = len(self._buffer)
        set_audit_buffer_depth(depth)

    @property
    def depth(self) -> int:
        with self._lock:
            return len(self._buffer)

    def pending(self) -> List[AuditRecord]:
        with self._lock:
            return [p.record for p in self._buffer]

    def dead_letters(self) -> List[DeadLetter]:
        with self._lock:
            return list(self._dead)

    def requeue_dead_letters(self) -> int:
        """Move dead letters back to the head of the buffer (oldest first)."""
        with self._lock:
            room = self.capacity - len(self._buffer)
            take = [self._dead.popleft() for _ in range(min(room, len(self._dead)))]
            for dl in reversed(take):
                self._buffer.appendleft(_Pending(dl.record, attempts=0, last_error=dl.last_error))
            depth = len(self._buffer)
        set_audit_buffer_depth(depth)
        if take and self._wakeup is not None:
            self._wakeup.set()
        return len(take)

    # ---------------------- flushing ----------------------

    async def flush_once(self) -> int:
        """Write buffered records in order, stopping at the first failure.

        Returns how many records were written.
        """
        written = 0
        while True:
            head = self._peek()
            if head is None:
                return written
            try:
                await self._write(head.record)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                head.attempts += 1
                head.last_error = _describe(exc)
                log.debug(
                    "audit retry failed",
                    extra={
                        "intervention_id": head.record.intervention_id,
                        "attempts": head.attempts,
                        "error": head.last_error,
                    },
                )
                return written
            self._settle(head)
            written += 1
            inc_audit_write("flushed")

    async def drain(self) -> None:
        """Retry until the buffer is empty; backoff grows with the head's attempts."""
        async with self._flush_lock:
            while True:
                head = self._peek()
                if head is None:
                    return
                if head.attempts >= self.max_attempts:
                    with self._lock:
                        if self._buffer and self._buffer[0] is head:
                            self._buffer.popleft()
                            self._bury(head, "exhausted")
                        depth = len(self._buffer)
                    set_audit_buffer_depth(depth)
                    log.error(
                        "audit record exhausted retries; moved to dead letters",
                        extra={
                            "intervention_id": head.record.intervention_id,
                            "attempts": head.attempts,
                            "error": head.last_error,
                        },
                    )
                    continue
                await self._sleep(self.backoff_delay(head.attempts - 1))
                await self.flush_once()

    async def _flush_loop(self) -> None:
        assert self._wakeup is not None
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            await self.drain()

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._wakeup = asyncio.Event()
        if self.depth:
            self._wakeup.set()
        self._task = asyncio.create_task(self._flush_loop(), name="audit-flush")

    async def stop(self, final_flush: bool = True) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if final_flush and self.depth:
            # One last in-order pass; whatever remains is lost with the process.
            await self.flush_once()
            if self.depth:
                log.error(
                    "audit writer stopped with unflushed records",
                    extra={"buffer_depth": self.depth},
                )


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    msg = str(exc)
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__
