# Upstream breaker for the HTTP oracle adapters:
# - States: "closed" -> "open" (after N failures) -> "half_open" (after cooldown).
# - In half_open, up to M trial calls; success closes, failure re-opens.
# - An open breaker is reported to callers as an oracle failure, so the gates
#   stay fail-closed while the upstream recovers.
#
# Settings (see app.config.Settings):
#   ORACLE_CB_ENABLED            (bool; default: false)
#   ORACLE_CB_FAILURE_THRESHOLD  (int;  default: 5)
#   ORACLE_CB_RECOVERY_SECONDS   (int;  default: 30)

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from app.config import Settings

T = TypeVar("T")


class CircuitOpen(Exception):
    """Raised instead of calling an upstream whose breaker is open."""


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    recovery_seconds: int = 30
    half_open_max_calls: int = 1


class CircuitBreaker:
    """Count-based circuit breaker with half-open probing."""

    __slots__ = (
        "_cfg",
        "_state",
        "_failure_count",
        "_opened_at",
        "_half_open_calls",
        "_lock",
        "_clock",
    )

    def __init__(
        self,
        config: BreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cfg = config or BreakerConfig()
        self._state: str = "closed"
        self._failure_count: int = 0
        self._opened_at: float | None = None
        self._half_open_calls: int = 0
        self._lock = threading.Lock()
        self._clock = clock

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def allow_call(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._state == "open":
                opened = self._opened_at if self._opened_at is not None else now
                if now - opened < float(self._cfg.recovery_seconds):
                    return False
                self._state = "half_open"
                self._half_open_calls = 0

            if self._state == "half_open":
                if self._half_open_calls < max(1, self._cfg.half_open_max_calls):
                    self._half_open_calls += 1
                    return True
                return False

            return True

    def record_success(self) -> None:
        with self._lock:
            self._state = "closed"
            self._failure_count = 0
            self._half_open_calls = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == "half_open":
                self._open(now)
                return
            if self._state == "closed":
                self._failure_count += 1
                if self._failure_count >= max(1, self._cfg.failure_threshold):
                    self._open(now)

    def _open(self, now: float) -> None:
        self._state = "open"
        self._opened_at = now
        self._failure_count = 0
        self._half_open_calls = 0

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        if not self.allow_call():
            raise CircuitOpen(self.describe())
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def describe(self) -> str:
        with self._lock:
            return (
                f"state={self._state} failures={self._failure_count} "
                f"opened_at={self._opened_at} half_open_calls={self._half_open_calls}"
            )


def breaker_from_settings(settings: Settings) -> Optional[CircuitBreaker]:
    if not settings.ORACLE_CB_ENABLED:
        return None
    return CircuitBreaker(
        BreakerConfig(
            failure_threshold=settings.ORACLE_CB_FAILURE_THRESHOLD,
            recovery_seconds=settings.ORACLE_CB_RECOVERY_SECONDS,
        )
    )
