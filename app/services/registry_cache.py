"""
In-process cache of active protected styles.

- Readers get the current snapshot (an immutable tuple) without awaiting.
- A single background task refreshes it every ``interval_s`` seconds.
- A failed or timed-out refresh keeps the previous snapshot and logs a
  staleness warning. Fingerprinting keeps working on stale data; only the
  gates fail closed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from app.models.style import ProtectedStyle
from app.observability.metrics import inc_registry_refresh, set_registry_age, set_registry_styles
from app.services.stores.base import StyleStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrySnapshot:
    styles: Tuple[ProtectedStyle, ...]
    loaded_at: Optional[float]  # None until the first successful load


class StyleRegistryCache:
    def __init__(
        self,
        store: StyleStore,
        *,
        interval_s: float = 30.0,
        read_timeout_s: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self.interval_s = float(interval_s)
        self.read_timeout_s = float(read_timeout_s)
        self._clock = clock
        self._snapshot = RegistrySnapshot(styles=(), loaded_at=None)
        self._consecutive_failures = 0
        self._task: Optional[asyncio.Task[None]] = None

    # ---------------------- read path ----------------------

    def active_styles(self) -> Tuple[ProtectedStyle, ...]:
        return self._snapshot.styles

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def age_s(self) -> Optional[float]:
        loaded = self._snapshot.loaded_at
        return None if loaded is None else max(0.0, self._clock() - loaded)

    @property
    def stale(self) -> bool:
        age = self.age_s()
        return age is None or age > 2 * self.interval_s

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    # ---------------------- refresh ----------------------

    async def refresh(self) -> bool:
        """Reload active styles; returns False (keeping the old snapshot) on failure."""
        try:
            styles = await asyncio.wait_for(self._store.list_active(), timeout=self.read_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._consecutive_failures += 1
            inc_registry_refresh("failure")
            age = self.age_s()
            if age is not None:
                set_registry_age(age)
            log.warning(
                "style registry refresh failed; serving stale snapshot",
                extra={
                    "error": type(exc).__name__,
                    "snapshot_age_s": None if age is None else round(age, 1),
                    "snapshot_styles": len(self._snapshot.styles),
                    "consecutive_failures": self._consecutive_failures,
                },
            )
            return False

        active = tuple(sorted((s for s in styles if s.active), key=lambda s: s.style_id))
        # Single reference assignment: readers see the old or the new tuple.
        self._snapshot = RegistrySnapshot(styles=active, loaded_at=self._clock())
        self._consecutive_failures = 0
        inc_registry_refresh("success")
        set_registry_styles(len(active))
        set_registry_age(0.0)
        return True

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            await self.refresh()

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        await self.refresh()
        self._task = asyncio.create_task(self._refresh_loop(), name="style-registry-refresh")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
